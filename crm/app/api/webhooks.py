"""
Pipeline CRM Webhook API Endpoints
Outbound webhook subscriptions and delivery history
"""

from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, HttpUrl
import structlog

from ..core.database import get_db
from ..core.errors import NotFoundError
from ..services.webhook_service import WebhookService, WEBHOOK_EVENT_TYPES

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class CreateSubscriptionRequest(BaseModel):
    """Request model for a webhook subscription"""
    name: str = Field(..., min_length=1, max_length=200)
    url: HttpUrl
    events: List[str] = Field(..., min_length=1)
    created_by: Optional[UUID] = None


class UpdateSubscriptionRequest(BaseModel):
    """Request model for updating a webhook subscription"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    url: Optional[HttpUrl] = None
    events: Optional[List[str]] = Field(None, min_length=1)
    is_active: Optional[bool] = None


def _error(e: Exception, message: str, **context) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.error(message, error=str(e), **context)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


@router.get("/events")
async def list_event_types():
    """Events a subscription can listen to"""
    return {
        "status": "success",
        "data": [{"value": value, "label": label} for value, label in WEBHOOK_EVENT_TYPES.items()]
    }


@router.get("/")
async def list_subscriptions(
    is_active: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """List subscriptions with recent delivery stats"""
    try:
        subscriptions = await WebhookService(db).list_subscriptions(is_active=is_active)
        return {"status": "success", "data": {"subscriptions": subscriptions, "total": len(subscriptions)}}
    except Exception as e:
        raise _error(e, "Failed to list webhook subscriptions")


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create a subscription; the signing secret is returned once"""
    try:
        subscription = await WebhookService(db).create_subscription(
            name=request.name,
            url=str(request.url),
            events=request.events,
            created_by=request.created_by
        )
        return {"status": "success", "message": "Webhook subscription created", "data": subscription}
    except Exception as e:
        raise _error(e, "Failed to create webhook subscription")


@router.post("/deliveries/process")
async def process_pending_deliveries(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Send every pending delivery that is due"""
    try:
        result = await WebhookService(db).process_pending_deliveries(limit=limit)
        return {"status": "success", "data": result}
    except Exception as e:
        raise _error(e, "Failed to process webhook deliveries")


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get a subscription"""
    try:
        subscription = await WebhookService(db).get_subscription(subscription_id)
        return {"status": "success", "data": subscription.to_dict()}
    except Exception as e:
        raise _error(e, "Failed to retrieve webhook subscription", subscription_id=str(subscription_id))


@router.patch("/{subscription_id}")
async def update_subscription(
    subscription_id: UUID,
    request: UpdateSubscriptionRequest,
    db: AsyncSession = Depends(get_db)
):
    """Update the supplied subscription fields"""
    try:
        updates = request.model_dump(exclude_unset=True)
        if updates.get("url") is not None:
            updates["url"] = str(updates["url"])

        subscription = await WebhookService(db).update_subscription(subscription_id, **updates)
        return {"status": "success", "message": "Webhook subscription updated", "data": subscription}
    except Exception as e:
        raise _error(e, "Failed to update webhook subscription", subscription_id=str(subscription_id))


@router.delete("/{subscription_id}")
async def delete_subscription(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Delete a subscription and its delivery history"""
    try:
        await WebhookService(db).delete_subscription(subscription_id)
        return {"status": "success", "message": "Webhook subscription deleted"}
    except Exception as e:
        raise _error(e, "Failed to delete webhook subscription", subscription_id=str(subscription_id))


@router.post("/{subscription_id}/secret")
async def regenerate_secret(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Issue a new signing secret"""
    try:
        result = await WebhookService(db).regenerate_secret(subscription_id)
        return {"status": "success", "message": "Webhook secret regenerated", "data": result}
    except Exception as e:
        raise _error(e, "Failed to regenerate webhook secret", subscription_id=str(subscription_id))


@router.get("/{subscription_id}/deliveries")
async def get_delivery_history(
    subscription_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """Recent deliveries, newest first"""
    try:
        deliveries = await WebhookService(db).get_delivery_history(subscription_id, limit=limit)
        return {"status": "success", "data": {"deliveries": deliveries, "total": len(deliveries)}}
    except Exception as e:
        raise _error(e, "Failed to list webhook deliveries", subscription_id=str(subscription_id))


@router.post("/{subscription_id}/test")
async def send_test_webhook(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Queue a test delivery"""
    try:
        result = await WebhookService(db).send_test(subscription_id)
        return {"status": "success", "message": "Test webhook queued", "data": result}
    except Exception as e:
        raise _error(e, "Failed to queue test webhook", subscription_id=str(subscription_id))


@router.post("/{subscription_id}/retry")
async def retry_failed_deliveries(
    subscription_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Requeue every failed delivery of the subscription"""
    try:
        result = await WebhookService(db).retry_failed(subscription_id)
        return {"status": "success", "message": "Failed deliveries requeued", "data": result}
    except Exception as e:
        raise _error(e, "Failed to retry webhook deliveries", subscription_id=str(subscription_id))
