"""
Pipeline CRM Webhook Service
Signed outbound delivery of CRM events to subscribed endpoints
"""

import hashlib
import hmac
import json
import secrets
import string
from datetime import timedelta
from typing import Dict, Any, List, Optional
from uuid import UUID
import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
import structlog

from ..core.clock import utcnow
from ..core.config import settings
from ..core.errors import NotFoundError
from ..models.webhooks import WebhookSubscription, WebhookDelivery, DeliveryStatus

logger = structlog.get_logger()


WEBHOOK_EVENT_TYPES = {
    "deal.created": "Deal Created",
    "deal.updated": "Deal Updated",
    "deal.stage_changed": "Deal Stage Changed",
    "deal.won": "Deal Won",
    "deal.lost": "Deal Lost",
}

TEST_EVENT = "test"

# Backoff after attempt 1, 2, 3, 4, 5+: 1min, 5min, 30min, 2hr, 12hr
RETRY_DELAYS_SECONDS = [60, 300, 1800, 7200, 43200]

SECRET_ALPHABET = string.ascii_letters + string.digits


def generate_secret() -> str:
    """Random signing secret for a subscription"""
    return "whsec_" + "".join(secrets.choice(SECRET_ALPHABET) for _ in range(32))


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the request body"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def get_retry_delay(attempts: int) -> timedelta:
    index = min(max(attempts, 1) - 1, len(RETRY_DELAYS_SECONDS) - 1)
    return timedelta(seconds=RETRY_DELAYS_SECONDS[index])


class WebhookService:
    """Service for webhook subscriptions and delivery"""

    def __init__(self, db: AsyncSession, http_client: Optional[httpx.AsyncClient] = None):
        self.db = db
        self.http_client = http_client

    async def get_subscription(self, subscription_id: UUID) -> WebhookSubscription:
        subscription = await self.db.get(WebhookSubscription, subscription_id)
        if not subscription:
            raise NotFoundError("Webhook subscription not found")
        return subscription

    async def list_subscriptions(self, is_active: Optional[bool] = None) -> List[Dict[str, Any]]:
        """List subscriptions with stats over their ten most recent deliveries"""
        query = select(WebhookSubscription).order_by(WebhookSubscription.created_at.desc())
        if is_active is not None:
            query = query.where(WebhookSubscription.is_active == is_active)

        result = await self.db.execute(query)
        subscriptions = result.scalars().all()

        items = []
        for subscription in subscriptions:
            recent = await self._recent_deliveries(subscription.id, limit=10)
            data = subscription.to_dict()
            data["recent_stats"] = {
                "total": len(recent),
                "success": len([d for d in recent if d.status == DeliveryStatus.SUCCESS.value]),
                "failed": len([d for d in recent if d.status == DeliveryStatus.FAILED.value]),
            }
            items.append(data)

        return items

    async def create_subscription(
        self,
        name: str,
        url: str,
        events: List[str],
        created_by: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Create a subscription; the secret is only returned here and on regeneration"""
        self._validate_events(events)

        try:
            subscription = WebhookSubscription(
                name=name,
                url=url,
                events=list(events),
                secret=generate_secret(),
                is_active=True,
                failure_count=0,
                created_by=created_by,
            )
            self.db.add(subscription)
            await self.db.commit()
            await self.db.refresh(subscription)

            logger.info("Webhook subscription created", subscription_id=str(subscription.id), events=events)
            return subscription.to_dict(include_secret=True)

        except Exception as e:
            await self.db.rollback()
            logger.error("Webhook subscription creation failed", error=str(e))
            raise

    async def update_subscription(self, subscription_id: UUID, **updates) -> Dict[str, Any]:
        subscription = await self.get_subscription(subscription_id)

        if updates.get("events") is not None:
            self._validate_events(updates["events"])

        for field in ("name", "url", "events", "is_active"):
            if updates.get(field) is not None:
                setattr(subscription, field, updates[field])

        # Re-enabling clears the failure streak
        if updates.get("is_active"):
            subscription.failure_count = 0

        subscription.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info("Webhook subscription updated", subscription_id=str(subscription_id))
        return subscription.to_dict()

    async def delete_subscription(self, subscription_id: UUID) -> None:
        subscription = await self.get_subscription(subscription_id)
        await self.db.delete(subscription)
        await self.db.commit()
        logger.info("Webhook subscription deleted", subscription_id=str(subscription_id))

    async def regenerate_secret(self, subscription_id: UUID) -> Dict[str, Any]:
        subscription = await self.get_subscription(subscription_id)
        subscription.secret = generate_secret()
        subscription.updated_at = utcnow()
        await self.db.commit()
        return {"id": str(subscription.id), "secret": subscription.secret}

    async def get_delivery_history(self, subscription_id: UUID, limit: int = 50) -> List[Dict[str, Any]]:
        await self.get_subscription(subscription_id)
        deliveries = await self._recent_deliveries(subscription_id, limit=limit)
        return [delivery.to_dict() for delivery in deliveries]

    async def trigger(self, event: str, payload: Dict[str, Any]) -> int:
        """Queue a delivery for every active subscription listening to `event`.

        Rows are added to the caller's transaction; the caller commits.
        """
        result = await self.db.execute(
            select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True))
        )
        subscriptions = [s for s in result.scalars().all() if event in (s.events or [])]

        now = utcnow()
        for subscription in subscriptions:
            self.db.add(WebhookDelivery(
                subscription_id=subscription.id,
                event=event,
                payload=payload,
                status=DeliveryStatus.PENDING.value,
                attempts=0,
                created_at=now,
            ))
            subscription.last_triggered_at = now

        if subscriptions:
            logger.info("Webhook deliveries queued", event=event, count=len(subscriptions))

        return len(subscriptions)

    async def send_test(self, subscription_id: UUID) -> Dict[str, Any]:
        """Queue a test delivery for immediate sending"""
        subscription = await self.get_subscription(subscription_id)
        now = utcnow()

        delivery = WebhookDelivery(
            subscription_id=subscription.id,
            event=TEST_EVENT,
            payload={
                "type": "test",
                "message": "This is a test webhook from your CRM",
                "timestamp": now.isoformat(),
            },
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            created_at=now,
        )
        self.db.add(delivery)
        await self.db.commit()
        await self.db.refresh(delivery)

        return {"delivery_id": str(delivery.id)}

    async def retry_failed(self, subscription_id: UUID) -> Dict[str, Any]:
        """Reset every failed delivery of a subscription back to pending"""
        await self.get_subscription(subscription_id)

        result = await self.db.execute(
            select(WebhookDelivery).where(
                WebhookDelivery.subscription_id == subscription_id,
                WebhookDelivery.status == DeliveryStatus.FAILED.value,
            )
        )
        deliveries = result.scalars().all()

        for delivery in deliveries:
            delivery.status = DeliveryStatus.PENDING.value
            delivery.attempts = 0
            delivery.next_retry_at = None
            delivery.error_message = None
            delivery.response_code = None
            delivery.response_body = None

        await self.db.commit()
        logger.info("Failed webhook deliveries reset", subscription_id=str(subscription_id), count=len(deliveries))
        return {"retried_count": len(deliveries)}

    async def process_pending_deliveries(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Send every pending delivery that is due"""
        limit = limit or settings.webhook_batch_limit
        now = utcnow()

        result = await self.db.execute(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            )
            .order_by(WebhookDelivery.created_at)
            .limit(limit)
        )
        deliveries = result.scalars().all()

        counts = {"processed": 0, "success": 0, "retrying": 0, "failed": 0}
        for delivery in deliveries:
            status = await self.process_delivery(delivery)
            counts["processed"] += 1
            counts[status] += 1

        if deliveries:
            logger.info("Webhook deliveries processed", **counts)

        return counts

    async def process_delivery(self, delivery: WebhookDelivery) -> str:
        """Attempt one delivery and record the outcome.

        Returns "success", "retrying" or "failed".
        """
        if delivery.status != DeliveryStatus.PENDING.value:
            return delivery.status

        subscription = await self.db.get(WebhookSubscription, delivery.subscription_id)
        if not subscription or not subscription.is_active:
            delivery.status = DeliveryStatus.FAILED.value
            delivery.error_message = "Subscription not found or disabled"
            await self.db.commit()
            return "failed"

        now = utcnow()
        attempt = (delivery.attempts or 0) + 1

        body = json.dumps({
            "id": str(delivery.id),
            "event": delivery.event,
            "timestamp": now.isoformat(),
            "data": delivery.payload,
        }, default=str).encode()

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": f"sha256={sign_payload(subscription.secret, body)}",
            "X-Webhook-Event": delivery.event,
            "X-Webhook-Timestamp": now.isoformat(),
            "X-Webhook-Delivery-Id": str(delivery.id),
        }

        try:
            response = await self._post(subscription.url, body, headers)
        except httpx.HTTPError as e:
            return await self._handle_failure(delivery, subscription, attempt, str(e) or type(e).__name__)

        response_body = response.text[:1000]

        if response.is_success:
            delivery.status = DeliveryStatus.SUCCESS.value
            delivery.attempts = attempt
            delivery.response_code = response.status_code
            delivery.response_body = response_body
            delivery.error_message = None
            delivery.next_retry_at = None
            delivery.delivered_at = now
            subscription.failure_count = 0
            await self.db.commit()

            logger.info("Webhook delivered", delivery_id=str(delivery.id), event=delivery.event, status_code=response.status_code)
            return "success"

        return await self._handle_failure(
            delivery,
            subscription,
            attempt,
            f"HTTP {response.status_code}: {response.text[:200]}",
            response_code=response.status_code,
            response_body=response_body,
        )

    async def _handle_failure(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempt: int,
        error_message: str,
        response_code: Optional[int] = None,
        response_body: Optional[str] = None
    ) -> str:
        delivery.attempts = attempt
        delivery.response_code = response_code
        delivery.response_body = response_body

        if attempt >= settings.webhook_max_attempts:
            delivery.status = DeliveryStatus.FAILED.value
            delivery.error_message = f"Max retries exceeded. Last error: {error_message}"
            delivery.next_retry_at = None

            subscription.failure_count = (subscription.failure_count or 0) + 1
            if subscription.failure_count >= settings.webhook_disable_threshold:
                subscription.is_active = False
                logger.warning(
                    "Webhook subscription disabled after repeated failures",
                    subscription_id=str(subscription.id),
                    failure_count=subscription.failure_count
                )

            await self.db.commit()
            logger.warning("Webhook delivery failed", delivery_id=str(delivery.id), attempts=attempt, error=error_message)
            return "failed"

        delivery.error_message = error_message
        delivery.next_retry_at = utcnow() + get_retry_delay(attempt)
        await self.db.commit()

        logger.info(
            "Webhook delivery scheduled for retry",
            delivery_id=str(delivery.id),
            attempts=attempt,
            next_retry_at=delivery.next_retry_at.isoformat()
        )
        return "retrying"

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(url, content=body, headers=headers)

        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
            return await client.post(url, content=body, headers=headers)

    async def _recent_deliveries(self, subscription_id: UUID, limit: int) -> List[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.subscription_id == subscription_id)
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    def _validate_events(self, events: List[str]):
        unknown = [event for event in events if event not in WEBHOOK_EVENT_TYPES]
        if unknown:
            raise ValueError(f"Unknown webhook events: {', '.join(unknown)}")
        if not events:
            raise ValueError("At least one event is required")
