"""
Pipeline CRM Compliance API Endpoints
Retention policies, data subject requests and admin notifications
"""

from typing import Any, List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
import structlog

from ..core.database import get_db
from ..core.errors import NotFoundError
from ..models.compliance import RetentionEntityType, RetentionAction, DSRType, DSRStatus
from ..services.retention_service import RetentionService

logger = structlog.get_logger()
router = APIRouter(prefix="/compliance", tags=["compliance"])

CONDITION_OPERATOR_PATTERN = (
    r'^(equals|notEquals|greaterThan|lessThan|contains|isEmpty|isNotEmpty'
    r'|daysSinceGreaterThan|daysSinceLessThan)$'
)


class PolicyCondition(BaseModel):
    """Extra filter a record must pass before a policy touches it"""
    field: str = Field(..., min_length=1, max_length=100)
    operator: str = Field(..., pattern=CONDITION_OPERATOR_PATTERN)
    value: Optional[Any] = None


class CreatePolicyRequest(BaseModel):
    """Request model for creating a retention policy"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    entity_type: RetentionEntityType
    retention_days: int = Field(..., ge=1)
    action: RetentionAction
    conditions: List[PolicyCondition] = []
    is_active: bool = True


class UpdatePolicyRequest(BaseModel):
    """Request model for updating a retention policy"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    entity_type: Optional[RetentionEntityType] = None
    retention_days: Optional[int] = Field(None, ge=1)
    action: Optional[RetentionAction] = None
    conditions: Optional[List[PolicyCondition]] = None
    is_active: Optional[bool] = None


class CreateDSRRequest(BaseModel):
    """Request model for a data subject request"""
    type: DSRType
    email: str = Field(..., pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$', max_length=255)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=50)


class VerifyDSRRequest(BaseModel):
    """Request model for verifying a data subject request"""
    token: str = Field(..., min_length=1)


class ProcessDSRRequest(BaseModel):
    """Request model for fulfilling a data subject request"""
    user_id: UUID
    notes: Optional[str] = Field(None, max_length=2000)


class RejectDSRRequest(BaseModel):
    """Request model for rejecting a data subject request"""
    user_id: UUID
    reason: str = Field(..., min_length=1, max_length=2000)


def _error(e: Exception, message: str, **context) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.error(message, error=str(e), **context)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


# Retention policies

@router.get("/retention/policies")
async def list_policies(
    is_active: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """List retention policies"""
    try:
        policies = await RetentionService(db).list_policies(is_active=is_active)
        return {"status": "success", "data": {"policies": policies, "total": len(policies)}}
    except Exception as e:
        raise _error(e, "Failed to list retention policies")


@router.post("/retention/policies", status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: CreatePolicyRequest,
    user_id: Optional[UUID] = Query(None, description="ID of user creating the policy"),
    db: AsyncSession = Depends(get_db)
):
    """Create a retention policy"""
    try:
        data = request.model_dump()
        policy = await RetentionService(db).create_policy(**data, user_id=user_id)
        return {"status": "success", "message": "Retention policy created", "data": policy}
    except Exception as e:
        raise _error(e, "Failed to create retention policy")


@router.post("/retention/run")
async def run_retention_policies(db: AsyncSession = Depends(get_db)):
    """Run every active retention policy now"""
    try:
        results = await RetentionService(db).run_all_active_retention_policies()
        return {"status": "success", "message": "Retention policies executed", "data": {"results": results}}
    except Exception as e:
        raise _error(e, "Failed to run retention policies")


@router.get("/retention/logs")
async def get_retention_logs(
    policy_id: Optional[UUID] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """Retention run history"""
    try:
        logs = await RetentionService(db).get_retention_logs(policy_id=policy_id, limit=limit)
        return {"status": "success", "data": {"logs": logs, "total": len(logs)}}
    except Exception as e:
        raise _error(e, "Failed to list retention logs")


@router.get("/retention/policies/{policy_id}")
async def get_policy(
    policy_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get a retention policy"""
    try:
        policy = await RetentionService(db).get_policy(policy_id)
        return {"status": "success", "data": policy.to_dict()}
    except Exception as e:
        raise _error(e, "Failed to retrieve retention policy", policy_id=str(policy_id))


@router.patch("/retention/policies/{policy_id}")
async def update_policy(
    policy_id: UUID,
    request: UpdatePolicyRequest,
    user_id: Optional[UUID] = Query(None, description="ID of user making the change"),
    db: AsyncSession = Depends(get_db)
):
    """Update the supplied policy fields"""
    try:
        policy = await RetentionService(db).update_policy(
            policy_id, user_id=user_id, **request.model_dump(exclude_unset=True)
        )
        return {"status": "success", "message": "Retention policy updated", "data": policy}
    except Exception as e:
        raise _error(e, "Failed to update retention policy", policy_id=str(policy_id))


@router.delete("/retention/policies/{policy_id}")
async def delete_policy(
    policy_id: UUID,
    user_id: Optional[UUID] = Query(None, description="ID of user deleting the policy"),
    db: AsyncSession = Depends(get_db)
):
    """Delete a retention policy; its run logs are kept"""
    try:
        await RetentionService(db).delete_policy(policy_id, user_id=user_id)
        return {"status": "success", "message": "Retention policy deleted"}
    except Exception as e:
        raise _error(e, "Failed to delete retention policy", policy_id=str(policy_id))


@router.get("/retention/policies/{policy_id}/preview")
async def preview_policy(
    policy_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    """Records the policy would affect if it ran now"""
    try:
        preview = await RetentionService(db).preview_policy(policy_id, limit=limit)
        return {"status": "success", "data": preview}
    except Exception as e:
        raise _error(e, "Failed to preview retention policy", policy_id=str(policy_id))


@router.post("/retention/policies/{policy_id}/execute")
async def execute_policy(
    policy_id: UUID,
    user_id: Optional[UUID] = Query(None, description="ID of user running the policy"),
    db: AsyncSession = Depends(get_db)
):
    """Run one retention policy now"""
    try:
        result = await RetentionService(db).execute_policy(policy_id, user_id=user_id)
        return {"status": "success", "message": "Retention policy executed", "data": result}
    except Exception as e:
        raise _error(e, "Failed to execute retention policy", policy_id=str(policy_id))


@router.post("/contacts/{contact_id}/anonymize")
async def anonymize_contact(
    contact_id: UUID,
    user_id: Optional[UUID] = Query(None, description="ID of user anonymizing the contact"),
    db: AsyncSession = Depends(get_db)
):
    """Scrub a contact's personal data"""
    try:
        result = await RetentionService(db).anonymize_contact(contact_id, user_id=user_id)
        return {"status": "success", "message": "Contact anonymized", "data": result}
    except Exception as e:
        raise _error(e, "Failed to anonymize contact", contact_id=str(contact_id))


# Data subject requests

@router.get("/dsr")
async def list_dsrs(
    status_filter: Optional[DSRStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    """List data subject requests, newest first"""
    try:
        requests = await RetentionService(db).list_dsrs(status=status_filter, limit=limit)
        return {"status": "success", "data": {"requests": requests, "total": len(requests)}}
    except Exception as e:
        raise _error(e, "Failed to list data subject requests")


@router.post("/dsr", status_code=status.HTTP_201_CREATED)
async def create_dsr(
    request: CreateDSRRequest,
    db: AsyncSession = Depends(get_db)
):
    """Submit a data subject request"""
    try:
        result = await RetentionService(db).create_dsr(**request.model_dump())
        return {"status": "success", "message": "Data subject request created", "data": result}
    except Exception as e:
        raise _error(e, "Failed to create data subject request")


@router.post("/dsr/check-overdue")
async def check_overdue_dsrs(db: AsyncSession = Depends(get_db)):
    """Create notifications for overdue and nearly due requests"""
    try:
        result = await RetentionService(db).check_overdue_dsrs()
        return {"status": "success", "data": result}
    except Exception as e:
        raise _error(e, "Failed to check overdue data subject requests")


@router.post("/dsr/{request_id}/verify")
async def verify_dsr(
    request_id: UUID,
    request: VerifyDSRRequest,
    db: AsyncSession = Depends(get_db)
):
    """Verify a request with the token issued at creation"""
    try:
        result = await RetentionService(db).verify_dsr(request_id, request.token)
        return {"status": "success", "message": "Data subject request verified", "data": result}
    except Exception as e:
        raise _error(e, "Failed to verify data subject request", request_id=str(request_id))


@router.post("/dsr/{request_id}/process")
async def process_dsr(
    request_id: UUID,
    request: ProcessDSRRequest,
    db: AsyncSession = Depends(get_db)
):
    """Fulfil a data subject request"""
    try:
        result = await RetentionService(db).process_dsr(request_id, user_id=request.user_id, notes=request.notes)
        return {"status": "success", "message": "Data subject request processed", "data": result}
    except Exception as e:
        raise _error(e, "Failed to process data subject request", request_id=str(request_id))


@router.post("/dsr/{request_id}/reject")
async def reject_dsr(
    request_id: UUID,
    request: RejectDSRRequest,
    db: AsyncSession = Depends(get_db)
):
    """Reject a data subject request"""
    try:
        result = await RetentionService(db).reject_dsr(request_id, user_id=request.user_id, reason=request.reason)
        return {"status": "success", "message": "Data subject request rejected", "data": result}
    except Exception as e:
        raise _error(e, "Failed to reject data subject request", request_id=str(request_id))


# Notifications and reporting

@router.get("/notifications")
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    """Admin notifications, newest first"""
    try:
        notifications = await RetentionService(db).list_notifications(unread_only=unread_only, limit=limit)
        return {"status": "success", "data": {"notifications": notifications, "total": len(notifications)}}
    except Exception as e:
        raise _error(e, "Failed to list notifications")


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Mark a notification as read"""
    try:
        notification = await RetentionService(db).mark_notification_read(notification_id)
        return {"status": "success", "data": notification}
    except Exception as e:
        raise _error(e, "Failed to update notification", notification_id=str(notification_id))


@router.get("/report")
async def get_retention_report(db: AsyncSession = Depends(get_db)):
    """Compliance overview"""
    try:
        report = await RetentionService(db).get_retention_report()
        return {"status": "success", "data": report}
    except Exception as e:
        raise _error(e, "Failed to build compliance report")
