"""
Pipeline CRM Retention Service
Data retention policies, anonymization and data subject requests
"""

import secrets
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import structlog

from ..core.clock import utcnow, days_between
from ..core.config import settings
from ..core.errors import NotFoundError
from ..core.metrics import RETENTION_RECORDS_AFFECTED
from ..models.deals import Deal
from ..models.records import Contact, Company, Activity, Message
from ..models.compliance import (
    RetentionPolicy,
    RetentionLog,
    RetentionEntityType,
    RetentionAction,
    RetentionRunStatus,
    AnonymizationRecord,
    DataSubjectRequest,
    DSRType,
    DSRStatus,
    Notification,
)
from .audit import log_activity
from .nats_client import publish_event

logger = structlog.get_logger()

ENTITY_MODELS = {
    RetentionEntityType.CONTACT.value: Contact,
    RetentionEntityType.COMPANY.value: Company,
    RetentionEntityType.DEAL.value: Deal,
    RetentionEntityType.ACTIVITY.value: Activity,
    RetentionEntityType.MESSAGE.value: Message,
}

CONDITION_OPERATORS = (
    "equals", "notEquals", "greaterThan", "lessThan", "contains",
    "isEmpty", "isNotEmpty", "daysSinceGreaterThan", "daysSinceLessThan",
)

ARCHIVED_TAG = "_archived"
REDACTED = "[REDACTED]"
OPEN_DSR_STATUSES = (DSRStatus.PENDING.value, DSRStatus.VERIFIED.value, DSRStatus.IN_PROGRESS.value)

POLICY_UPDATABLE_FIELDS = (
    "name", "description", "entity_type", "retention_days", "action", "conditions", "is_active",
)


def record_date(entity_type: str, record) -> Optional[datetime]:
    """Timestamp a retention period is measured from"""
    if entity_type == RetentionEntityType.MESSAGE.value:
        return record.timestamp
    return record.created_at or getattr(record, "updated_at", None)


def date_column(entity_type: str):
    model = ENTITY_MODELS[entity_type]
    if entity_type == RetentionEntityType.MESSAGE.value:
        return model.timestamp
    return model.created_at


def _is_empty(value) -> bool:
    return value is None or value == "" or value == []


def evaluate_condition(record, condition: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True when `record` satisfies one policy condition.

    Unknown operators match everything. Ordering comparisons against a
    missing or incomparable value do not match.
    """
    value = getattr(record, condition.get("field", ""), None)
    expected = condition.get("value")
    operator = condition.get("operator")

    if operator == "equals":
        return value == expected
    if operator == "notEquals":
        return value != expected
    if operator in ("greaterThan", "lessThan"):
        try:
            return value > expected if operator == "greaterThan" else value < expected
        except TypeError:
            return False
    if operator == "contains":
        return str(expected).lower() in str(value).lower()
    if operator == "isEmpty":
        return _is_empty(value)
    if operator == "isNotEmpty":
        return not _is_empty(value)
    if operator in ("daysSinceGreaterThan", "daysSinceLessThan"):
        if not isinstance(value, datetime) or not isinstance(expected, (int, float)):
            return False
        days_since = days_between(value, now or utcnow())
        return days_since > expected if operator == "daysSinceGreaterThan" else days_since < expected
    return True


def run_status(errors: int, processed: int) -> str:
    if errors == 0:
        return RetentionRunStatus.COMPLETED.value
    if errors < processed:
        return RetentionRunStatus.PARTIAL.value
    return RetentionRunStatus.FAILED.value


class RetentionService:
    """Service for retention policies and data subject requests"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Policies

    async def get_policy(self, policy_id: UUID) -> RetentionPolicy:
        policy = await self.db.get(RetentionPolicy, policy_id)
        if not policy:
            raise NotFoundError("Policy not found")
        return policy

    async def list_policies(self, is_active: Optional[bool] = None) -> List[Dict[str, Any]]:
        query = select(RetentionPolicy).order_by(RetentionPolicy.created_at.desc())
        if is_active is not None:
            query = query.where(RetentionPolicy.is_active == is_active)

        result = await self.db.execute(query)
        return [policy.to_dict() for policy in result.scalars().all()]

    async def create_policy(
        self,
        name: str,
        entity_type: RetentionEntityType,
        retention_days: int,
        action: RetentionAction,
        conditions: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
        is_active: bool = True,
        user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        self._validate_conditions(conditions or [])

        try:
            policy = RetentionPolicy(
                name=name,
                description=description,
                entity_type=RetentionEntityType(entity_type).value,
                retention_days=retention_days,
                action=RetentionAction(action).value,
                conditions=conditions or [],
                is_active=is_active,
            )
            self.db.add(policy)
            await self.db.flush()

            log_activity(
                self.db,
                action="retention_policy_created",
                entity_type="retention_policy",
                entity_id=policy.id,
                user_id=user_id,
                metadata={"name": name, "entity_type": policy.entity_type, "action": policy.action},
            )
            await self.db.commit()
            await self.db.refresh(policy)

            logger.info("Retention policy created", policy_id=str(policy.id), entity_type=policy.entity_type, action=policy.action)
            return policy.to_dict()

        except Exception as e:
            await self.db.rollback()
            logger.error("Retention policy creation failed", error=str(e))
            raise

    async def update_policy(self, policy_id: UUID, user_id: Optional[UUID] = None, **updates) -> Dict[str, Any]:
        policy = await self.get_policy(policy_id)

        if updates.get("conditions") is not None:
            self._validate_conditions(updates["conditions"])
        if updates.get("entity_type") is not None:
            updates["entity_type"] = RetentionEntityType(updates["entity_type"]).value
        if updates.get("action") is not None:
            updates["action"] = RetentionAction(updates["action"]).value

        changed = []
        for field in POLICY_UPDATABLE_FIELDS:
            if updates.get(field) is not None:
                setattr(policy, field, updates[field])
                changed.append(field)

        policy.updated_at = utcnow()
        log_activity(
            self.db,
            action="retention_policy_updated",
            entity_type="retention_policy",
            entity_id=policy.id,
            user_id=user_id,
            metadata={"fields": changed},
        )
        await self.db.commit()
        await self.db.refresh(policy)

        logger.info("Retention policy updated", policy_id=str(policy_id), fields=changed)
        return policy.to_dict()

    async def delete_policy(self, policy_id: UUID, user_id: Optional[UUID] = None) -> None:
        policy = await self.get_policy(policy_id)
        name = policy.name

        await self.db.delete(policy)
        log_activity(
            self.db,
            action="retention_policy_deleted",
            entity_type="retention_policy",
            entity_id=policy_id,
            user_id=user_id,
            metadata={"name": name},
        )
        await self.db.commit()

        logger.info("Retention policy deleted", policy_id=str(policy_id))

    async def preview_policy(self, policy_id: UUID, limit: int = 100) -> Dict[str, Any]:
        """Records the policy would touch right now, without touching them"""
        policy = await self.get_policy(policy_id)
        records = await self._matching_records(policy, limit)

        return {
            "count": len(records),
            "has_more": len(records) >= limit,
            "records": [self._preview_record(policy.entity_type, record) for record in records],
        }

    async def get_retention_logs(self, policy_id: Optional[UUID] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = select(RetentionLog)
        if policy_id:
            query = query.where(RetentionLog.policy_id == policy_id)

        result = await self.db.execute(query.order_by(RetentionLog.executed_at.desc()).limit(limit))
        return [log.to_dict() for log in result.scalars().all()]

    # Policy execution

    async def execute_policy(self, policy_id: UUID, user_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one policy and commit its effects together with its log row"""
        now = now or utcnow()
        policy = await self.get_policy(policy_id)

        try:
            records = await self._matching_records(policy, settings.retention_batch_limit, now)

            affected_ids: List[str] = []
            errors: List[str] = []

            for record in records:
                record_id = str(record.id)
                try:
                    # Savepoint per record; a constraint failure only undoes this one
                    async with self.db.begin_nested():
                        await self._apply_action(policy, record, now)
                    affected_ids.append(record_id)
                except Exception as e:
                    errors.append(f"{record_id}: {e}")

            policy.last_run_at = now
            policy.last_run_result = {
                "records_processed": len(records),
                "records_affected": len(affected_ids),
                "errors": errors or None,
            }

            self.db.add(RetentionLog(
                policy_id=policy.id,
                policy_name=policy.name,
                executed_at=now,
                entity_type=policy.entity_type,
                action=policy.action,
                records_processed=len(records),
                records_affected=len(affected_ids),
                affected_record_ids=affected_ids,
                status=run_status(len(errors), len(records)),
                errors=errors or None,
            ))

            entity_type, action = policy.entity_type, policy.action
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error("Retention policy execution failed", policy_id=str(policy_id), error=str(e))
            raise

        if affected_ids:
            RETENTION_RECORDS_AFFECTED.labels(entity_type=entity_type, action=action).inc(len(affected_ids))

        logger.info(
            "Retention policy executed",
            policy_id=str(policy_id),
            records_processed=len(records),
            records_affected=len(affected_ids),
            errors=len(errors)
        )

        return {
            "records_processed": len(records),
            "records_affected": len(affected_ids),
            "errors": errors,
        }

    async def run_all_active_retention_policies(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Execute every active policy; one failing policy never stops the run"""
        now = now or utcnow()

        result = await self.db.execute(
            select(RetentionPolicy.id, RetentionPolicy.name)
            .where(RetentionPolicy.is_active.is_(True))
            .order_by(RetentionPolicy.created_at)
        )
        policies = result.all()

        results = []
        for policy_id, name in policies:
            try:
                outcome = await self.execute_policy(policy_id, now=now)
                results.append({
                    "policy_id": str(policy_id),
                    "name": name,
                    "success": not outcome["errors"],
                    "records_affected": outcome["records_affected"],
                    "error": f"{len(outcome['errors'])} errors" if outcome["errors"] else None,
                })
            except Exception as e:
                results.append({
                    "policy_id": str(policy_id),
                    "name": name,
                    "success": False,
                    "records_affected": 0,
                    "error": str(e),
                })

        summary = {
            "policies_run": len(results),
            "total_records_affected": sum(r["records_affected"] for r in results),
            "successful_policies": len([r for r in results if r["success"]]),
        }

        log_activity(
            self.db,
            action="retention_cron_completed",
            entity_type="system",
            entity_id="cron",
            system=True,
            metadata=summary,
        )
        await self.db.commit()

        logger.info("Retention run completed", **summary)
        await publish_event("compliance.retention_completed", summary)

        return results

    async def _matching_records(self, policy: RetentionPolicy, limit: int, now: Optional[datetime] = None) -> List[Any]:
        now = now or utcnow()
        model = ENTITY_MODELS[policy.entity_type]
        column = date_column(policy.entity_type)
        cutoff = now - timedelta(days=policy.retention_days)

        result = await self.db.execute(
            select(model).where(column.is_not(None), column < cutoff).order_by(column)
        )

        records = [
            record for record in result.scalars().all()
            if all(evaluate_condition(record, condition, now) for condition in policy.conditions or [])
        ]
        # The rest wait for the next run
        return records[:limit]

    async def _apply_action(self, policy: RetentionPolicy, record, now: datetime):
        if policy.action == RetentionAction.DELETE.value:
            await self.db.delete(record)
        elif policy.action == RetentionAction.ARCHIVE.value:
            record.tags = list(record.tags or []) + [ARCHIVED_TAG]
            if hasattr(record, "updated_at"):
                record.updated_at = now
        elif policy.action == RetentionAction.ANONYMIZE.value:
            self.anonymize_record(policy.entity_type, record, triggered_by="retention_policy", policy_id=policy.id, now=now)

    # Anonymization

    def anonymize_record(
        self,
        entity_type: str,
        record,
        triggered_by: str,
        policy_id: Optional[UUID] = None,
        dsr_id: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> List[str]:
        """Scrub personal fields in place and stage an AnonymizationRecord"""
        now = now or utcnow()
        fields: List[str] = []

        if entity_type == RetentionEntityType.CONTACT.value:
            fields = [name for name in ("first_name", "last_name", "email", "phone", "address") if getattr(record, name)]
            record.first_name = REDACTED
            record.last_name = REDACTED
            record.email = f"anonymized-{secrets.token_hex(3)}@privacy.local"
            record.phone = None
            record.avatar_url = None
            record.linkedin_url = None
            record.twitter_handle = None
            record.address = None
            record.enrichment_data = None
            record.updated_at = now
        elif entity_type == RetentionEntityType.COMPANY.value:
            record.phone = None
            record.address = None
            record.enrichment_data = None
            record.updated_at = now
            fields = ["phone", "address", "enrichment_data"]
        elif entity_type == RetentionEntityType.DEAL.value:
            record.ai_insights = None
            record.updated_at = now
            fields = ["ai_insights"]
        elif entity_type == RetentionEntityType.ACTIVITY.value:
            record.description = REDACTED
            record.ai_summary = None
            record.updated_at = now
            fields = ["description", "ai_summary"]
        elif entity_type == RetentionEntityType.MESSAGE.value:
            record.content = "[MESSAGE CONTENT REDACTED]"
            record.media_url = None
            fields = ["content", "media_url"]
        else:
            raise ValueError(f"Unsupported entity type: {entity_type}")

        self.db.add(AnonymizationRecord(
            entity_type=entity_type,
            entity_id=record.id,
            triggered_by=triggered_by,
            policy_id=policy_id,
            dsr_id=dsr_id,
            anonymized_fields=fields,
            performed_at=now,
        ))

        return fields

    async def anonymize_contact(self, contact_id: UUID, user_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Manually anonymize one contact"""
        contact = await self.db.get(Contact, contact_id)
        if not contact:
            raise NotFoundError("Contact not found")

        fields = self.anonymize_record(RetentionEntityType.CONTACT.value, contact, triggered_by="manual")
        log_activity(
            self.db,
            action="contact_anonymized",
            entity_type="contact",
            entity_id=contact_id,
            user_id=user_id,
            metadata={"anonymized_fields": fields},
        )
        await self.db.commit()

        logger.info("Contact anonymized", contact_id=str(contact_id), fields=fields)
        return {"success": True, "anonymized_fields": fields}

    # Data subject requests

    async def get_dsr(self, request_id: UUID) -> DataSubjectRequest:
        request = await self.db.get(DataSubjectRequest, request_id)
        if not request:
            raise NotFoundError("Request not found")
        return request

    async def list_dsrs(self, status: Optional[DSRStatus] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = select(DataSubjectRequest)
        if status:
            query = query.where(DataSubjectRequest.status == DSRStatus(status).value)

        result = await self.db.execute(query.order_by(DataSubjectRequest.requested_at.desc()).limit(limit))
        return [request.to_dict() for request in result.scalars().all()]

    async def create_dsr(
        self,
        type: DSRType,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Dict[str, Any]:
        """Register a request; it must be verified with the returned token"""
        now = utcnow()
        token = secrets.token_urlsafe(24)

        request = DataSubjectRequest(
            type=DSRType(type).value,
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            status=DSRStatus.PENDING.value,
            verification_token=token,
            requested_at=now,
            due_date=now + timedelta(days=settings.dsr_due_days),
        )
        self.db.add(request)
        await self.db.flush()

        log_activity(
            self.db,
            action="dsr_created",
            entity_type="data_subject_request",
            entity_id=request.id,
            system=True,
            metadata={"type": request.type, "email": email},
        )
        await self.db.commit()

        logger.info("Data subject request created", request_id=str(request.id), type=request.type)
        return {"request_id": str(request.id), "verification_token": token}

    async def verify_dsr(self, request_id: UUID, token: str) -> Dict[str, Any]:
        request = await self.get_dsr(request_id)

        if not secrets.compare_digest(request.verification_token or "", token):
            raise ValueError("Invalid verification token")
        if request.status != DSRStatus.PENDING.value:
            raise ValueError("Request has already been verified or processed")

        request.status = DSRStatus.VERIFIED.value
        request.verified_at = utcnow()
        log_activity(self.db, action="dsr_verified", entity_type="data_subject_request", entity_id=request.id, system=True)
        await self.db.commit()

        logger.info("Data subject request verified", request_id=str(request_id))
        return {"success": True}

    async def process_dsr(self, request_id: UUID, user_id: UUID, notes: Optional[str] = None) -> Dict[str, Any]:
        """Fulfil a request against the contacts sharing its email"""
        request = await self.get_dsr(request_id)
        if request.status not in OPEN_DSR_STATUSES:
            raise ValueError("Request has already been completed or rejected")

        now = utcnow()

        try:
            request.status = DSRStatus.IN_PROGRESS.value
            request.assigned_to = user_id
            request.notes = notes

            result = await self.db.execute(select(Contact).where(Contact.email == request.email))
            contacts = result.scalars().all()
            records_found = len(contacts)

            if request.type == DSRType.DELETE.value:
                for contact in contacts:
                    self.anonymize_record(
                        RetentionEntityType.CONTACT.value, contact, triggered_by="dsr", dsr_id=request.id, now=now
                    )
                records_processed = records_found
            elif request.type in (DSRType.ACCESS.value, DSRType.PORTABILITY.value):
                records_processed = records_found
            else:
                # Rectification and restriction are handled manually
                records_processed = 0

            request.status = DSRStatus.COMPLETED.value
            request.records_found = records_found
            request.records_processed = records_processed
            request.completed_at = now
            request.result_summary = f"Found {records_found} records, processed {records_processed}"

            log_activity(
                self.db,
                action="dsr_completed",
                entity_type="data_subject_request",
                entity_id=request.id,
                user_id=user_id,
                metadata={"records_found": records_found, "records_processed": records_processed},
            )
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error("Data subject request processing failed", request_id=str(request_id), error=str(e))
            raise

        logger.info("Data subject request processed", request_id=str(request_id), records_found=records_found, records_processed=records_processed)
        return {"records_found": records_found, "records_processed": records_processed}

    async def reject_dsr(self, request_id: UUID, user_id: UUID, reason: str) -> Dict[str, Any]:
        request = await self.get_dsr(request_id)
        if request.status not in OPEN_DSR_STATUSES:
            raise ValueError("Request has already been completed or rejected")

        request.status = DSRStatus.REJECTED.value
        request.assigned_to = user_id
        request.notes = reason
        request.completed_at = utcnow()

        log_activity(
            self.db,
            action="dsr_rejected",
            entity_type="data_subject_request",
            entity_id=request.id,
            user_id=user_id,
            metadata={"reason": reason},
        )
        await self.db.commit()

        logger.info("Data subject request rejected", request_id=str(request_id))
        return {"success": True}

    async def check_overdue_dsrs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Notify admins about open requests that are overdue or due soon"""
        now = now or utcnow()
        warning_threshold = timedelta(days=settings.dsr_warning_days)

        result = await self.db.execute(
            select(DataSubjectRequest).where(DataSubjectRequest.status.in_(OPEN_DSR_STATUSES))
        )

        overdue = 0
        near_due = 0
        for request in result.scalars().all():
            link = f"/settings/retention?tab=dsr&id={request.id}"

            if request.due_date < now:
                overdue += 1
                self.db.add(Notification(
                    type="system",
                    title="Overdue Data Subject Request",
                    message=f"DSR from {request.email} ({request.type}) is overdue. GDPR requires response within {settings.dsr_due_days} days.",
                    link=link,
                    read=False,
                    created_at=now,
                ))
            elif request.due_date - now < warning_threshold:
                near_due += 1
                self.db.add(Notification(
                    type="system",
                    title="Data Subject Request Due Soon",
                    message=f"DSR from {request.email} ({request.type}) is due in less than {settings.dsr_warning_days} days.",
                    link=link,
                    read=False,
                    created_at=now,
                ))

        counts = {"overdue_count": overdue, "near_due_count": near_due}

        if overdue or near_due:
            log_activity(
                self.db,
                action="dsr_check_completed",
                entity_type="data_subject_request",
                entity_id="cron",
                system=True,
                metadata=counts,
            )
        await self.db.commit()

        logger.info("Overdue DSR check completed", **counts)
        await publish_event("compliance.dsr_checked", counts)

        return counts

    # Notifications and reporting

    async def list_notifications(self, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        query = select(Notification)
        if unread_only:
            query = query.where(Notification.read.is_(False))

        result = await self.db.execute(query.order_by(Notification.created_at.desc()).limit(limit))
        return [notification.to_dict() for notification in result.scalars().all()]

    async def mark_notification_read(self, notification_id: UUID) -> Dict[str, Any]:
        notification = await self.db.get(Notification, notification_id)
        if not notification:
            raise NotFoundError("Notification not found")

        notification.read = True
        await self.db.commit()
        return notification.to_dict()

    async def get_retention_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Compliance overview of policies, recent runs and request backlog"""
        now = now or utcnow()

        policies = (await self.db.execute(select(RetentionPolicy))).scalars().all()
        recent_logs = (await self.db.execute(
            select(RetentionLog).order_by(RetentionLog.executed_at.desc()).limit(100)
        )).scalars().all()
        requests = (await self.db.execute(select(DataSubjectRequest))).scalars().all()
        anonymizations = (await self.db.execute(
            select(AnonymizationRecord.id).order_by(AnonymizationRecord.performed_at.desc()).limit(100)
        )).all()

        stats_by_entity: Dict[str, Dict[str, int]] = {}
        for log in recent_logs:
            stats = stats_by_entity.setdefault(log.entity_type, {"processed": 0, "affected": 0})
            stats["processed"] += log.records_processed or 0
            stats["affected"] += log.records_affected or 0

        return {
            "summary": {
                "total_policies": len(policies),
                "active_policies": len([p for p in policies if p.is_active]),
                "total_dsrs": len(requests),
                "pending_dsrs": len([r for r in requests if r.status in (DSRStatus.PENDING.value, DSRStatus.VERIFIED.value)]),
                "overdue_dsrs": len([r for r in requests if r.status in OPEN_DSR_STATUSES and r.due_date < now]),
                "total_anonymizations": len(anonymizations),
            },
            "policies": [policy.to_dict() for policy in policies],
            "recent_activity": [log.to_dict() for log in recent_logs[:20]],
            "dsrs_by_type": {
                dsr_type.value: len([r for r in requests if r.type == dsr_type.value]) for dsr_type in DSRType
            },
            "stats_by_entity": stats_by_entity,
        }

    def _validate_conditions(self, conditions: List[Dict[str, Any]]):
        for condition in conditions:
            if not condition.get("field"):
                raise ValueError("Policy conditions need a field")
            if condition.get("operator") not in CONDITION_OPERATORS:
                raise ValueError(f"Unknown condition operator: {condition.get('operator')}")

    def _preview_record(self, entity_type: str, record) -> Dict[str, Any]:
        date = record_date(entity_type, record)
        preview = {"id": str(record.id), "date": date.isoformat() if date else None}

        if entity_type == RetentionEntityType.CONTACT.value:
            preview["name"] = f"{record.first_name or ''} {record.last_name or ''}".strip()
            preview["email"] = record.email
        elif entity_type == RetentionEntityType.COMPANY.value:
            preview["name"] = record.name
            preview["domain"] = record.domain
        elif entity_type == RetentionEntityType.DEAL.value:
            preview["name"] = record.name
            preview["status"] = record.status
        elif entity_type == RetentionEntityType.ACTIVITY.value:
            preview["subject"] = record.subject
            preview["type"] = record.type
        elif entity_type == RetentionEntityType.MESSAGE.value:
            preview["content"] = (record.content or "")[:50]

        return preview
