"""
Pipeline CRM Compliance Models
Retention policies, data subject requests and notifications
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Integer, Boolean, JSON, Uuid
import uuid
from enum import Enum

from ..core.clock import utcnow
from ..core.database import Base


class RetentionEntityType(str, Enum):
    """Record types a retention policy can target"""
    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"
    ACTIVITY = "activity"
    MESSAGE = "message"


class RetentionAction(str, Enum):
    """What a retention policy does to matching records"""
    ARCHIVE = "archive"
    DELETE = "delete"
    ANONYMIZE = "anonymize"


class RetentionRunStatus(str, Enum):
    """Outcome of one policy execution"""
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class DSRType(str, Enum):
    """Data subject request type"""
    ACCESS = "access"
    DELETE = "delete"
    PORTABILITY = "portability"
    RECTIFICATION = "rectification"
    RESTRICTION = "restriction"


class DSRStatus(str, Enum):
    """Data subject request status"""
    PENDING = "pending"
    VERIFIED = "verified"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RetentionPolicy(Base):
    """Rule that archives, deletes or anonymizes records past a retention period"""
    __tablename__ = "retention_policies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    entity_type = Column(String(20), nullable=False)
    retention_days = Column(Integer, nullable=False)
    action = Column(String(20), nullable=False)
    conditions = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, index=True)
    last_run_at = Column(DateTime)
    last_run_result = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "retention_days": self.retention_days,
            "action": self.action,
            "conditions": self.conditions or [],
            "is_active": self.is_active,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_result": self.last_run_result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RetentionLog(Base):
    """Result of one retention policy execution"""
    __tablename__ = "retention_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    policy_id = Column(Uuid, ForeignKey("retention_policies.id", ondelete="SET NULL"), index=True)
    policy_name = Column(String(200))
    executed_at = Column(DateTime, default=utcnow, index=True)
    entity_type = Column(String(20))
    action = Column(String(20))
    records_processed = Column(Integer, default=0)
    records_affected = Column(Integer, default=0)
    affected_record_ids = Column(JSON, default=list)
    status = Column(String(20))
    errors = Column(JSON)

    def to_dict(self):
        return {
            "id": str(self.id),
            "policy_id": str(self.policy_id) if self.policy_id else None,
            "policy_name": self.policy_name,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "entity_type": self.entity_type,
            "action": self.action,
            "records_processed": self.records_processed,
            "records_affected": self.records_affected,
            "affected_record_ids": self.affected_record_ids or [],
            "status": self.status,
            "errors": self.errors,
        }


class AnonymizationRecord(Base):
    """Audit row written whenever a record is anonymized"""
    __tablename__ = "anonymization_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Uuid, nullable=False)
    triggered_by = Column(String(50), nullable=False)
    policy_id = Column(Uuid)
    dsr_id = Column(Uuid)
    anonymized_fields = Column(JSON, default=list)
    performed_at = Column(DateTime, default=utcnow)


class DataSubjectRequest(Base):
    """GDPR-style request from a data subject"""
    __tablename__ = "data_subject_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(String(20), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(50))
    status = Column(String(20), default=DSRStatus.PENDING.value, index=True)
    verification_token = Column(String(64))
    requested_at = Column(DateTime, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    verified_at = Column(DateTime)
    completed_at = Column(DateTime)
    assigned_to = Column(Uuid)
    notes = Column(Text)
    records_found = Column(Integer)
    records_processed = Column(Integer)
    result_summary = Column(Text)

    def to_dict(self):
        return {
            "id": str(self.id),
            "type": self.type,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes,
            "records_found": self.records_found,
            "records_processed": self.records_processed,
            "result_summary": self.result_summary,
        }


class Notification(Base):
    """In-app notification for admins"""
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text)
    link = Column(Text)
    read = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": str(self.id),
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "read": self.read,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
