"""
Pipeline CRM Activity Log Model
"""

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Uuid
import uuid

from ..core.clock import utcnow
from ..core.database import Base


class ActivityLog(Base):
    """Audit trail of user and system actions"""
    __tablename__ = "activity_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    user_id = Column(Uuid)
    system = Column(Boolean, default=False)
    changes = Column(JSON)
    extra = Column("metadata", JSON)
    timestamp = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<ActivityLog(action='{self.action}', entity='{self.entity_type}:{self.entity_id}')>"
