"""
Pipeline CRM Deal Models
"""

from sqlalchemy import Column, String, Numeric, DateTime, Text, ForeignKey, Float, Boolean, JSON, Uuid, CheckConstraint
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.clock import utcnow
from ..core.database import Base


class DealStatus(str, Enum):
    """Deal status enumeration"""
    OPEN = "open"
    WON = "won"
    LOST = "lost"


DEFAULT_PIPELINE_STAGES = [
    {"id": "lead", "name": "Lead", "color": "#6B7280", "order": 0, "probability": 10},
    {"id": "qualified", "name": "Qualified", "color": "#3B82F6", "order": 1, "probability": 25},
    {"id": "proposal", "name": "Proposal", "color": "#8B5CF6", "order": 2, "probability": 50},
    {"id": "negotiation", "name": "Negotiation", "color": "#F59E0B", "order": 3, "probability": 75},
    {"id": "closed_won", "name": "Closed Won", "color": "#10B981", "order": 4, "probability": 100},
    {"id": "closed_lost", "name": "Closed Lost", "color": "#EF4444", "order": 5, "probability": 0},
]


class Pipeline(Base):
    """Sales pipeline with an ordered list of stages"""
    __tablename__ = "pipelines"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    stages = Column(JSON, nullable=False, default=list)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    deals = relationship("Deal", back_populates="pipeline")

    def get_stage(self, stage_id: str):
        """Find a stage definition by id"""
        for stage in self.stages or []:
            if stage.get("id") == stage_id:
                return stage
        return None

    def __repr__(self):
        return f"<Pipeline(name='{self.name}', stages={len(self.stages or [])})>"


class Deal(Base):
    """Deal model for tracking sales opportunities"""
    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint("probability >= 0 AND probability <= 100", name="ck_deals_probability"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    pipeline_id = Column(Uuid, ForeignKey("pipelines.id"), index=True)
    stage_id = Column(String(50))
    amount = Column(Numeric(14, 2, asdecimal=False))
    currency = Column(String(3), default="USD")
    probability = Column(Float)
    status = Column(String(20), default=DealStatus.OPEN.value, index=True)
    expected_close_date = Column(DateTime, index=True)
    actual_close_date = Column(DateTime)
    lost_reason = Column(Text)
    owner_id = Column(Uuid)
    tags = Column(JSON, default=list)
    ai_insights = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    stage_changed_at = Column(DateTime, default=utcnow)

    # Relationships
    pipeline = relationship("Pipeline", back_populates="deals")

    @property
    def is_won(self) -> bool:
        """Check if deal is won"""
        return self.status == DealStatus.WON.value

    @property
    def is_lost(self) -> bool:
        """Check if deal is lost"""
        return self.status == DealStatus.LOST.value

    @property
    def is_closed(self) -> bool:
        """Check if deal is closed (won or lost)"""
        return self.is_won or self.is_lost

    @property
    def weighted_value(self) -> float:
        """Calculate weighted value based on probability"""
        if self.amount and self.probability:
            return float(self.amount) * (self.probability / 100)
        return 0.0

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "pipeline_id": str(self.pipeline_id) if self.pipeline_id else None,
            "stage_id": self.stage_id,
            "amount": self.amount,
            "currency": self.currency,
            "probability": self.probability,
            "status": self.status,
            "expected_close_date": self.expected_close_date.isoformat() if self.expected_close_date else None,
            "actual_close_date": self.actual_close_date.isoformat() if self.actual_close_date else None,
            "lost_reason": self.lost_reason,
            "owner_id": str(self.owner_id) if self.owner_id else None,
            "tags": self.tags or [],
            "weighted_value": self.weighted_value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "stage_changed_at": self.stage_changed_at.isoformat() if self.stage_changed_at else None,
        }

    def __repr__(self):
        return f"<Deal(name='{self.name}', status='{self.status}', amount={self.amount})>"
