"""
Pipeline CRM Forecast Models
"""

from sqlalchemy import Column, String, Numeric, DateTime, Text, ForeignKey, Boolean, Integer, JSON, Uuid
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.clock import utcnow
from ..core.database import Base


class ForecastPeriod(str, Enum):
    """Forecast period enumeration"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ForecastCategory(str, Enum):
    """Bucket a deal falls into for forecasting"""
    COMMITTED = "committed"
    BEST_CASE = "best_case"
    PIPELINE = "pipeline"
    OMITTED = "omitted"


class Forecast(Base):
    """Revenue forecast over a date window.

    The aggregate columns are a cache: they reflect the deals as of
    ``last_calculated_at`` and are only refreshed by a calculation.
    """
    __tablename__ = "forecasts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    period = Column(String(20), nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    target_revenue = Column(Numeric(14, 2, asdecimal=False))
    pipeline_id = Column(Uuid, ForeignKey("pipelines.id"))
    owner_id = Column(Uuid)
    created_by = Column(Uuid)
    is_active = Column(Boolean, default=True, index=True)

    # Cached aggregates
    committed = Column(Numeric(14, 2, asdecimal=False))
    best_case = Column(Numeric(14, 2, asdecimal=False))
    pipeline = Column(Numeric(14, 2, asdecimal=False))
    closed = Column(Numeric(14, 2, asdecimal=False))
    predicted_revenue = Column(Numeric(14, 2, asdecimal=False))
    confidence = Column(Integer)
    prediction_factors = Column(JSON)
    last_calculated_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    snapshots = relationship(
        "ForecastSnapshot",
        back_populates="forecast",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "period": self.period,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "target_revenue": self.target_revenue,
            "pipeline_id": str(self.pipeline_id) if self.pipeline_id else None,
            "owner_id": str(self.owner_id) if self.owner_id else None,
            "created_by": str(self.created_by) if self.created_by else None,
            "is_active": self.is_active,
            "committed": self.committed,
            "best_case": self.best_case,
            "pipeline": self.pipeline,
            "closed": self.closed,
            "predicted_revenue": self.predicted_revenue,
            "confidence": self.confidence,
            "prediction_factors": self.prediction_factors or [],
            "last_calculated_at": self.last_calculated_at.isoformat() if self.last_calculated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Forecast(name='{self.name}', period='{self.period}')>"


class ForecastSnapshot(Base):
    """Append-only point-in-time copy of a forecast"""
    __tablename__ = "forecast_snapshots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    forecast_id = Column(Uuid, ForeignKey("forecasts.id", ondelete="CASCADE"), nullable=False, index=True)
    snapshot_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    committed = Column(Numeric(14, 2, asdecimal=False), default=0)
    best_case = Column(Numeric(14, 2, asdecimal=False), default=0)
    pipeline = Column(Numeric(14, 2, asdecimal=False), default=0)
    closed = Column(Numeric(14, 2, asdecimal=False), default=0)
    predicted_total = Column(Numeric(14, 2, asdecimal=False))
    confidence = Column(Integer)
    predictions = Column(JSON, default=list)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    forecast = relationship("Forecast", back_populates="snapshots")

    def to_dict(self):
        return {
            "id": str(self.id),
            "forecast_id": str(self.forecast_id),
            "snapshot_date": self.snapshot_date.isoformat() if self.snapshot_date else None,
            "committed": self.committed,
            "best_case": self.best_case,
            "pipeline": self.pipeline,
            "closed": self.closed,
            "predicted_total": self.predicted_total,
            "confidence": self.confidence,
            "predictions": self.predictions or [],
            "notes": self.notes,
        }
