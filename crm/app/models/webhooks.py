"""
Pipeline CRM Outbound Webhook Models
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Integer, Boolean, JSON, Uuid
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.clock import utcnow
from ..core.database import Base


class DeliveryStatus(str, Enum):
    """Webhook delivery status"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookSubscription(Base):
    """External endpoint subscribed to CRM events"""
    __tablename__ = "webhook_subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    url = Column(Text, nullable=False)
    events = Column(JSON, nullable=False, default=list)
    secret = Column(String(64), nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    failure_count = Column(Integer, default=0)
    last_triggered_at = Column(DateTime)
    created_by = Column(Uuid)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    deliveries = relationship(
        "WebhookDelivery",
        back_populates="subscription",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_secret: bool = False):
        data = {
            "id": str(self.id),
            "name": self.name,
            "url": self.url,
            "events": self.events or [],
            "is_active": self.is_active,
            "failure_count": self.failure_count,
            "last_triggered_at": self.last_triggered_at.isoformat() if self.last_triggered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_secret:
            data["secret"] = self.secret
        return data


class WebhookDelivery(Base):
    """One queued or attempted delivery of an event to a subscription"""
    __tablename__ = "webhook_deliveries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid, ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    event = Column(String(100), nullable=False)
    payload = Column(JSON)
    status = Column(String(20), default=DeliveryStatus.PENDING.value, index=True)
    attempts = Column(Integer, default=0)
    next_retry_at = Column(DateTime)
    response_code = Column(Integer)
    response_body = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow, index=True)
    delivered_at = Column(DateTime)

    subscription = relationship("WebhookSubscription", back_populates="deliveries")

    def to_dict(self):
        return {
            "id": str(self.id),
            "subscription_id": str(self.subscription_id),
            "event": self.event,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "response_code": self.response_code,
            "response_body": self.response_body,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
