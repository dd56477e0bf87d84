"""
Pipeline CRM Core Models
"""

from .deals import Deal, DealStatus, Pipeline, DEFAULT_PIPELINE_STAGES
from .forecasts import Forecast, ForecastSnapshot, ForecastPeriod, ForecastCategory
from .records import Contact, Company, Activity, Message
from .compliance import (
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
from .events import ActivityLog
from .webhooks import WebhookSubscription, WebhookDelivery, DeliveryStatus

__all__ = [
    "Deal",
    "DealStatus",
    "Pipeline",
    "DEFAULT_PIPELINE_STAGES",
    "Forecast",
    "ForecastSnapshot",
    "ForecastPeriod",
    "ForecastCategory",
    "Contact",
    "Company",
    "Activity",
    "Message",
    "RetentionPolicy",
    "RetentionLog",
    "RetentionEntityType",
    "RetentionAction",
    "RetentionRunStatus",
    "AnonymizationRecord",
    "DataSubjectRequest",
    "DSRType",
    "DSRStatus",
    "Notification",
    "ActivityLog",
    "WebhookSubscription",
    "WebhookDelivery",
    "DeliveryStatus",
]
