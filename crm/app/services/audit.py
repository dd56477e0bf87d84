"""
Pipeline CRM Activity Log helper
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..models.events import ActivityLog


def log_activity(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: Any,
    user_id: Optional[UUID] = None,
    system: bool = False,
    changes: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """Stage an audit row in the caller's transaction"""
    entry = ActivityLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        user_id=user_id,
        system=system,
        changes=changes,
        extra=metadata,
        timestamp=utcnow(),
    )
    db.add(entry)
    return entry


def jsonable(value: Any) -> Any:
    """Make a column value storable in a JSON audit column"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value
