"""
Lifecycle event logging for enrollments
"""
from sqlalchemy.orm import Session
from enrollpay.models.enrollment_event import EnrollmentEvent
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, Any
import uuid


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


def record_event(
    db: Session,
    enrollment_id: uuid.UUID,
    event_type: str,
    data: Optional[dict] = None,
    commit: bool = False,
) -> EnrollmentEvent:
    """
    Append a lifecycle event for an enrollment.

    Args:
        db: Database session
        enrollment_id: Enrollment the event belongs to
        event_type: Free-form tag (e.g. "opened", "checkout_completed")
        data: Structured payload; datetimes, UUIDs and enums are converted for JSON
        commit: Commit immediately. Leave False to commit together with the
            state change the event describes.
    """
    event = EnrollmentEvent(
        enrollment_id=enrollment_id,
        event_type=event_type,
        event_data=_jsonable(data) if data else None,
    )
    db.add(event)
    if commit:
        db.commit()
    return event
