import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from common.models import EventLog, utc_now

logger = logging.getLogger(__name__)


def record_event(
    db: AsyncSession,
    event_type: str,
    actor_id: Any = "system",
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> EventLog:
    """Adds an audit row to the caller's transaction."""
    event = EventLog(
        id=str(uuid.uuid4()),
        request_id=request_id,
        actor_id=str(actor_id) if actor_id is not None else "system",
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload or {},
        created_at=utc_now(),
    )
    db.add(event)
    return event


async def emit_event(db: AsyncSession, event_type: str, **kwargs) -> None:
    """Writes an audit row in its own commit; failures are logged, not raised."""
    try:
        record_event(db, event_type, **kwargs)
        await db.commit()
    except Exception as log_error:
        logger.error(f"Failed to emit event {event_type}: {log_error}")
        await db.rollback()
