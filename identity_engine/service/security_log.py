from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from identity_engine.logging import get_logger
from identity_engine.storage.common import generate_uuid, parse_ip_address
from identity_engine.storage.cursors import decode_time_id_cursor
from identity_engine.storage.models import SecurityEvent, SecurityEventType

logger = get_logger(__name__)


class SecurityLog:
    """Append-only audit sink.

    Writes never propagate failures to the caller; an audit outage must not
    turn a successful login into an error.
    """

    def __init__(self, store, *, retention_days: int = 90) -> None:
        self.store = store
        self.retention_days = retention_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def record(
        self,
        event_type: SecurityEventType,
        success: bool,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent(
            id=generate_uuid(),
            event_type=event_type,
            success=success,
            created_at=self._now(),
            user_id=user_id,
            email=email,
            ip_address=parse_ip_address(ip),
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        logger.info(
            "security_event",
            event_type=event_type.value,
            success=success,
            user_id=user_id,
            email=email,
            ip=event.ip_address,
        )
        try:
            self.store.append_security_event(event)
        except Exception as exc:
            logger.error(
                "security_log_write_failed",
                event_type=event_type.value,
                user_id=user_id,
                error=str(exc),
            )
            return None
        return event

    async def record_async(
        self, event_type: SecurityEventType, success: bool, **fields: Any
    ) -> Optional[SecurityEvent]:
        """Run ``record`` in a worker thread so the store write stays off the event loop."""
        return await asyncio.to_thread(self.record, event_type, success, **fields)

    def for_user(
        self, user_id: str, limit: int = 50, cursor: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Return the newest entries for ``user_id``, optionally after ``cursor``."""
        limit = max(1, min(limit, 200))
        before = None
        if cursor:
            try:
                before = decode_time_id_cursor(cursor)
            except ValueError:
                logger.warning("security_log_bad_cursor", user_id=user_id)
                return []
        try:
            return self.store.list_security_events(user_id, limit=limit, before=before)
        except Exception as exc:
            logger.error("security_log_read_failed", user_id=user_id, error=str(exc))
            return []

    def cleanup(self) -> int:
        cutoff = self._now() - timedelta(days=self.retention_days)
        removed = self.store.delete_security_events_before(cutoff)
        if removed:
            logger.info("security_log_cleanup", removed=removed, cutoff=cutoff.isoformat())
        return removed
