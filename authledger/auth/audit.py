"""Append-only security audit trail.

Writing an audit row never fails the caller's operation: the insert runs in a
savepoint and store errors are logged and dropped. Failed-login counts feed
the login lockout.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authledger.auth.clock import utcnow
from authledger.auth.events import AuditDetails, check_event_details
from authledger.auth.sessions import DeviceInfo
from authledger.errors import translate_db_errors
from authledger.models import AuditEventType, AuditLog

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Audit log writer and reader within the caller's DB session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def log(
        self,
        event_type: AuditEventType,
        details: AuditDetails | None = None,
        *,
        user_id: str | None = None,
        device: DeviceInfo | None = None,
    ) -> AuditLog | None:
        """Append an audit event.

        Args:
            event_type: Kind of event.
            details: Details model registered for ``event_type``.
            user_id: Subject of the event; None for pre-auth failures.
            device: Client IP and user agent.

        Returns:
            The flushed AuditLog, or None if the write failed.

        Raises:
            TypeError: If ``details`` does not belong to ``event_type``.
        """
        check_event_details(event_type, details)
        device = device or DeviceInfo()

        entry = AuditLog(
            user_id=user_id,
            event_type=event_type,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            details=details.to_json() if details is not None else None,
            created_at=utcnow(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(entry)
                await self.session.flush()
        except SQLAlchemyError:
            logger.exception(f"Failed to write audit event {event_type.value}")
            return None
        return entry

    @translate_db_errors
    async def count_failed_logins(
        self,
        *,
        ip_address: str | None = None,
        user_id: str | None = None,
        window_minutes: int = 15,
    ) -> int:
        """Count ``failed_login`` events in the trailing window.

        Exactly one of ``ip_address`` or ``user_id`` selects the subject.
        """
        if (ip_address is None) == (user_id is None):
            raise ValueError("Pass exactly one of ip_address or user_id")

        since = utcnow() - timedelta(minutes=window_minutes)
        stmt = select(func.count(AuditLog.id)).where(
            AuditLog.event_type == AuditEventType.FAILED_LOGIN,
            AuditLog.created_at > since,
        )
        if ip_address is not None:
            stmt = stmt.where(AuditLog.ip_address == ip_address)
        else:
            stmt = stmt.where(AuditLog.user_id == user_id)

        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    @translate_db_errors
    async def recent(
        self,
        *,
        user_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 50,
    ) -> list[AuditLog]:
        """Most recent events first, optionally filtered."""
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(AuditLog.user_id == user_id)
        if event_type is not None:
            stmt = stmt.where(AuditLog.event_type == event_type)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @translate_db_errors
    async def purge_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        result = await self.session.execute(
            delete(AuditLog)
            .where(AuditLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
