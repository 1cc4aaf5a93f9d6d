"""Tests for the audit trail: typed details, failed-login counting, retention."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from authledger.auth.audit import AuditRecorder
from authledger.auth.clock import utcnow
from authledger.auth.events import FailedLoginDetails, LoginDetails, LogoutDetails
from authledger.auth.sessions import DeviceInfo
from authledger.models import AuditEventType, AuditLog

DEVICE = DeviceInfo(ip_address="203.0.113.7", user_agent="pytest")


class TestLog:
    @pytest.mark.asyncio
    async def test_log_persists_event(self, db_session, make_user):
        user = await make_user()
        recorder = AuditRecorder(db_session)

        entry = await recorder.log(
            AuditEventType.LOGIN,
            LoginDetails(method="password", session_id="s-1"),
            user_id=user.id,
            device=DEVICE,
        )
        await db_session.commit()

        stored = (await db_session.execute(select(AuditLog))).scalar_one()
        assert stored.id == entry.id
        assert stored.event_type == AuditEventType.LOGIN
        assert stored.ip_address == "203.0.113.7"
        assert stored.user_agent == "pytest"
        assert stored.details["session_id"] == "s-1"

    @pytest.mark.asyncio
    async def test_log_without_user(self, db_session):
        entry = await AuditRecorder(db_session).log(
            AuditEventType.FAILED_LOGIN,
            FailedLoginDetails(reason="unknown_user"),
            device=DEVICE,
        )
        assert entry.user_id is None

    @pytest.mark.asyncio
    async def test_mismatched_details_raise(self, db_session):
        with pytest.raises(TypeError):
            await AuditRecorder(db_session).log(
                AuditEventType.LOGIN, LogoutDetails(session_id="s-1")
            )

    @pytest.mark.asyncio
    async def test_store_failure_does_not_propagate(self, db_session, make_user):
        user = await make_user()
        recorder = AuditRecorder(db_session)

        with patch.object(
            db_session, "flush", side_effect=OperationalError("INSERT", {}, Exception("disk"))
        ):
            entry = await recorder.log(AuditEventType.LOGOUT, user_id=user.id)

        assert entry is None
        # The surrounding transaction is still usable
        assert await recorder.log(AuditEventType.LOGOUT, user_id=user.id) is not None


class TestFailedLoginCount:
    @pytest.mark.asyncio
    async def test_counts_by_ip_and_user(self, db_session, make_user):
        user = await make_user()
        recorder = AuditRecorder(db_session)
        other = DeviceInfo(ip_address="198.51.100.1")

        for _ in range(3):
            await recorder.log(
                AuditEventType.FAILED_LOGIN,
                FailedLoginDetails(reason="invalid_password"),
                user_id=user.id,
                device=DEVICE,
            )
        await recorder.log(
            AuditEventType.FAILED_LOGIN,
            FailedLoginDetails(reason="unknown_user"),
            device=other,
        )
        await recorder.log(AuditEventType.LOGIN, LoginDetails(), user_id=user.id, device=DEVICE)
        await db_session.commit()

        assert await recorder.count_failed_logins(ip_address="203.0.113.7") == 3
        assert await recorder.count_failed_logins(ip_address="198.51.100.1") == 1
        assert await recorder.count_failed_logins(user_id=user.id) == 3

    @pytest.mark.asyncio
    async def test_window_excludes_old_failures(self, db_session):
        recorder = AuditRecorder(db_session)
        entry = await recorder.log(
            AuditEventType.FAILED_LOGIN,
            FailedLoginDetails(reason="unknown_user"),
            device=DEVICE,
        )
        await db_session.execute(
            update(AuditLog)
            .where(AuditLog.id == entry.id)
            .values(created_at=utcnow() - timedelta(minutes=30))
            .execution_options(synchronize_session=False)
        )

        assert await recorder.count_failed_logins(ip_address=DEVICE.ip_address) == 0
        assert (
            await recorder.count_failed_logins(ip_address=DEVICE.ip_address, window_minutes=60)
            == 1
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [{}, {"ip_address": "1.2.3.4", "user_id": "u"}])
    async def test_exactly_one_subject(self, db_session, kwargs):
        with pytest.raises(ValueError):
            await AuditRecorder(db_session).count_failed_logins(**kwargs)


class TestRecentAndRetention:
    @pytest.mark.asyncio
    async def test_recent_filters(self, db_session, make_user):
        user = await make_user()
        recorder = AuditRecorder(db_session)
        await recorder.log(AuditEventType.LOGIN, LoginDetails(), user_id=user.id)
        await recorder.log(AuditEventType.LOGOUT, LogoutDetails(session_id="s"), user_id=user.id)
        await recorder.log(
            AuditEventType.FAILED_LOGIN, FailedLoginDetails(reason="unknown_user")
        )

        assert len(await recorder.recent(user_id=user.id)) == 2
        failed = await recorder.recent(event_type=AuditEventType.FAILED_LOGIN)
        assert [e.event_type for e in failed] == [AuditEventType.FAILED_LOGIN]
        assert len(await recorder.recent(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_purge_older_than(self, db_session):
        recorder = AuditRecorder(db_session)
        old = await recorder.log(AuditEventType.LOGOUT)
        await recorder.log(AuditEventType.LOGOUT)
        await db_session.execute(
            update(AuditLog)
            .where(AuditLog.id == old.id)
            .values(created_at=utcnow() - timedelta(days=120))
            .execution_options(synchronize_session=False)
        )

        assert await recorder.purge_older_than(90) == 1
        assert len(await recorder.recent()) == 1
