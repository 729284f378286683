"""
Unit Tests for Session Tracking
===============================
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import ADMIN, COMPANY_ID, OTHER_SALES, SALES

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


async def _logout_records(service, company_id=COMPANY_ID):
    from audit_ledger.audit import LedgerQuery, Operation

    page = await service.ledger.query(LedgerQuery(company_id=company_id, operation=Operation.LOGOUT))
    return page.rows


async def _make_idle(session_factory, token, minutes):
    from audit_ledger.clock import utcnow
    from audit_ledger.database import session_scope
    from audit_ledger.sessions.orm import UserSession

    async with session_scope(session_factory) as db:
        await db.execute(
            update(UserSession)
            .where(UserSession.session_token == token)
            .values(last_activity=utcnow() - timedelta(minutes=minutes))
            .execution_options(synchronize_session=False)
        )


class TestLogin:
    """Tests for log_login."""

    @pytest.mark.asyncio
    async def test_login_creates_session_and_record(self, service):
        """Login should open a session and write a sensitive LOGIN record."""
        from audit_ledger.audit import AuditContext

        record = await service.log_login(
            SALES.user_id,
            COMPANY_ID,
            "tok-1",
            AuditContext(ip_address="10.0.0.5", user_agent=IPHONE_UA),
        )
        session = await service.find_active_session("tok-1")

        assert session is not None
        assert session.is_active is True
        assert session.login_method == "password"
        assert session.device_info["is_mobile"] is True
        assert session.device_info["browser"].startswith("Safari")
        assert session.location_info == {"ip_address": "10.0.0.5"}

        assert record.operation.value == "LOGIN"
        assert record.entity_type.value == "session"
        assert record.entity_id == session.id
        assert record.is_sensitive is True
        assert record.session_id == "tok-1"
        assert record.metadata["session_id"] == session.id

    @pytest.mark.asyncio
    async def test_duplicate_token_fails(self, service):
        """A second session with the same token should fail loudly."""
        from audit_ledger.errors import WriteFailureError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        with pytest.raises(WriteFailureError):
            await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")


class TestTermination:
    """Tests for logout and session termination."""

    @pytest.mark.asyncio
    async def test_logout_records_duration(self, service):
        """Logout should deactivate the session and record its duration."""
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        record = await service.log_logout(SALES.user_id, COMPANY_ID, "tok-1")

        assert record.operation.value == "LOGOUT"
        assert record.session_duration_seconds is not None
        assert record.session_duration_seconds >= 0
        assert record.metadata["logout_method"] == "manual"
        assert await service.find_active_session("tok-1") is None

    @pytest.mark.asyncio
    async def test_logout_without_session_returns_none(self, service):
        """Logging out an unknown token should not raise."""
        assert await service.log_logout(SALES.user_id, COMPANY_ID, "missing") is None

    @pytest.mark.asyncio
    async def test_terminate_twice(self, service):
        """The second termination should fail and no second LOGOUT be written."""
        from audit_ledger.errors import SessionNotFoundError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        session = await service.terminate_session("tok-1", SALES.user_id, SALES.role)
        with pytest.raises(SessionNotFoundError):
            await service.terminate_session("tok-1", SALES.user_id, SALES.role)

        assert session.is_active is False
        assert session.logout_method == "manual"
        assert len(await _logout_records(service)) == 1

    @pytest.mark.asyncio
    async def test_owner_and_admin_race(self, service):
        """Concurrent owner logout and admin termination should end the session once."""
        from audit_ledger.errors import SessionNotFoundError
        from audit_ledger.sessions import SessionInfo

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        results = await asyncio.gather(
            service.terminate_session("tok-1", SALES.user_id, SALES.role),
            service.terminate_session("tok-1", ADMIN.user_id, ADMIN.role),
            return_exceptions=True,
        )

        ended = [r for r in results if isinstance(r, SessionInfo)]
        refused = [r for r in results if isinstance(r, SessionNotFoundError)]
        assert len(ended) == 1
        assert len(refused) == 1
        assert len(await _logout_records(service)) == 1
        assert await service.find_active_session("tok-1") is None

    @pytest.mark.asyncio
    async def test_store_terminate_is_conditional(self, service):
        """The store itself should refuse an already terminated session."""
        from audit_ledger.errors import SessionNotFoundError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await service.sessions.terminate("tok-1", SALES.user_id, "manual", notify=False)

        with pytest.raises(SessionNotFoundError):
            await service.sessions.terminate("tok-1", SALES.user_id, "manual")

    @pytest.mark.asyncio
    async def test_non_admin_cannot_end_other_session(self, service):
        """A non-admin ending someone else's session should be denied."""
        from audit_ledger.errors import AccessDeniedError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        with pytest.raises(AccessDeniedError):
            await service.terminate_session("tok-1", OTHER_SALES.user_id, OTHER_SALES.role)

        assert await service.find_active_session("tok-1") is not None

    @pytest.mark.asyncio
    async def test_admin_forces_logout(self, service):
        """An admin ending another user's session should be a forced termination."""
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        session = await service.terminate_session("tok-1", ADMIN.user_id, ADMIN.role)
        records = await _logout_records(service)

        assert session.logout_method == "forced_termination"
        assert session.terminated_by == ADMIN.user_id
        assert records[0].actor_user_id == SALES.user_id
        assert records[0].metadata["terminated_by"] == ADMIN.user_id

    @pytest.mark.asyncio
    async def test_failing_audit_sink_does_not_fail_logout(self, session_factory):
        """A broken sink should not undo a committed termination."""
        from audit_ledger.sessions import SessionStore

        class BrokenSink:
            async def record_logout(self, session, context):
                raise RuntimeError("ledger down")

        store = SessionStore(session_factory, audit_sink=BrokenSink())
        await store.create(SALES.user_id, COMPANY_ID, "tok-1")

        session = await store.terminate("tok-1", SALES.user_id, "manual")

        assert session.is_active is False
        assert await store.get_active("tok-1") is None


class TestActiveSessions:
    """Tests for active session listing and activity."""

    @pytest.mark.asyncio
    async def test_own_sessions(self, service):
        """A user should list their own active sessions only."""
        from audit_ledger.errors import AccessDeniedError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-2")
        await service.log_login(OTHER_SALES.user_id, COMPANY_ID, "tok-3")
        await service.log_logout(SALES.user_id, COMPANY_ID, "tok-2")

        sessions = await service.get_active_sessions(SALES.user_id, SALES)

        assert [s.session_token for s in sessions] == ["tok-1"]
        with pytest.raises(AccessDeniedError):
            await service.get_active_sessions(SALES.user_id, OTHER_SALES)

    @pytest.mark.asyncio
    async def test_company_sessions_admin_only(self, service):
        """Company-wide listing should require the admin role."""
        from audit_ledger.errors import AccessDeniedError

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await service.log_login(OTHER_SALES.user_id, COMPANY_ID, "tok-3")

        assert len(await service.list_company_active_sessions(ADMIN)) == 2
        with pytest.raises(AccessDeniedError):
            await service.list_company_active_sessions(SALES)

    @pytest.mark.asyncio
    async def test_touch(self, service, session_factory):
        """Touch should advance activity of active sessions only."""
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await _make_idle(session_factory, "tok-1", 30)
        before = (await service.find_active_session("tok-1")).last_activity

        assert await service.sessions.touch("tok-1") is True
        assert (await service.find_active_session("tok-1")).last_activity > before
        assert await service.sessions.touch("missing") is False

        await service.log_logout(SALES.user_id, COMPANY_ID, "tok-1")
        assert await service.sessions.touch("tok-1") is False

    @pytest.mark.asyncio
    async def test_app_access_record(self, service):
        """App access should write a non-sensitive ACCESS record."""
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")

        record = await service.log_app_access(SALES.user_id, COMPANY_ID, "tok-1")

        assert record.operation.value == "ACCESS"
        assert record.entity_id is None
        assert record.is_sensitive is False
        assert record.access_method == "cookie_auth"
        assert record.metadata["access_type"] == "app_open"


class TestIdleSweep:
    """Tests for idle session cleanup."""

    @pytest.mark.asyncio
    async def test_sweep_ends_idle_sessions_only(self, service, session_factory):
        """Only sessions idle past the threshold should be swept."""
        await service.log_login(SALES.user_id, COMPANY_ID, "idle")
        await service.log_login(OTHER_SALES.user_id, COMPANY_ID, "fresh")
        await _make_idle(session_factory, "idle", 120)

        count = await service.cleanup_expired_sessions()
        records = await _logout_records(service)

        assert count == 1
        assert await service.find_active_session("idle") is None
        assert await service.find_active_session("fresh") is not None
        assert len(records) == 1
        assert records[0].metadata["logout_method"] == "idle_timeout"
        assert records[0].actor_user_id == SALES.user_id

    @pytest.mark.asyncio
    async def test_sweep_threshold_override(self, service, session_factory):
        """An explicit threshold should replace the default."""
        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await _make_idle(session_factory, "tok-1", 20)

        assert await service.cleanup_expired_sessions() == 0
        assert await service.cleanup_expired_sessions(max_idle_minutes=10) == 1

    @pytest.mark.asyncio
    async def test_sweeper_sweep_once(self, service, session_factory):
        """The background sweeper should sweep through the store."""
        from audit_ledger.sessions import IdleSessionSweeper

        await service.log_login(SALES.user_id, COMPANY_ID, "tok-1")
        await _make_idle(session_factory, "tok-1", 90)

        sweeper = IdleSessionSweeper(service.sessions, max_idle_minutes=60, interval=3600)

        assert await sweeper.sweep_once() == 1

    @pytest.mark.asyncio
    async def test_sweeper_contains_failures(self):
        """A failing sweep should be logged and reported as zero."""
        from audit_ledger.sessions import IdleSessionSweeper

        class BrokenStore:
            async def sweep_expired(self, max_idle_minutes):
                raise RuntimeError("db down")

        sweeper = IdleSessionSweeper(BrokenStore(), interval=3600)

        assert await sweeper.sweep_once() == 0

    @pytest.mark.asyncio
    async def test_sweeper_start_stop(self):
        """start() should spawn one task and stop() should cancel it."""
        from audit_ledger.sessions import IdleSessionSweeper

        class CountingStore:
            calls = 0

            async def sweep_expired(self, max_idle_minutes):
                CountingStore.calls += 1
                return 0

        sweeper = IdleSessionSweeper(CountingStore(), interval=3600)
        sweeper.start()
        sweeper.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert sweeper.running is True
        await sweeper.stop()

        assert sweeper.running is False
        assert sweeper._task is None
        assert CountingStore.calls == 1


class TestFailedLogin:
    """Tests for log_failed_login."""

    @pytest.mark.asyncio
    async def test_unknown_user_uses_sentinel(self, service):
        """Unknown users should be attributed to the sentinel actor and company."""
        record = await service.log_failed_login("nobody@example.com", None)

        assert record.actor_user_id == 0
        assert record.company_id == 0
        assert record.entity_type.value == "auth"
        assert record.operation.value == "FAILED_LOGIN"
        assert record.is_sensitive is True
        assert record.metadata["attempted_email"] == "nobody@example.com"
        assert record.metadata["failure_reason"] == "invalid_credentials"

    @pytest.mark.asyncio
    async def test_known_user_attributed(self, session_factory):
        """A directory hit should attribute the attempt to the user."""
        from audit_ledger.audit import AuditService

        class Directory:
            async def find_user_id(self, email, company_id):
                return 5 if email == "known@example.com" else None

        service = AuditService(session_factory, user_directory=Directory())

        record = await service.log_failed_login("known@example.com", COMPANY_ID, reason="locked")

        assert record.actor_user_id == 5
        assert record.company_id == COMPANY_ID
        assert record.metadata["failure_reason"] == "locked"


class TestDeviceInfo:
    """Tests for user agent parsing."""

    def test_desktop_chrome(self):
        """Desktop Chrome should parse as non-mobile Chrome."""
        from audit_ledger.sessions import extract_device_info

        info = extract_device_info(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        )

        assert info["is_mobile"] is False
        assert info["browser"] == "Chrome/120.0.0.0"
        assert info["os"].startswith("Windows")

    def test_unrecognized_agent(self):
        """Unmatched agents should report Unknown."""
        from audit_ledger.sessions import extract_device_info

        info = extract_device_info("curl/8.0")

        assert info["browser"] == "Unknown"
        assert info["os"] == "Unknown"

    def test_empty_agent(self):
        """No user agent should give empty device info."""
        from audit_ledger.sessions import extract_device_info, location_info

        assert extract_device_info(None) == {}
        assert location_info(None) == {}

    def test_user_agent_truncated(self):
        """The stored user agent should be bounded."""
        from audit_ledger.sessions import extract_device_info

        assert len(extract_device_info("x" * 500, max_length=255)["user_agent"]) == 255
