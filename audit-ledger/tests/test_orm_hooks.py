"""
Unit Tests for ORM Audit Hooks
==============================
"""

import pytest
import pytest_asyncio
from sqlalchemy import Boolean, Column, DateTime, Integer, String, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session

from audit_ledger.audit import EntityType, LedgerQuery, Operation
from conftest import COMPANY_ID, SALES


class HostBase(DeclarativeBase):
    pass


class Contact(HostBase):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(30))
    updated_at = Column(DateTime)


class User(HostBase):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String(255))


class Note(HostBase):
    __tablename__ = "notes"

    id = Column(Integer, primary_key=True)
    body = Column(String(255))


class HostSession(Session):
    pass


@pytest_asyncio.fixture
async def host_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'host.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(HostBase.metadata.create_all)
    yield async_sessionmaker(engine, sync_session_class=HostSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def hooks(service):
    from audit_ledger.capture import OrmAuditHooks

    hooks = OrmAuditHooks(service)
    hooks.register(Contact, "contact")
    hooks.register_sensitive(User, "user")
    hooks.install(HostSession)
    yield hooks
    hooks.uninstall(HostSession)


async def _records(service, **filters):
    page = await service.ledger.query(LedgerQuery(company_id=COMPANY_ID, **filters), limit=100)
    return list(reversed(page.rows))


async def _saved_contact(db, service, **values):
    contact = Contact(**{"name": "Ada", "phone": "1", **values})
    db.add(contact)
    await db.commit()
    await service.drain()
    return contact


class TestFlushedChanges:
    """Tests for inserts, updates and deletes flushed by the ORM."""

    @pytest.mark.asyncio
    async def test_insert_writes_create(self, hooks, host_factory, service):
        """A committed insert should produce one CREATE record with its values."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            contact = await _saved_contact(db, service)
        await service.drain()

        records = await _records(service)
        assert [(r.operation, r.entity_id) for r in records] == [(Operation.CREATE, contact.id)]
        assert records[0].new_value == {"name": "Ada", "phone": "1"}
        assert records[0].actor_user_id == SALES.user_id
        assert records[0].metadata["source"] == "orm"

    @pytest.mark.asyncio
    async def test_update_writes_one_record_per_column(self, hooks, host_factory, service):
        """Changed columns should each get an UPDATE record; bookkeeping columns none."""
        from datetime import datetime

        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            contact = await _saved_contact(db, service)
            contact.name = "Grace"
            contact.phone = "2"
            contact.updated_at = datetime(2026, 1, 1)
            await db.commit()
        await service.drain()

        records = await _records(service, operation=Operation.UPDATE)
        assert sorted((r.field_name, r.old_value, r.new_value) for r in records) == [
            ("name", "Ada", "Grace"),
            ("phone", "1", "2"),
        ]
        assert {r.metadata["total_changes"] for r in records} == {2}
        assert {r.entity_id for r in records} == {contact.id}

    @pytest.mark.asyncio
    async def test_delete_writes_last_values(self, hooks, host_factory, service):
        """A committed delete should record the values being removed."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            contact = await _saved_contact(db, service)
            await db.delete(contact)
            await db.commit()
        await service.drain()

        records = await _records(service, operation=Operation.DELETE)
        assert len(records) == 1
        assert records[0].entity_id == contact.id
        assert records[0].old_value == {"name": "Ada", "phone": "1"}

    @pytest.mark.asyncio
    async def test_rollback_discards_records(self, hooks, host_factory, service):
        """Flushed changes that are rolled back should not be recorded."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            db.add(Contact(name="Ada"))
            await db.flush()
            await db.rollback()
        await service.drain()

        assert await _records(service) == []

    @pytest.mark.asyncio
    async def test_no_principal_or_unregistered_model(self, hooks, host_factory, service):
        """Sessions without a principal and unregistered models should be ignored."""
        async with host_factory() as db:
            db.add(Contact(name="Anonymous"))
            await db.commit()
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            db.add(Note(body="untracked"))
            await db.commit()
        await service.drain()

        assert await _records(service) == []


class TestSensitiveModels:
    """Tests for high-security models."""

    @pytest.mark.asyncio
    async def test_secrets_redacted(self, hooks, host_factory, service):
        """Password hashes should never reach the ledger in clear."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            user = User(email="a@example.com", role="Sales Representative", password_hash="old-hash")
            db.add(user)
            await db.commit()
            await service.drain()
            user.password_hash = "new-hash"
            await db.commit()
        await service.drain()

        created = (await _records(service, operation=Operation.CREATE))[0]
        changed = (await _records(service, operation=Operation.UPDATE))[0]

        assert created.new_value["password_hash"] == "[REDACTED]"
        assert created.new_value["email"] == "a@example.com"
        assert "password_hash" in created.metadata["sensitive_fields"]
        assert (changed.field_name, changed.old_value, changed.new_value) == (
            "password_hash",
            "[REDACTED]",
            "[REDACTED]",
        )
        assert changed.metadata["is_sensitive_field"] is True
        assert changed.is_sensitive is True

    @pytest.mark.asyncio
    async def test_role_and_status_changes_escalated(self, hooks, host_factory, service):
        """Role and activation changes should add SECURITY records."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            user = User(email="a@example.com", role="Sales Representative", is_active=True)
            db.add(user)
            await db.commit()
            await service.drain()
            user.role = "Administrator"
            user.is_active = False
            await db.commit()
        await service.drain()

        security = await _records(service, entity_type=EntityType.SECURITY)
        events = sorted((r.metadata["event_type"], r.old_value, r.new_value) for r in security)

        assert events == [
            ("ACCOUNT_DEACTIVATED", True, False),
            ("ROLE_CHANGE", "Sales Representative", "Administrator"),
        ]
        assert {r.entity_id for r in security} == {user.id}
        assert {r.metadata["target_entity_type"] for r in security} == {"user"}
        assert all(r.metadata["requires_review"] for r in security)

    @pytest.mark.asyncio
    async def test_plain_model_has_no_escalation(self, hooks, host_factory, service):
        """Models registered without the sensitive profile should not escalate."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            contact = await _saved_contact(db, service)
            contact.name = "Grace"
            await db.commit()
        await service.drain()

        assert await _records(service, entity_type=EntityType.SECURITY) == []


class TestBulkStatements:
    """Tests for ORM-enabled bulk statements."""

    @pytest.mark.asyncio
    async def test_bulk_update_single_record(self, hooks, host_factory, service):
        """A bulk UPDATE should produce one record without an entity id."""
        async with host_factory() as db:
            db.info["audit_principal"] = SALES
            await _saved_contact(db, service)
            await db.execute(update(Contact).where(Contact.phone == "1").values(phone="9"))
            await db.commit()
        await service.drain()

        records = await _records(service, operation=Operation.UPDATE)
        assert len(records) == 1
        assert records[0].entity_id is None
        assert records[0].metadata["operation_type"] == "BULK_UPDATE"
        assert "UPDATE contacts" in records[0].metadata["statement"]
