"""
Shared fixtures: an in-memory SQLite ledger per test.
"""

import pytest
import pytest_asyncio

from audit_ledger.audit import AuditService, Principal
from audit_ledger.database import (
    close_engine,
    create_async_engine,
    create_session_factory,
    init_models,
)

COMPANY_ID = 10
OTHER_COMPANY_ID = 20

ADMIN = Principal(user_id=1, company_id=COMPANY_ID, role="Administrator", session_token="admin-token")
SALES = Principal(user_id=2, company_id=COMPANY_ID, role="Sales Representative", session_token="sales-token")
OTHER_SALES = Principal(user_id=3, company_id=COMPANY_ID, role="Sales Representative")
FOREIGN_ADMIN = Principal(user_id=9, company_id=OTHER_COMPANY_ID, role="Administrator")


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield engine
    await close_engine(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def service(session_factory):
    service = AuditService(session_factory)
    yield service
    await service.drain()
