"""
Ledger Store
============
Insert-only access to ``audit_logs``. There is no update or
delete method; the table guards in ``audit.orm`` reject those anyway.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from ..database import session_scope
from .models import AuditRecord, LedgerQuery, Page
from .orm import AuditLog

logger = structlog.get_logger(__name__)


def _apply_filters(stmt, query: LedgerQuery):
    stmt = stmt.where(AuditLog.company_id == query.company_id)

    if query.entity_type is not None:
        stmt = stmt.where(AuditLog.entity_type == query.entity_type.value)
    if query.entity_id is not None:
        stmt = stmt.where(AuditLog.entity_id == query.entity_id)
    if query.actor_user_id is not None:
        stmt = stmt.where(AuditLog.user_id == query.actor_user_id)
    if query.operation is not None:
        stmt = stmt.where(AuditLog.operation == query.operation.value)
    if query.entity_types:
        stmt = stmt.where(AuditLog.entity_type.in_(sorted(e.value for e in query.entity_types)))
    if query.operations:
        stmt = stmt.where(AuditLog.operation.in_(sorted(o.value for o in query.operations)))
    if query.exclude_entity_types:
        stmt = stmt.where(
            AuditLog.entity_type.not_in(sorted(e.value for e in query.exclude_entity_types))
        )
    if query.is_sensitive is not None:
        stmt = stmt.where(AuditLog.is_sensitive == query.is_sensitive)
    if query.session_id is not None:
        stmt = stmt.where(AuditLog.session_id == query.session_id)
    if query.created_from is not None:
        stmt = stmt.where(AuditLog.created_at >= query.created_from)
    if query.created_to is not None:
        stmt = stmt.where(AuditLog.created_at <= query.created_to)
    return stmt


class LedgerStore:
    """Append and query ledger rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, row: AuditLog) -> AuditRecord:
        """
        Persist a fully built row and return it as a record.

        The row must already carry ``created_at`` and ``record_hash``.
        Storage errors propagate; callers decide whether to swallow them.
        """
        async with session_scope(self._session_factory) as db:
            db.add(row)
            await db.flush()
            record = AuditRecord.from_row(row)

        logger.debug(
            "audit_record_inserted",
            record_id=record.id,
            entity_type=record.entity_type.value,
            operation=record.operation.value,
        )
        return record

    async def get(self, record_id: int, company_id: Optional[int] = None) -> Optional[AuditRecord]:
        row = await self.get_row(record_id, company_id)
        return AuditRecord.from_row(row) if row is not None else None

    async def get_row(self, record_id: int, company_id: Optional[int] = None) -> Optional[AuditLog]:
        """Raw row, values still encoded. Used by integrity checks."""
        stmt = select(AuditLog).where(AuditLog.id == record_id)
        if company_id is not None:
            stmt = stmt.where(AuditLog.company_id == company_id)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def query(self, query: LedgerQuery, limit: int = 50, offset: int = 0) -> Page[AuditRecord]:
        """Newest first, with the total count of matching rows."""
        rows_stmt = (
            _apply_filters(select(AuditLog), query)
            .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
            .offset(offset)
            .limit(limit)
        )
        count_stmt = _apply_filters(select(func.count(AuditLog.id)), query)

        async with self._session_factory() as db:
            rows = (await db.execute(rows_stmt)).scalars().all()
            total = (await db.execute(count_stmt)).scalar_one()

        return Page(
            rows=[AuditRecord.from_row(row) for row in rows],
            total_count=total,
            limit=limit,
            offset=offset,
        )

    async def count(self, query: LedgerQuery) -> int:
        async with self._session_factory() as db:
            result = await db.execute(_apply_filters(select(func.count(AuditLog.id)), query))
            return result.scalar_one()

    async def operation_counts(self, query: LedgerQuery) -> List[Dict[str, Any]]:
        """Per-operation counts, most frequent first."""
        count_col = func.count(AuditLog.id).label("count")
        stmt = (
            _apply_filters(select(AuditLog.operation, count_col), query)
            .group_by(AuditLog.operation)
            .order_by(desc(count_col))
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [{"operation": op, "count": int(count)} for op, count in result.all()]
