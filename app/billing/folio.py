"""
Folio allocator: tenant + series scoped, gap-free, duplicate-free invoice numbers.

The counter lives in the relational store, which every worker process shares.
Each allocation is one transaction: seed the row if it does not exist, then
increment-and-return in a single UPDATE. The row lock taken by that UPDATE is
what serializes concurrent callers across processes; nothing here relies on
in-process locking. A failed transaction rolls back, so a failure never
advances the counter. There is no release path: an allocated folio stays
consumed even if the invoice is never stamped.
"""

from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import AllocationError
from app.models.tables import FolioCounter
from app.observability.metrics import folios_allocated_total, folio_allocation_failures_total

logger = structlog.get_logger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class FolioAllocator:
    """Allocate sequential folios from the shared counter table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], start: int = 800):
        self.session_factory = session_factory
        self.start = start

    async def allocate(self, tenant_id: str, series: str) -> int:
        """Consume and return the next folio. Raises AllocationError on failure."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(self._seed_statement(session, tenant_id, series))
                    result = await session.execute(
                        update(FolioCounter)
                        .where(
                            FolioCounter.tenant_id == tenant_id,
                            FolioCounter.series == series,
                        )
                        .values(last_issued=FolioCounter.last_issued + 1)
                        .returning(FolioCounter.last_issued)
                        .execution_options(synchronize_session=False)
                    )
                    folio = result.scalar_one_or_none()
                    if folio is None:
                        raise AllocationError(
                            f"Counter update for {tenant_id}/{series} returned no row"
                        )
        except AllocationError:
            folio_allocation_failures_total.inc()
            logger.error("folio_allocation_unconfirmed", tenant_id=tenant_id, series=series)
            raise
        except SQLAlchemyError as e:
            folio_allocation_failures_total.inc()
            logger.error(
                "folio_allocation_failed",
                tenant_id=tenant_id,
                series=series,
                error=f"{type(e).__name__}: {e}",
            )
            raise AllocationError(f"Could not allocate folio for series {series}: {e}") from e

        folios_allocated_total.labels(series=series).inc()
        logger.info("folio_allocated", tenant_id=tenant_id, series=series, folio=folio)
        return folio

    async def peek(self, tenant_id: str, series: str) -> int:
        """Next folio that allocate() would return. Does not consume it."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(FolioCounter.last_issued).where(
                    FolioCounter.tenant_id == tenant_id,
                    FolioCounter.series == series,
                )
            )
            last: Optional[int] = result.scalar_one_or_none()
        return self.start if last is None else last + 1

    def _seed_statement(self, session: AsyncSession, tenant_id: str, series: str):
        dialect = session.bind.dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise AllocationError(f"Unsupported counter store dialect: {dialect}")
        return (
            insert(FolioCounter)
            .values(tenant_id=tenant_id, series=series, last_issued=self.start - 1)
            .on_conflict_do_nothing(index_elements=["tenant_id", "series"])
        )
