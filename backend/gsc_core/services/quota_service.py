"""
Quota Service — daily Google API budgets per tenant.

One ledger per quota kind: Indexing API submissions (default 200/day) and
URL inspections (default 2000/day). The counter row is keyed by
(tenant_id, kind, UTC day), so a new day starts at zero without any reset
job. A reservation is one conditional upsert:

    INSERT ... VALUES (tenant, kind, day, 1)
    ON CONFLICT (tenant_id, kind, day) DO UPDATE SET count = count + 1
    WHERE count < :limit
    RETURNING count

No row returned means the day's budget is spent. The database serializes
concurrent reservations on the row, so the count can never pass the limit.
"""

import logging
import uuid
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.database import async_session, dialect_insert
from gsc_core.errors import PersistenceError
from gsc_core.models import QuotaCounter, QuotaKind
from gsc_core.utils import utc_today, utcnow

logger = logging.getLogger(__name__)


class QuotaLedger:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        daily_limit: Optional[int] = None,
        kind: QuotaKind = QuotaKind.SUBMIT,
    ):
        settings = get_settings()
        self._session_factory = session_factory or async_session
        self.kind = kind
        if daily_limit is None:
            daily_limit = (
                settings.gsc_daily_inspect_limit if kind == QuotaKind.INSPECT else settings.gsc_daily_submit_limit
            )
        self.daily_limit = daily_limit

    async def try_reserve(self, tenant_id: uuid.UUID, day: Optional[date] = None) -> bool:
        """Atomically take one slot for the day. Returns False when exhausted."""
        day = day or utc_today()
        if self.daily_limit <= 0:
            return False

        async with self._session_factory() as db:
            stmt = dialect_insert(db, QuotaCounter).values(
                tenant_id=tenant_id, kind=self.kind.value, day=day, count=1, updated_at=utcnow()
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "kind", "day"],
                set_={"count": QuotaCounter.count + 1, "updated_at": utcnow()},
                where=QuotaCounter.count < self.daily_limit,
            ).returning(QuotaCounter.count)
            try:
                result = await db.execute(stmt)
                count = result.scalar_one_or_none()
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Quota reservation failed: {exc.__class__.__name__}") from exc

        if count is None:
            logger.info(f"Daily {self.kind.value} quota exhausted for tenant {tenant_id} on {day.isoformat()}")
            return False
        return True

    async def used(self, tenant_id: uuid.UUID, day: Optional[date] = None) -> int:
        day = day or utc_today()
        async with self._session_factory() as db:
            try:
                result = await db.execute(
                    select(QuotaCounter.count).where(
                        QuotaCounter.tenant_id == tenant_id,
                        QuotaCounter.kind == self.kind.value,
                        QuotaCounter.day == day,
                    )
                )
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Quota lookup failed: {exc.__class__.__name__}") from exc
            return result.scalar_one_or_none() or 0

    async def remaining(self, tenant_id: uuid.UUID, day: Optional[date] = None) -> int:
        return max(0, self.daily_limit - await self.used(tenant_id, day))
