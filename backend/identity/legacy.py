"""
Identity Engine - Legacy Store Bridge

Read-only access to the customer collection written by the older OTP
login flow. Phones there were stored as typed (digits only, sometimes
with a leading 91), so lookups compare on the trailing 10 digits.
"""

import logging
from typing import Optional, List, AsyncIterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .models import LegacyIdentityDB
from .normalizer import canonical_phone
from .store import bounded

logger = logging.getLogger(__name__)


class LegacyIdentityBridge:
    """One-directional bridge: never writes, never deletes."""

    def __init__(self, session_factory: async_sessionmaker, timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    def _bound(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.timeout

    async def find_by_phone(self, phone: str, timeout: Optional[float] = None) -> Optional[LegacyIdentityDB]:
        return await bounded("legacy.find_by_phone", self._find_by_phone(phone), self._bound(timeout))

    async def _find_by_phone(self, phone: str) -> Optional[LegacyIdentityDB]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacyIdentityDB)
                .where(LegacyIdentityDB.phone.like(f"%{phone}"))
                .order_by(LegacyIdentityDB.created_at.asc(), LegacyIdentityDB.id.asc())
            )
            for record in result.scalars().all():
                if canonical_phone(record.phone or "") == phone:
                    return record
            return None

    async def find_by_id(self, legacy_id: str, timeout: Optional[float] = None) -> Optional[LegacyIdentityDB]:
        return await bounded("legacy.find_by_id", self._find_by_id(legacy_id), self._bound(timeout))

    async def _find_by_id(self, legacy_id: str) -> Optional[LegacyIdentityDB]:
        async with self.session_factory() as session:
            return await session.get(LegacyIdentityDB, legacy_id)

    async def iter_batches(
        self,
        batch_size: int = 500,
        timeout: Optional[float] = None
    ) -> AsyncIterator[List[LegacyIdentityDB]]:
        """Yield every legacy record in id order, one bounded query per batch."""
        last_id: Optional[str] = None
        while True:
            batch = await bounded(
                "legacy.iter_batches",
                self._fetch_batch(last_id, batch_size),
                self._bound(timeout),
            )
            if not batch:
                return
            yield batch
            last_id = batch[-1].id

    async def _fetch_batch(self, after_id: Optional[str], batch_size: int) -> List[LegacyIdentityDB]:
        async with self.session_factory() as session:
            query = select(LegacyIdentityDB).order_by(LegacyIdentityDB.id.asc()).limit(batch_size)
            if after_id is not None:
                query = query.where(LegacyIdentityDB.id > after_id)
            result = await session.execute(query)
            return list(result.scalars().all())
