"""
Identity Engine - Dependent-Record Repointer

Moves bookings and saved addresses from one identity to another. Both
tables are rewritten in a single transaction: either every reference
moves or none does.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.booking_models import BookingDB, AddressDB

from .errors import IdentityError, RepointPartialFailure
from .store import bounded

logger = logging.getLogger(__name__)


@dataclass
class RepointResult:
    bookings_moved: int = 0
    addresses_moved: int = 0

    @property
    def total(self) -> int:
        return self.bookings_moved + self.addresses_moved

    def to_dict(self) -> Dict[str, int]:
        return {
            "bookings_moved": self.bookings_moved,
            "addresses_moved": self.addresses_moved,
            "total": self.total,
        }


class DependentRecordRepointer:

    def __init__(self, session_factory: async_sessionmaker, timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    def _bound(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.timeout

    async def repoint(self, from_id: str, to_id: str, timeout: Optional[float] = None) -> RepointResult:
        """
        Rewrite every booking/address reference from ``from_id`` to ``to_id``.

        Idempotent: a second call finds nothing left to move.

        Raises:
            RepointPartialFailure: the transaction failed or timed out and
                was rolled back
        """
        if from_id == to_id:
            return RepointResult()

        try:
            result = await bounded(
                "repoint",
                self._repoint(from_id, to_id),
                self._bound(timeout),
            )
        except IdentityError as e:
            logger.error(f"Repoint {from_id} -> {to_id} failed: {e.code}")
            raise RepointPartialFailure(from_id, to_id, e.code) from e

        if result.total:
            logger.info(
                f"Repointed {result.bookings_moved} bookings and "
                f"{result.addresses_moved} addresses: {from_id} -> {to_id}"
            )
        return result

    async def _repoint(self, from_id: str, to_id: str) -> RepointResult:
        async with self.session_factory() as session:
            result = await self.move_references(session, from_id, to_id)
            await session.commit()
            return result

    async def move_references(self, session: AsyncSession, from_id: str, to_id: str) -> RepointResult:
        """
        Issue the booking/address updates on an open session without
        committing. The caller owns the transaction.
        """
        bookings = await session.execute(
            update(BookingDB)
            .where(BookingDB.customer_id == from_id)
            .values(customer_id=to_id)
        )
        addresses = await session.execute(
            update(AddressDB)
            .where(AddressDB.user_id == from_id)
            .values(user_id=to_id)
        )
        return RepointResult(
            bookings_moved=bookings.rowcount or 0,
            addresses_moved=addresses.rowcount or 0,
        )

    async def count_references(self, identity_id: str, timeout: Optional[float] = None) -> RepointResult:
        """Bookings and addresses currently pointing at ``identity_id``."""
        return await bounded(
            "count_references",
            self._count_references(identity_id),
            self._bound(timeout),
        )

    async def _count_references(self, identity_id: str) -> RepointResult:
        async with self.session_factory() as session:
            bookings = await session.execute(
                select(func.count(BookingDB.id)).where(BookingDB.customer_id == identity_id)
            )
            addresses = await session.execute(
                select(func.count(AddressDB.id)).where(AddressDB.user_id == identity_id)
            )
            return RepointResult(
                bookings_moved=int(bookings.scalar() or 0),
                addresses_moved=int(addresses.scalar() or 0),
            )
