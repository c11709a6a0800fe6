"""
Identity Engine - Identity Store Adapter

CRUD against the primary identity table. Phone uniqueness for new
identities is enforced by the ``identity_phone_claim`` primary key; a
lost race surfaces as ``DuplicatePhone`` and is never swallowed here.

Every call runs in its own short transaction and under a time bound, so
one slow statement cannot hold a request hostage.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Awaitable, Callable, TypeVar

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import (
    IdentityError,
    DuplicatePhone,
    IdentityResolutionTimeout,
    IdentityStoreUnavailable,
)
from .models import IdentityDB, PhoneClaimDB, IdentityLinkLogDB
from .normalizer import mask_phone

logger = logging.getLogger(__name__)

T = TypeVar("T")

CUSTOMER_CODE_ATTEMPTS = 10

MUTABLE_FIELDS = frozenset({"display_name", "email", "verified", "last_login_at"})

# (session, from_id, to_id) -> object with ``to_dict()``
Sweep = Callable[[AsyncSession, str, str], Awaitable[Any]]


@dataclass
class RetireResult:
    deleted: bool
    swept: Optional[Any] = None


async def bounded(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """
    Await a store call under a time bound and categorize its failures.

    Raises:
        IdentityResolutionTimeout: the call exceeded ``timeout``
        IdentityStoreUnavailable: the driver or database failed
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise IdentityResolutionTimeout(f"{operation} exceeded {timeout}s") from e
    except IdentityError:
        raise
    except SQLAlchemyError as e:
        logger.error(f"Store call {operation} failed: {e.__class__.__name__}: {e}")
        raise IdentityStoreUnavailable(f"{operation} failed: {e.__class__.__name__}") from e


def generate_customer_code(phone: str, attempt: int = 0) -> str:
    """CC + last 4 phone digits + 6 timestamp digits + 2 random digits + attempt."""
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"CC{phone[-4:]}{timestamp}{random.randint(0, 98):02d}{attempt}"


def default_display_name(phone: str) -> str:
    return f"User {phone[-4:]}"


@dataclass
class IdentityDraft:
    """Field values for an identity that does not exist yet."""
    phone: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    verified: bool = False
    last_login_at: Optional[datetime] = None

    def build(self, attempt: int = 0) -> IdentityDB:
        now = datetime.now(timezone.utc)
        return IdentityDB(
            id=str(uuid.uuid4()),
            phone=self.phone,
            customer_code=generate_customer_code(self.phone, attempt),
            display_name=self.display_name or default_display_name(self.phone),
            email=self.email or None,
            verified=bool(self.verified),
            created_at=now,
            updated_at=now,
            last_login_at=self.last_login_at,
        )


class IdentityStore:
    """
    Identity Store Adapter - the only component that mutates identity rows.
    """

    def __init__(self, session_factory: async_sessionmaker, timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    def _bound(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.timeout

    # ==================== READS ====================

    async def find_by_phone(self, phone: str, timeout: Optional[float] = None) -> Optional[IdentityDB]:
        """Canonical identity for a phone: earliest created, then smallest id."""
        return await bounded("find_by_phone", self._find_by_phone(phone), self._bound(timeout))

    async def _find_by_phone(self, phone: str) -> Optional[IdentityDB]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityDB)
                .where(IdentityDB.phone == phone)
                .order_by(IdentityDB.created_at.asc(), IdentityDB.id.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_by_id(self, identity_id: str, timeout: Optional[float] = None) -> Optional[IdentityDB]:
        return await bounded("find_by_id", self._find_by_id(identity_id), self._bound(timeout))

    async def _find_by_id(self, identity_id: str) -> Optional[IdentityDB]:
        async with self.session_factory() as session:
            return await session.get(IdentityDB, identity_id)

    async def find_all_by_phone(self, phone: str, timeout: Optional[float] = None) -> List[IdentityDB]:
        """Every identity sharing a phone, oldest first."""
        return await bounded("find_all_by_phone", self._find_all_by_phone(phone), self._bound(timeout))

    async def _find_all_by_phone(self, phone: str) -> List[IdentityDB]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityDB)
                .where(IdentityDB.phone == phone)
                .order_by(IdentityDB.created_at.asc(), IdentityDB.id.asc())
            )
            return list(result.scalars().all())

    async def find_duplicate_phones(self, timeout: Optional[float] = None) -> List[str]:
        """Phones owned by more than one identity."""
        return await bounded("find_duplicate_phones", self._find_duplicate_phones(), self._bound(timeout))

    async def _find_duplicate_phones(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityDB.phone)
                .group_by(IdentityDB.phone)
                .having(func.count(IdentityDB.id) > 1)
                .order_by(IdentityDB.phone)
            )
            return [row[0] for row in result.all()]

    async def count(self, timeout: Optional[float] = None) -> int:
        return await bounded("count", self._count(), self._bound(timeout))

    async def _count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count(IdentityDB.id)))
            return int(result.scalar() or 0)

    async def _phone_claimed(self, phone: str) -> bool:
        async with self.session_factory() as session:
            return await session.get(PhoneClaimDB, phone) is not None

    # ==================== WRITES ====================

    async def insert(
        self,
        draft: IdentityDraft,
        *,
        action: str = "create",
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        performed_by: str = "system",
        timeout: Optional[float] = None
    ) -> IdentityDB:
        """
        Insert a new identity together with its phone claim.

        Raises:
            DuplicatePhone: another identity already claimed the phone
        """
        return await bounded(
            "insert",
            self._insert(draft, action, source_type, source_id, performed_by),
            self._bound(timeout),
        )

    async def _insert(
        self,
        draft: IdentityDraft,
        action: str,
        source_type: Optional[str],
        source_id: Optional[str],
        performed_by: str
    ) -> IdentityDB:
        for attempt in range(CUSTOMER_CODE_ATTEMPTS):
            identity = draft.build(attempt)
            async with self.session_factory() as session:
                session.add(identity)
                session.add(PhoneClaimDB(phone=identity.phone, identity_id=identity.id))
                session.add(IdentityLinkLogDB(
                    identity_id=identity.id,
                    action=action,
                    source_type=source_type,
                    source_id=source_id,
                    performed_by=performed_by,
                    details={"customer_code": identity.customer_code},
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if await self._phone_claimed(draft.phone):
                        raise DuplicatePhone(draft.phone)
                    logger.info(f"customer_code collision for {mask_phone(draft.phone)}, attempt {attempt + 1}")
                    continue

            logger.info(f"Created identity {identity.id} ({mask_phone(identity.phone)}) via {action}")
            return identity

        raise IdentityStoreUnavailable(
            f"Could not allocate a unique customer code after {CUSTOMER_CODE_ATTEMPTS} attempts"
        )

    async def update_fields(
        self,
        identity_id: str,
        partial: Dict[str, Any],
        *,
        action: Optional[str] = None,
        performed_by: str = "system",
        timeout: Optional[float] = None
    ) -> Optional[IdentityDB]:
        """
        Update mutable fields of an identity.

        Returns:
            The updated identity, or None if it no longer exists

        Raises:
            ValueError: If ``partial`` names an immutable or unknown field
        """
        unknown = set(partial) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update identity fields: {sorted(unknown)}")
        return await bounded(
            "update_fields",
            self._update_fields(identity_id, partial, action, performed_by),
            self._bound(timeout),
        )

    async def _update_fields(
        self,
        identity_id: str,
        partial: Dict[str, Any],
        action: Optional[str],
        performed_by: str
    ) -> Optional[IdentityDB]:
        async with self.session_factory() as session:
            identity = await session.get(IdentityDB, identity_id)
            if not identity:
                return None
            for key, value in partial.items():
                setattr(identity, key, value)
            identity.updated_at = datetime.now(timezone.utc)
            if action:
                session.add(IdentityLinkLogDB(
                    identity_id=identity_id,
                    action=action,
                    performed_by=performed_by,
                    details={"fields": sorted(partial)},
                ))
            await session.commit()
            return identity

    async def retire_duplicate(
        self,
        loser_id: str,
        survivor_id: str,
        phone: str,
        details: Optional[Dict[str, Any]] = None,
        performed_by: str = "consolidation",
        sweep: Optional[Sweep] = None,
        timeout: Optional[float] = None
    ) -> RetireResult:
        """
        Delete a merged-away identity, hand its phone claim to the survivor
        and record the merge, all in one transaction.

        ``sweep(session, loser_id, survivor_id)`` runs inside that
        transaction before the delete, so references written after an
        earlier repoint move with it instead of being orphaned.
        """
        return await bounded(
            "retire_duplicate",
            self._retire_duplicate(loser_id, survivor_id, phone, dict(details or {}), performed_by, sweep),
            self._bound(timeout),
        )

    async def _retire_duplicate(
        self,
        loser_id: str,
        survivor_id: str,
        phone: str,
        details: Dict[str, Any],
        performed_by: str,
        sweep: Optional[Sweep]
    ) -> RetireResult:
        async with self.session_factory() as session:
            swept = None
            if sweep is not None:
                swept = await sweep(session, loser_id, survivor_id)
                details["late_references"] = swept.to_dict()

            claim = await session.get(PhoneClaimDB, phone)
            if claim:
                claim.identity_id = survivor_id
            else:
                session.add(PhoneClaimDB(phone=phone, identity_id=survivor_id))

            result = await session.execute(delete(IdentityDB).where(IdentityDB.id == loser_id))
            session.add(IdentityLinkLogDB(
                identity_id=survivor_id,
                action="merge",
                source_type="consolidation",
                source_id=loser_id,
                performed_by=performed_by,
                details=details,
            ))
            await session.commit()
            return RetireResult(deleted=result.rowcount > 0, swept=swept)

    async def record_action(
        self,
        identity_id: str,
        action: str,
        source_type: Optional[str] = None,
        source_id: Optional[str] = None,
        performed_by: str = "system",
        details: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> None:
        """Append a row to the identity audit trail."""
        await bounded(
            "record_action",
            self._record_action(identity_id, action, source_type, source_id, performed_by, details or {}),
            self._bound(timeout),
        )

    async def _record_action(
        self,
        identity_id: str,
        action: str,
        source_type: Optional[str],
        source_id: Optional[str],
        performed_by: str,
        details: Dict[str, Any]
    ) -> None:
        async with self.session_factory() as session:
            session.add(IdentityLinkLogDB(
                identity_id=identity_id,
                action=action,
                source_type=source_type,
                source_id=source_id,
                performed_by=performed_by,
                details=details,
            ))
            await session.commit()
