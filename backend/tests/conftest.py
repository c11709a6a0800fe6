"""
Shared fixtures for identity engine tests.

- ``session_factory``: a fresh SQLite database per test (aiosqlite)
- ``FakeIdentityStore`` / ``FakeLegacyBridge``: in-memory stand-ins that
  yield to the event loop on every call, so concurrent resolves really
  interleave between their read and their insert
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from database.connection import build_engine, build_session_factory, init_db
from identity.errors import DuplicatePhone
from identity.models import IdentityDB, LegacyIdentityDB
from identity.store import IdentityDraft, MUTABLE_FIELDS, RetireResult


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}")
    await init_db(engine, create_tables=True)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


async def add_rows(session_factory, *rows):
    """Insert rows directly, bypassing the store (seeds historical data)."""
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


def make_identity(
    identity_id: str,
    phone: str,
    created_at: Optional[datetime] = None,
    **fields
) -> IdentityDB:
    created_at = created_at or datetime.now(timezone.utc)
    return IdentityDB(
        id=identity_id,
        phone=phone,
        customer_code=fields.pop("customer_code", f"CC-{identity_id}"),
        display_name=fields.pop("display_name", f"User {phone[-4:]}"),
        verified=fields.pop("verified", False),
        created_at=created_at,
        updated_at=created_at,
        **fields
    )


class FakeIdentityStore:
    """In-memory identity store with the adapter's contract."""

    def __init__(self):
        self.identities: Dict[str, IdentityDB] = {}
        self.claims: Dict[str, str] = {}
        self.actions: List[dict] = []
        self.insert_calls = 0

    def _ordered(self, phone: str) -> List[IdentityDB]:
        rows = [i for i in self.identities.values() if i.phone == phone]
        return sorted(rows, key=lambda i: (i.created_at, i.id))

    async def find_by_phone(self, phone, timeout=None):
        await asyncio.sleep(0)
        rows = self._ordered(phone)
        return rows[0] if rows else None

    async def find_by_id(self, identity_id, timeout=None):
        await asyncio.sleep(0)
        return self.identities.get(identity_id)

    async def find_all_by_phone(self, phone, timeout=None):
        await asyncio.sleep(0)
        return self._ordered(phone)

    async def find_duplicate_phones(self, timeout=None):
        phones = [i.phone for i in self.identities.values()]
        return sorted({p for p in phones if phones.count(p) > 1})

    async def count(self, timeout=None):
        return len(self.identities)

    async def insert(self, draft: IdentityDraft, *, action="create", source_type=None,
                     source_id=None, performed_by="system", timeout=None):
        self.insert_calls += 1
        await asyncio.sleep(0)
        if draft.phone in self.claims:
            raise DuplicatePhone(draft.phone)
        identity = draft.build()
        self.identities[identity.id] = identity
        self.claims[identity.phone] = identity.id
        self.actions.append({"action": action, "identity_id": identity.id,
                             "source_type": source_type, "source_id": source_id})
        return identity

    async def update_fields(self, identity_id, partial, *, action=None, performed_by="system", timeout=None):
        unknown = set(partial) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update identity fields: {sorted(unknown)}")
        await asyncio.sleep(0)
        identity = self.identities.get(identity_id)
        if identity is None:
            return None
        for key, value in partial.items():
            setattr(identity, key, value)
        if action:
            self.actions.append({"action": action, "identity_id": identity_id})
        return identity

    async def retire_duplicate(self, loser_id, survivor_id, phone, details=None,
                               performed_by="consolidation", sweep=None, timeout=None):
        self.claims[phone] = survivor_id
        removed = self.identities.pop(loser_id, None)
        self.actions.append({"action": "merge", "identity_id": survivor_id, "source_id": loser_id})
        return RetireResult(deleted=removed is not None)

    async def record_action(self, identity_id, action, source_type=None, source_id=None,
                            performed_by="system", details=None, timeout=None):
        self.actions.append({"action": action, "identity_id": identity_id})


class FakeLegacyBridge:
    """In-memory legacy collection."""

    def __init__(self, records: Optional[List[LegacyIdentityDB]] = None):
        self.records = {r.id: r for r in records or []}

    async def find_by_phone(self, phone, timeout=None):
        await asyncio.sleep(0)
        for record in self.records.values():
            if record.phone[-10:] == phone:
                return record
        return None

    async def find_by_id(self, legacy_id, timeout=None):
        await asyncio.sleep(0)
        return self.records.get(legacy_id)

    async def iter_batches(self, batch_size=500, timeout=None):
        records = sorted(self.records.values(), key=lambda r: r.id)
        for start in range(0, len(records), batch_size):
            yield records[start:start + batch_size]


@pytest.fixture
def fake_store():
    return FakeIdentityStore()


@pytest.fixture
def fake_legacy():
    return FakeLegacyBridge()
