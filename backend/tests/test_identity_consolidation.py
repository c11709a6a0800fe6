"""
Repointer and Consolidation Job Tests

Runs against a temporary SQLite database (aiosqlite) seeded with
historical duplicates that predate phone claims.

Run with: pytest tests/test_identity_consolidation.py -v
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database.booking_models import AddressDB, BookingDB
from identity.consolidation import ConsolidationJob, select_survivor
from identity.errors import RepointPartialFailure
from identity.legacy import LegacyIdentityBridge
from identity.models import LegacyIdentityDB, PhoneClaimDB
from identity.repointer import DependentRecordRepointer, RepointResult
from identity.resolver import IdentityResolver
from identity.service import IdentityService
from identity.store import IdentityStore

from conftest import add_rows, make_identity

JAN = datetime(2024, 1, 1, tzinfo=timezone.utc)
FEB = datetime(2024, 2, 1, tzinfo=timezone.utc)
MAR = datetime(2024, 3, 1, tzinfo=timezone.utc)


def booking(customer_id, n=1):
    return [BookingDB(customer_id=customer_id, service="Sofa cleaning") for _ in range(n)]


def address(user_id, n=1):
    return [AddressDB(user_id=user_id, title="Home", full_address="12 MG Road") for _ in range(n)]


@pytest.fixture
def service(session_factory):
    return IdentityService(
        IdentityStore(session_factory, timeout=10.0),
        LegacyIdentityBridge(session_factory, timeout=10.0),
        DependentRecordRepointer(session_factory, timeout=10.0),
        race_backoff=0,
    )


class TestRepointer:

    @pytest.fixture
    def repointer(self, session_factory):
        return DependentRecordRepointer(session_factory, timeout=10.0)

    @pytest.mark.asyncio
    async def test_moves_every_reference(self, repointer, session_factory):
        await add_rows(session_factory, *booking("old", 3), *address("old", 2), *booking("other"))

        result = await repointer.repoint("old", "new")

        assert (result.bookings_moved, result.addresses_moved, result.total) == (3, 2, 5)
        assert (await repointer.count_references("old")).total == 0
        assert (await repointer.count_references("new")).total == 5
        assert (await repointer.count_references("other")).bookings_moved == 1

    @pytest.mark.asyncio
    async def test_idempotent(self, repointer, session_factory):
        await add_rows(session_factory, *booking("old", 2))

        await repointer.repoint("old", "new")
        second = await repointer.repoint("old", "new")

        assert second.total == 0

    @pytest.mark.asyncio
    async def test_same_id_is_noop(self, repointer, session_factory):
        await add_rows(session_factory, *booking("same", 2))

        assert (await repointer.repoint("same", "same")).total == 0

    @pytest.mark.asyncio
    async def test_store_failure_becomes_partial_failure(self, engine, repointer):
        async with engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE address")

        with pytest.raises(RepointPartialFailure) as exc_info:
            await repointer.repoint("old", "new")

        assert exc_info.value.from_id == "old"
        assert exc_info.value.reason == "identity_store_unavailable"

    @pytest.mark.asyncio
    async def test_failed_repoint_rolls_back_bookings(self, engine, repointer, session_factory):
        await add_rows(session_factory, *booking("old", 2))
        async with engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE address")

        with pytest.raises(RepointPartialFailure):
            await repointer.repoint("old", "new")

        async with engine.connect() as conn:
            rows = await conn.exec_driver_sql("SELECT COUNT(*) FROM booking WHERE customer_id = 'old'")
            assert rows.scalar() == 2


class TestSurvivorSelection:

    def test_earliest_wins(self):
        members = [make_identity("b", "9876543210", FEB), make_identity("a", "9876543210", MAR)]
        survivor, losers = select_survivor(members)
        assert survivor.id == "b"
        assert [l.id for l in losers] == ["a"]

    def test_tie_breaks_on_smallest_id(self):
        members = [make_identity("z", "9876543210", JAN), make_identity("m", "9876543210", JAN)]
        assert select_survivor(members)[0].id == "m"

    def test_missing_timestamp_sorts_last(self):
        undated = make_identity("a", "9876543210")
        undated.created_at = None
        members = [undated, make_identity("b", "9876543210", MAR)]
        assert select_survivor(members)[0].id == "b"

    def test_naive_and_aware_timestamps_compare(self):
        naive = make_identity("a", "9876543210", datetime(2024, 1, 1))
        aware = make_identity("b", "9876543210", FEB)
        assert select_survivor([aware, naive])[0].id == "a"


class TestConsolidationJob:

    @pytest.mark.asyncio
    async def test_merges_duplicates_into_earliest(self, service, session_factory):
        """Scenario: three identities share a phone, bookings spread across them."""
        await add_rows(
            session_factory,
            make_identity("id-1", "9876543210", JAN),
            make_identity("id-2", "9876543210", FEB, display_name="Priya", email="priya@example.com", verified=True),
            make_identity("id-3", "9876543210", MAR),
            *booking("id-1", 2), *booking("id-2", 1), *booking("id-3", 1),
            *address("id-3", 1),
        )

        report = await service.run_consolidation()

        assert len(report.groups) == 1
        group = report.groups[0]
        assert group.survivor_id == "id-1"
        assert group.losers_merged == ["id-2", "id-3"]
        assert (group.bookings_moved, group.addresses_moved) == (2, 1)
        assert group.errors == []

        refs = await service.repointer.count_references("id-1")
        assert (refs.bookings_moved, refs.addresses_moved) == (4, 1)
        assert [i.id for i in await service.store.find_all_by_phone("9876543210")] == ["id-1"]

        survivor = await service.store.find_by_id("id-1")
        assert survivor.display_name == "Priya"
        assert survivor.email == "priya@example.com"
        assert survivor.verified is True

        async with session_factory() as session:
            claim = await session.get(PhoneClaimDB, "9876543210")
        assert claim.identity_id == "id-1"

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, service, session_factory):
        await add_rows(
            session_factory,
            make_identity("id-1", "9876543210", JAN),
            make_identity("id-2", "9876543210", FEB),
            *booking("id-2", 1),
        )

        first = await service.run_consolidation()
        second = await service.run_consolidation()

        assert first.losers_merged == 1
        assert second.groups == []
        assert second.to_dict()["duplicate_groups"] == 0

    @pytest.mark.asyncio
    async def test_two_identities_one_booking_each(self, service, session_factory):
        """Identity B (created second) is merged into A; both bookings end up on A."""
        await add_rows(
            session_factory,
            make_identity("identity-a", "9000000001", JAN),
            make_identity("identity-b", "9000000001", FEB),
            BookingDB(id="booking-a", customer_id="identity-a"),
            BookingDB(id="booking-b", customer_id="identity-b"),
        )

        await service.run_consolidation()

        assert await service.store.find_by_id("identity-b") is None
        async with session_factory() as session:
            rows = await session.execute(select(BookingDB.id, BookingDB.customer_id).order_by(BookingDB.id))
            owners = dict(rows.all())
        assert owners == {"booking-a": "identity-a", "booking-b": "identity-a"}

    @pytest.mark.asyncio
    async def test_booking_written_after_repoint_moves_with_delete(self, service, session_factory):
        await add_rows(
            session_factory,
            make_identity("id-1", "9876543210", JAN),
            make_identity("id-2", "9876543210", FEB),
            *booking("id-2", 1),
        )

        real_repoint = service.repointer.repoint

        async def repoint_then_book(from_id, to_id, timeout=None):
            moved = await real_repoint(from_id, to_id, timeout)
            # a booking flow still holding the loser id writes in between
            await add_rows(session_factory, *booking(from_id, 1), *address(from_id, 1))
            return moved

        service.consolidation.repointer.repoint = repoint_then_book
        report = await service.run_consolidation()

        group = report.groups[0]
        assert group.losers_merged == ["id-2"]
        assert (group.bookings_moved, group.addresses_moved) == (2, 1)
        assert (await service.repointer.count_references("id-2")).total == 0

        refs = await service.repointer.count_references("id-1")
        assert (refs.bookings_moved, refs.addresses_moved) == (2, 1)

    @pytest.mark.asyncio
    async def test_failed_sweep_keeps_loser(self, service, session_factory):
        await add_rows(
            session_factory,
            make_identity("id-1", "9876543210", JAN),
            make_identity("id-2", "9876543210", FEB),
        )

        with patch.object(service.repointer, "move_references",
                          AsyncMock(side_effect=SQLAlchemyError("lock timeout"))), \
                patch("identity.consolidation.capture_exception"):
            report = await service.run_consolidation()

        assert report.failed_groups == 1
        assert "identity_store_unavailable" in report.groups[0].errors[0]
        remaining = await service.store.find_all_by_phone("9876543210")
        assert [i.id for i in remaining] == ["id-1", "id-2"]

    @pytest.mark.asyncio
    async def test_repoint_failure_skips_group_and_continues(self, service, session_factory):
        await add_rows(
            session_factory,
            make_identity("a-1", "9000000001", JAN),
            make_identity("a-2", "9000000001", FEB),
            make_identity("a-3", "9000000001", MAR),
            make_identity("b-1", "9000000002", JAN),
            make_identity("b-2", "9000000002", FEB),
        )

        real_repoint = service.repointer.repoint

        async def flaky_repoint(from_id, to_id, timeout=None):
            if from_id == "a-2":
                raise RepointPartialFailure(from_id, to_id, "identity_resolution_timeout")
            return await real_repoint(from_id, to_id, timeout)

        service.consolidation.repointer.repoint = flaky_repoint
        with patch("identity.consolidation.capture_exception") as capture:
            report = await service.run_consolidation()

        by_phone = {g.phone: g for g in report.groups}
        failed, merged = by_phone["9000000001"], by_phone["9000000002"]

        assert failed.losers_merged == []
        assert len(failed.errors) == 1
        assert "repoint_partial_failure" in failed.errors[0]
        assert merged.losers_merged == ["b-2"]
        assert report.failed_groups == 1
        capture.assert_called_once()

        # Nothing in the failed group was deleted
        remaining = await service.store.find_all_by_phone("9000000001")
        assert [i.id for i in remaining] == ["a-1", "a-2", "a-3"]

    @pytest.mark.asyncio
    async def test_backfill_bridges_legacy_customers(self, service, session_factory):
        await add_rows(
            session_factory,
            LegacyIdentityDB(id="legacy-1", phone="919876543210", name="Asha", is_verified=True),
            LegacyIdentityDB(id="legacy-2", phone="9123456780", name="Dev"),
            LegacyIdentityDB(id="legacy-3", phone="12345", name="Broken"),
            make_identity("existing", "9123456780", JAN),
        )

        report = await service.run_consolidation(backfill_legacy=True)

        assert report.backfill.to_dict() == {
            "scanned": 3, "created": 1, "existing": 1, "skipped": 1, "errors": 0
        }
        bridged = await service.store.find_by_phone("9876543210")
        assert bridged.display_name == "Asha"
        assert bridged.verified is True

    @pytest.mark.asyncio
    async def test_report_masks_phones(self, service, session_factory):
        await add_rows(
            session_factory,
            make_identity("id-1", "9876543210", JAN),
            make_identity("id-2", "9876543210", FEB),
        )

        report = (await service.run_consolidation()).to_dict()

        assert report["groups"][0]["phone"] == "***3210"
        assert report["losers_merged"] == 1


class TestConsolidationWithMocks:

    @pytest.mark.asyncio
    async def test_stops_group_without_deleting(self, fake_store, fake_legacy):
        fake_store.identities["a"] = make_identity("a", "9876543210", JAN)
        fake_store.identities["b"] = make_identity("b", "9876543210", FEB)
        repointer = AsyncMock()
        repointer.repoint.side_effect = RepointPartialFailure("b", "a", "identity_store_unavailable")
        job = ConsolidationJob(fake_store, repointer, IdentityResolver(fake_store, fake_legacy))

        with patch("identity.consolidation.capture_exception"):
            report = await job.run()

        assert set(fake_store.identities) == {"a", "b"}
        assert report.groups[0].survivor_id == "a"
        assert report.groups[0].errors

    @pytest.mark.asyncio
    async def test_placeholder_name_is_replaced(self, fake_store, fake_legacy):
        fake_store.identities["a"] = make_identity("a", "9876543210", JAN)
        fake_store.identities["b"] = make_identity("b", "9876543210", FEB, display_name="Nisha")
        repointer = AsyncMock()
        repointer.repoint.return_value = RepointResult(bookings_moved=1)
        job = ConsolidationJob(fake_store, repointer, IdentityResolver(fake_store, fake_legacy))

        report = await job.run()

        assert fake_store.identities["a"].display_name == "Nisha"
        assert report.bookings_moved == 1
