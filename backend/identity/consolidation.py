"""
Identity Engine - Consolidation Job

Batch repair for phones that ended up with more than one identity
(historical data, or a lost race before phone claims existed).

For every duplicate group:
- Survivor: earliest created_at, ties broken by the smallest id
- Each loser: repoint bookings/addresses, fill survivor blanks,
  then in one transaction move any references written since the
  repoint, hand over the phone claim and delete the loser
- A failed repoint stops that group; nothing more is deleted there

Safe to re-run: a completed run leaves no duplicate groups, and a
partially failed group is picked up again next time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple

from sentry_integration import capture_exception

from .audit import IdentityAuditEvent, log_identity_event
from .errors import IdentityError
from .models import IdentityDB
from .normalizer import extract_phone, mask_phone
from .repointer import DependentRecordRepointer, RepointResult
from .resolver import IdentityResolver, ResolutionContext
from .store import IdentityStore, default_display_name

logger = logging.getLogger(__name__)

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were written as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def select_survivor(members: List[IdentityDB]) -> Tuple[IdentityDB, List[IdentityDB]]:
    """Split a duplicate group into (survivor, losers). Missing timestamps sort last."""
    ordered = sorted(
        members,
        key=lambda m: (m.created_at is None, _as_utc(m.created_at) or _NEVER, m.id),
    )
    return ordered[0], ordered[1:]


@dataclass
class GroupReport:
    phone: str
    survivor_id: Optional[str] = None
    losers_merged: List[str] = field(default_factory=list)
    bookings_moved: int = 0
    addresses_moved: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phone": mask_phone(self.phone),
            "survivor_id": self.survivor_id,
            "losers_merged": list(self.losers_merged),
            "bookings_moved": self.bookings_moved,
            "addresses_moved": self.addresses_moved,
            "errors": list(self.errors),
        }


@dataclass
class BackfillReport:
    scanned: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "scanned": self.scanned,
            "created": self.created,
            "existing": self.existing,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class ConsolidationReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    groups: List[GroupReport] = field(default_factory=list)
    backfill: Optional[BackfillReport] = None

    @property
    def losers_merged(self) -> int:
        return sum(len(g.losers_merged) for g in self.groups)

    @property
    def bookings_moved(self) -> int:
        return sum(g.bookings_moved for g in self.groups)

    @property
    def addresses_moved(self) -> int:
        return sum(g.addresses_moved for g in self.groups)

    @property
    def failed_groups(self) -> int:
        return sum(1 for g in self.groups if not g.ok)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duplicate_groups": len(self.groups),
            "losers_merged": self.losers_merged,
            "bookings_moved": self.bookings_moved,
            "addresses_moved": self.addresses_moved,
            "failed_groups": self.failed_groups,
            "groups": [g.to_dict() for g in self.groups],
            "backfill": self.backfill.to_dict() if self.backfill else None,
        }


class ConsolidationJob:
    """
    Consolidation Job - merges duplicate identities per phone.
    """

    def __init__(
        self,
        store: IdentityStore,
        repointer: DependentRecordRepointer,
        resolver: IdentityResolver,
        backfill_batch_size: int = 500
    ):
        self.store = store
        self.repointer = repointer
        self.resolver = resolver
        self.backfill_batch_size = backfill_batch_size

    async def run(self, *, backfill_legacy: bool = False) -> ConsolidationReport:
        """
        Run one consolidation pass.

        Args:
            backfill_legacy: First bridge every legacy customer that has
                no primary identity yet

        Returns:
            ConsolidationReport with one entry per duplicate phone
        """
        report = ConsolidationReport(started_at=datetime.now(timezone.utc))
        logger.info(f"Consolidation started (backfill_legacy={backfill_legacy})")

        if backfill_legacy:
            report.backfill = await self.backfill_legacy()

        phones = await self.store.find_duplicate_phones()
        logger.info(f"Found {len(phones)} phones with duplicate identities")

        for phone in phones:
            report.groups.append(await self.consolidate_phone(phone))

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Consolidation finished: {report.losers_merged} merged, "
            f"{report.bookings_moved} bookings and {report.addresses_moved} addresses moved, "
            f"{report.failed_groups} groups failed"
        )
        return report

    async def consolidate_phone(self, phone: str) -> GroupReport:
        group = GroupReport(phone=phone)

        try:
            members = await self.store.find_all_by_phone(phone)
        except IdentityError as e:
            self._record_failure(group, None, e)
            return group

        if not members:
            return group

        survivor, losers = select_survivor(members)
        group.survivor_id = survivor.id

        for loser in losers:
            try:
                moved = await self.repointer.repoint(loser.id, survivor.id)
                group.bookings_moved += moved.bookings_moved
                group.addresses_moved += moved.addresses_moved

                survivor = await self._absorb(survivor, loser)

                retired = await self.store.retire_duplicate(
                    loser.id,
                    survivor.id,
                    phone,
                    details={
                        "customer_code": loser.customer_code,
                        "bookings_moved": moved.bookings_moved,
                        "addresses_moved": moved.addresses_moved,
                    },
                    sweep=self.repointer.move_references,
                )
            except IdentityError as e:
                self._record_failure(group, loser, e)
                break

            late = retired.swept or RepointResult()
            if late.total:
                logger.warning(
                    f"{late.total} references to {loser.id} appeared during consolidation; "
                    f"moved to {survivor.id} with the delete"
                )
            group.bookings_moved += late.bookings_moved
            group.addresses_moved += late.addresses_moved

            group.losers_merged.append(loser.id)
            log_identity_event(IdentityAuditEvent.MERGE_PERFORMED, survivor.id, {
                "phone": phone,
                "loser_id": loser.id,
                "bookings_moved": moved.bookings_moved + late.bookings_moved,
                "addresses_moved": moved.addresses_moved + late.addresses_moved,
            })

        return group

    async def _absorb(self, survivor: IdentityDB, loser: IdentityDB) -> IdentityDB:
        """Fill the survivor's blanks from the loser."""
        partial = {}

        placeholder = default_display_name(survivor.phone)
        if (not survivor.display_name or survivor.display_name == placeholder) and \
                loser.display_name and loser.display_name != placeholder:
            partial["display_name"] = loser.display_name
        if not survivor.email and loser.email:
            partial["email"] = loser.email
        if loser.verified and not survivor.verified:
            partial["verified"] = True

        survivor_login = _as_utc(survivor.last_login_at)
        loser_login = _as_utc(loser.last_login_at)
        if loser_login and (survivor_login is None or loser_login > survivor_login):
            partial["last_login_at"] = loser_login

        if not partial:
            return survivor

        updated = await self.store.update_fields(
            survivor.id,
            partial,
            action="merge_fill",
            performed_by="consolidation",
        )
        return updated or survivor

    def _record_failure(self, group: GroupReport, loser: Optional[IdentityDB], error: IdentityError):
        loser_id = loser.id if loser else None
        group.errors.append(f"{loser_id or '-'}: {error.code}: {error.message}")
        logger.error(
            f"Consolidation of {mask_phone(group.phone)} stopped at loser {loser_id}: {error.message}"
        )
        log_identity_event(IdentityAuditEvent.MERGE_SKIPPED, group.survivor_id, {
            "phone": group.phone,
            "loser_id": loser_id,
            "error": error.code,
        }, success=False)
        capture_exception(error, phone=mask_phone(group.phone), loser_id=loser_id)

    async def backfill_legacy(self) -> BackfillReport:
        """Bridge every legacy customer that has no primary identity."""
        report = BackfillReport()
        context = ResolutionContext(source_type="legacy_backfill", performed_by="consolidation")

        async for batch in self.resolver.legacy.iter_batches(self.backfill_batch_size):
            for record in batch:
                report.scanned += 1
                phone = extract_phone(record.phone)
                if phone is None:
                    report.skipped += 1
                    continue
                try:
                    if await self.store.find_by_phone(phone):
                        report.existing += 1
                        continue
                    await self.resolver.resolve(phone, context)
                    report.created += 1
                except IdentityError as e:
                    report.errors += 1
                    logger.error(f"Legacy backfill failed for {record.id}: {e.code}")

        logger.info(f"Legacy backfill: {report.to_dict()}")
        return report
