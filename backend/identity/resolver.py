"""
Identity Engine - Resolver

Turns any customer token seen by the booking, address and login flows
into exactly one canonical identity, creating it on first sight.

Resolution order:
1. Store record id -> primary row, else legacy row -> its phone
2. Phone -> canonical primary row (earliest created)
3. Miss -> seed from legacy customer (if any) and insert
4. Lost insert race -> re-read the winner, bounded retries

No locks are held: two requests for a new phone may both miss and both
insert. The phone claim lets exactly one insert win and the other one
converges on the winner's row.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Iterable

from .audit import IdentityAuditEvent, log_identity_event
from .errors import DuplicatePhone, IdentityError, IdentityNotResolvable, IdentityRaceUnresolved
from .legacy import LegacyIdentityBridge
from .models import IdentityDB, LegacyIdentityDB
from .normalizer import (
    DEFAULT_PHONE_PREFIXES,
    IdentifierKind,
    NormalizedIdentifier,
    extract_phone,
    mask_phone,
    normalize_identifier,
)
from .store import IdentityDraft, IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    """Optional seed data supplied by the calling flow."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    verified: Optional[bool] = None
    source_type: str = "booking"
    performed_by: str = "system"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class IdentityResolver:
    """
    Identity Resolver - the only place identities are created.
    """

    def __init__(
        self,
        store: IdentityStore,
        legacy: LegacyIdentityBridge,
        *,
        max_race_retries: int = 3,
        race_backoff: float = 0.05,
        phone_prefixes: Iterable[str] = DEFAULT_PHONE_PREFIXES
    ):
        self.store = store
        self.legacy = legacy
        self.max_race_retries = max_race_retries
        self.race_backoff = race_backoff
        self.phone_prefixes = tuple(phone_prefixes)

    def normalize(self, token: Optional[str]) -> NormalizedIdentifier:
        return normalize_identifier(token, self.phone_prefixes)

    # ==================== RESOLVE ====================

    async def resolve(
        self,
        raw_token: Optional[str],
        context: Optional[ResolutionContext] = None,
        *,
        timeout: Optional[float] = None
    ) -> IdentityDB:
        """
        Resolve a raw token to its canonical identity, creating it if needed.

        Args:
            raw_token: Phone, prefixed phone or store record id
            context: Seed data used when the identity has to be created,
                and fallback phone when the token itself is unusable
            timeout: Per store call bound (defaults to the store's)

        Returns:
            The canonical IdentityDB

        Raises:
            IdentityNotResolvable: Token and context carry no usable phone
            IdentityRaceUnresolved: Insert conflict never converged
            IdentityResolutionTimeout: A store call exceeded its bound
        """
        context = context or ResolutionContext()
        identifier = self.normalize(raw_token)
        phone = identifier.phone
        legacy_record = None

        if identifier.kind == IdentifierKind.STORE_ID:
            identity = await self.store.find_by_id(identifier.raw_id, timeout=timeout)
            if identity:
                logger.debug(f"Resolved store id {identity.id}")
                return identity

            legacy_record = await self.legacy.find_by_id(identifier.raw_id, timeout=timeout)
            if legacy_record:
                phone = extract_phone(legacy_record.phone)
                if phone is None:
                    legacy_record = None

        if phone is None:
            phone = self.normalize(context.phone).phone
            if phone is not None:
                logger.info(f"Token unusable, falling back to context phone {mask_phone(phone)}")

        if phone is None:
            raise IdentityNotResolvable(
                f"Cannot resolve identifier of kind {identifier.kind.value}",
                token=identifier.raw,
            )

        return await self._resolve_phone(phone, context, legacy_record, timeout)

    async def _resolve_phone(
        self,
        phone: str,
        context: ResolutionContext,
        legacy_record: Optional[LegacyIdentityDB],
        timeout: Optional[float]
    ) -> IdentityDB:
        existing = await self.store.find_by_phone(phone, timeout=timeout)
        if existing:
            log_identity_event(IdentityAuditEvent.IDENTITY_RESOLVED, existing.id, {
                "phone": phone,
                "source_type": context.source_type,
            })
            return await self._touch_login(existing, timeout)

        if legacy_record is None:
            legacy_record = await self.legacy.find_by_phone(phone, timeout=timeout)

        draft = self._build_draft(phone, context, legacy_record)
        if legacy_record:
            action, source_type, source_id = "legacy_bridge", "legacy_customer", legacy_record.id
        else:
            action, source_type, source_id = "create", context.source_type, None

        try:
            identity = await self.store.insert(
                draft,
                action=action,
                source_type=source_type,
                source_id=source_id,
                performed_by=context.performed_by,
                timeout=timeout,
            )
        except DuplicatePhone:
            return await self._await_winner(phone, timeout)

        event = IdentityAuditEvent.LEGACY_BRIDGED if legacy_record else IdentityAuditEvent.IDENTITY_CREATED
        log_identity_event(event, identity.id, {
            "phone": phone,
            "source_type": source_type,
            "source_id": source_id,
        })
        return identity

    def _build_draft(
        self,
        phone: str,
        context: ResolutionContext,
        legacy_record: Optional[LegacyIdentityDB]
    ) -> IdentityDraft:
        # Context wins when non-empty; legacy fills the blanks
        name = _clean(context.name)
        email = _clean(context.email)
        verified = context.verified

        if legacy_record:
            name = name or _clean(legacy_record.name)
            email = email or _clean(legacy_record.email)
            if verified is None:
                verified = bool(legacy_record.is_verified)

        return IdentityDraft(
            phone=phone,
            display_name=name,
            email=email,
            verified=bool(verified),
            last_login_at=datetime.now(timezone.utc),
        )

    async def _await_winner(self, phone: str, timeout: Optional[float]) -> IdentityDB:
        """Re-read the identity that won an insert race for ``phone``."""
        for attempt in range(self.max_race_retries):
            winner = await self.store.find_by_phone(phone, timeout=timeout)
            if winner:
                log_identity_event(IdentityAuditEvent.RACE_RETRIED, winner.id, {
                    "phone": phone,
                    "attempt": attempt + 1,
                })
                return winner
            await asyncio.sleep(self.race_backoff * (attempt + 1))

        log_identity_event(IdentityAuditEvent.RACE_RETRIED, None, {
            "phone": phone,
            "attempts": self.max_race_retries,
        }, success=False)
        raise IdentityRaceUnresolved(
            f"Phone {mask_phone(phone)} was claimed but its identity never became visible"
        )

    async def _touch_login(self, identity: IdentityDB, timeout: Optional[float]) -> IdentityDB:
        """Stamp last_login_at; a failed stamp never fails the resolution."""
        try:
            updated = await self.store.update_fields(
                identity.id,
                {"last_login_at": datetime.now(timezone.utc)},
                timeout=timeout,
            )
        except IdentityError as e:
            logger.warning(f"Could not update last_login_at for {identity.id}: {e.code}")
            return identity
        return updated or identity

    # ==================== READ-ONLY ====================

    async def lookup(self, raw_token: Optional[str], *, timeout: Optional[float] = None) -> Optional[IdentityDB]:
        """Resolve without creating anything or touching last_login_at."""
        identifier = self.normalize(raw_token)
        phone = identifier.phone

        if identifier.kind == IdentifierKind.STORE_ID:
            identity = await self.store.find_by_id(identifier.raw_id, timeout=timeout)
            if identity:
                return identity
            legacy_record = await self.legacy.find_by_id(identifier.raw_id, timeout=timeout)
            phone = extract_phone(legacy_record.phone) if legacy_record else None

        if phone is None:
            return None
        return await self.store.find_by_phone(phone, timeout=timeout)

    async def customer_ids_for(self, raw_token: Optional[str], *, timeout: Optional[float] = None) -> List[str]:
        """
        Every primary identity id that shares the token's phone.

        Bookings written before consolidation may still point at a
        duplicate, so booking queries match on all of them.
        """
        identity = await self.lookup(raw_token, timeout=timeout)
        if identity is None:
            return []
        siblings = await self.store.find_all_by_phone(identity.phone, timeout=timeout)
        ids = [s.id for s in siblings]
        if identity.id not in ids:
            ids.insert(0, identity.id)
        return ids

    # ==================== REGISTRATION ====================

    async def register(
        self,
        phone: Optional[str],
        name: Optional[str],
        *,
        email: Optional[str] = None,
        verified: bool = True,
        timeout: Optional[float] = None
    ) -> IdentityDB:
        """
        Create-or-update path used after OTP verification.

        An existing identity gets the supplied name/email, the verified flag
        and a fresh last_login_at. A missing one is inserted through the
        same conflict handling as ``resolve``.

        Raises:
            IdentityNotResolvable: ``phone`` is not a phone number
        """
        identifier = self.normalize(phone)
        if not identifier.has_phone:
            raise IdentityNotResolvable("Registration requires a valid phone number", token=identifier.raw)

        canonical = identifier.phone
        name = _clean(name)
        email = _clean(email)
        now = datetime.now(timezone.utc)

        existing = await self.store.find_by_phone(canonical, timeout=timeout)
        if existing is None:
            draft = IdentityDraft(
                phone=canonical,
                display_name=name,
                email=email,
                verified=verified,
                last_login_at=now,
            )
            try:
                created = await self.store.insert(
                    draft,
                    action="register",
                    source_type="registration",
                    performed_by="registration",
                    timeout=timeout,
                )
            except DuplicatePhone:
                existing = await self._await_winner(canonical, timeout)
            else:
                log_identity_event(IdentityAuditEvent.IDENTITY_REGISTERED, created.id, {
                    "phone": canonical,
                    "created": True,
                })
                return created

        partial = {"verified": verified, "last_login_at": now}
        if name:
            partial["display_name"] = name
        if email:
            partial["email"] = email

        updated = await self.store.update_fields(
            existing.id,
            partial,
            action="register",
            performed_by="registration",
            timeout=timeout,
        )
        identity = updated or existing
        log_identity_event(IdentityAuditEvent.IDENTITY_REGISTERED, identity.id, {
            "phone": canonical,
            "created": False,
        })
        return identity
