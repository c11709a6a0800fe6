"""
Identity Engine - Service Layer

Facade the booking, address and login flows call into:
- resolve: any customer token -> canonical identity (creates on miss)
- authorize: may this requester touch this owner's record
- register: OTP-verified registration (create or update)
- customer_ids_for: identity ids to match bookings against
- run_consolidation: merge duplicate identities per phone
"""

import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings

from .authorization import AuthorizationDecision, AuthorizationMatcher
from .consolidation import ConsolidationJob, ConsolidationReport
from .legacy import LegacyIdentityBridge
from .models import IdentityDB
from .repointer import DependentRecordRepointer
from .resolver import IdentityResolver, ResolutionContext
from .store import IdentityStore

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Identity Service - wires the engine components together.

    Construct once per application lifespan (or per job run); every
    component opens its own short sessions from the given factories.
    """

    def __init__(
        self,
        store: IdentityStore,
        legacy: LegacyIdentityBridge,
        repointer: DependentRecordRepointer,
        *,
        max_race_retries: int = 3,
        race_backoff: float = 0.05,
        allow_anonymous: bool = True,
        phone_prefixes=None
    ):
        self.store = store
        self.legacy = legacy
        self.repointer = repointer
        resolver_kwargs = {"max_race_retries": max_race_retries, "race_backoff": race_backoff}
        if phone_prefixes:
            resolver_kwargs["phone_prefixes"] = phone_prefixes
        self.resolver = IdentityResolver(store, legacy, **resolver_kwargs)
        self.authorization = AuthorizationMatcher(self.resolver, store, allow_anonymous=allow_anonymous)
        self.consolidation = ConsolidationJob(store, repointer, self.resolver)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker,
        legacy_session_factory: Optional[async_sessionmaker] = None
    ) -> "IdentityService":
        timeout = settings.IDENTITY_STORE_TIMEOUT_SECONDS
        if settings.IDENTITY_ALLOW_ANONYMOUS_MUTATIONS:
            logger.warning("Anonymous mutating requests are allowed (IDENTITY_ALLOW_ANONYMOUS_MUTATIONS)")
        return cls(
            IdentityStore(session_factory, timeout=timeout),
            LegacyIdentityBridge(legacy_session_factory or session_factory, timeout=timeout),
            DependentRecordRepointer(session_factory, timeout=timeout),
            max_race_retries=settings.IDENTITY_MAX_RACE_RETRIES,
            race_backoff=settings.IDENTITY_RACE_BACKOFF_SECONDS,
            allow_anonymous=settings.IDENTITY_ALLOW_ANONYMOUS_MUTATIONS,
            phone_prefixes=settings.phone_prefixes,
        )

    # ==================== RESOLUTION ====================

    async def resolve(
        self,
        raw_token: Optional[str],
        context: Optional[ResolutionContext] = None,
        *,
        timeout: Optional[float] = None
    ) -> IdentityDB:
        return await self.resolver.resolve(raw_token, context, timeout=timeout)

    async def lookup(self, raw_token: Optional[str], *, timeout: Optional[float] = None) -> Optional[IdentityDB]:
        return await self.resolver.lookup(raw_token, timeout=timeout)

    async def customer_ids_for(self, raw_token: Optional[str], *, timeout: Optional[float] = None) -> List[str]:
        return await self.resolver.customer_ids_for(raw_token, timeout=timeout)

    async def authorize(
        self,
        requester_token: Optional[str],
        owner_id: str,
        *,
        timeout: Optional[float] = None
    ) -> AuthorizationDecision:
        return await self.authorization.authorize(requester_token, owner_id, timeout=timeout)

    async def register(
        self,
        phone: str,
        name: Optional[str],
        email: Optional[str] = None,
        verified: bool = True,
        timeout: Optional[float] = None
    ) -> IdentityDB:
        return await self.resolver.register(phone, name, email=email, verified=verified, timeout=timeout)

    # ==================== ADMINISTRATION ====================

    async def get_identity(self, identity_id: str, timeout: Optional[float] = None) -> Optional[IdentityDB]:
        return await self.store.find_by_id(identity_id, timeout=timeout)

    async def find_duplicates(self) -> List[Dict[str, Any]]:
        """Phones owned by more than one identity, with the members oldest first."""
        duplicates = []
        for phone in await self.store.find_duplicate_phones():
            members = await self.store.find_all_by_phone(phone)
            duplicates.append({
                "phone": phone,
                "count": len(members),
                "identities": [m.to_dict() for m in members],
            })
        return duplicates

    async def run_consolidation(self, backfill_legacy: bool = False) -> ConsolidationReport:
        return await self.consolidation.run(backfill_legacy=backfill_legacy)

    async def stats(self) -> Dict[str, int]:
        duplicate_phones = await self.store.find_duplicate_phones()
        return {
            "identities": await self.store.count(),
            "duplicate_phones": len(duplicate_phones),
        }
