"""
Identity Engine - Authorization Matcher

Decides whether a requester may act on a record owned by an identity
(cancel a booking, edit an address). A requester matches when it
resolves to the owner, or to another identity with the owner's phone
that consolidation has not merged yet.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import IdentityAuditEvent, log_identity_event
from .resolver import IdentityResolver
from .store import IdentityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


class AuthorizationMatcher:

    def __init__(self, resolver: IdentityResolver, store: IdentityStore, allow_anonymous: bool = True):
        self.resolver = resolver
        self.store = store
        self.allow_anonymous = allow_anonymous

    async def authorize(
        self,
        requester_token: Optional[str],
        owner_id: str,
        *,
        timeout: Optional[float] = None
    ) -> AuthorizationDecision:
        """
        Match a requester token against a record owner.

        Read-only: never creates an identity. Store timeouts propagate
        to the caller instead of turning into a decision.
        """
        if requester_token is None or not str(requester_token).strip():
            if self.allow_anonymous:
                logger.warning(f"Mutating request on {owner_id} without a requester token, allowing")
                return self._decide(owner_id, None, True, "no_requester_token")
            return self._decide(owner_id, None, False, "no_requester_token")

        requester = await self.resolver.lookup(requester_token, timeout=timeout)
        if requester is None:
            return self._decide(owner_id, None, False, "unresolved_requester")

        if requester.id == owner_id:
            return self._decide(owner_id, requester.id, True, "same_identity")

        owner = await self.store.find_by_id(owner_id, timeout=timeout)
        if owner is None:
            return self._decide(owner_id, requester.id, False, "owner_not_found")

        if owner.phone == requester.phone:
            return self._decide(owner_id, requester.id, True, "same_phone")

        return self._decide(owner_id, requester.id, False, "different_customer")

    def _decide(
        self,
        owner_id: str,
        requester_id: Optional[str],
        allowed: bool,
        reason: str
    ) -> AuthorizationDecision:
        log_identity_event(IdentityAuditEvent.AUTHORIZATION_DECIDED, requester_id, {
            "owner_id": owner_id,
            "allowed": allowed,
            "reason": reason,
        }, success=allowed)
        return AuthorizationDecision(allowed=allowed, reason=reason)
