"""
Identity Engine Module

Resolves every customer token the booking platform sees to exactly one
canonical customer identity.

Features:
- Identifier normalization (phones, prefixed phones, record ids)
- Race-safe get-or-create keyed by phone
- Read-only bridge to the legacy customer collection
- Ownership checks for mutating requests
- Duplicate consolidation with booking/address repointing
"""

from .models import (
    IdentityDB,
    PhoneClaimDB,
    LegacyIdentityDB,
    IdentityLinkLogDB
)
from .errors import (
    IdentityError,
    IdentityNotResolvable,
    DuplicatePhone,
    IdentityRaceUnresolved,
    IdentityResolutionTimeout,
    IdentityStoreUnavailable,
    RepointPartialFailure
)
from .resolver import ResolutionContext
from .service import IdentityService
from .router import router as identity_router

__all__ = [
    'IdentityDB',
    'PhoneClaimDB',
    'LegacyIdentityDB',
    'IdentityLinkLogDB',
    'IdentityError',
    'IdentityNotResolvable',
    'DuplicatePhone',
    'IdentityRaceUnresolved',
    'IdentityResolutionTimeout',
    'IdentityStoreUnavailable',
    'RepointPartialFailure',
    'ResolutionContext',
    'IdentityService',
    'identity_router'
]
