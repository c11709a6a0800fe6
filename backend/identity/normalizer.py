"""
Identity Engine - Identifier Normalizer

Classifies a raw customer token into one canonical form. Pure function:
no I/O, no side effects.

Accepted shapes, first match wins:
- store record id (hyphenated UUID, or a 24-hex legacy document id)
- prefixed phone, e.g. "user_9876543210", "+919876543210", "tel:9876543210"
- bare digits, e.g. "9876543210", "919876543210"

Phones are always reduced to their last 10 digits so country codes
never produce a second identity for the same number.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

PHONE_LENGTH = 10

DEFAULT_PHONE_PREFIXES = ("user_", "+", "tel:")

STORE_ID_PATTERN = re.compile(
    r"^(?:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}|[0-9a-f]{24})$",
    re.IGNORECASE,
)


class IdentifierKind(str, Enum):
    """Classification of a raw identifier token"""
    PHONE_DIGITS = "phone_digits"
    PREFIXED_PHONE = "prefixed_phone"
    STORE_ID = "store_id"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class NormalizedIdentifier:
    kind: IdentifierKind
    raw: str
    phone: Optional[str] = None
    raw_id: Optional[str] = None

    @property
    def has_phone(self) -> bool:
        return self.phone is not None


def canonical_phone(digits: str) -> Optional[str]:
    """Return the last 10 digits, or None if there are fewer than 10."""
    if not digits.isdigit() or len(digits) < PHONE_LENGTH:
        return None
    return digits[-PHONE_LENGTH:]


def normalize_identifier(
    token: Optional[str],
    prefixes: Iterable[str] = DEFAULT_PHONE_PREFIXES,
) -> NormalizedIdentifier:
    if not isinstance(token, str):
        return NormalizedIdentifier(kind=IdentifierKind.UNRECOGNIZED, raw="" if token is None else str(token))

    candidate = token.strip()

    if STORE_ID_PATTERN.match(candidate):
        return NormalizedIdentifier(kind=IdentifierKind.STORE_ID, raw=token, raw_id=candidate)

    lowered = candidate.lower()
    for prefix in prefixes:
        prefix = prefix.lower()
        if prefix and not prefix.isdigit() and lowered.startswith(prefix):
            phone = canonical_phone(candidate[len(prefix):])
            if phone:
                return NormalizedIdentifier(kind=IdentifierKind.PREFIXED_PHONE, raw=token, phone=phone)

    phone = canonical_phone(candidate)
    if phone:
        return NormalizedIdentifier(kind=IdentifierKind.PHONE_DIGITS, raw=token, phone=phone)

    return NormalizedIdentifier(kind=IdentifierKind.UNRECOGNIZED, raw=token)


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Mask a phone for logs, keeping the last 4 digits."""
    if not phone:
        return phone
    return f"***{phone[-4:]}"


def extract_phone(value: Optional[str]) -> Optional[str]:
    """Canonical phone from a stored value that may contain formatting."""
    if not value:
        return None
    return canonical_phone(re.sub(r"\D", "", value))
