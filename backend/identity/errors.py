"""
Identity Engine - Error Kinds

Every failure the identity engine presents to callers is one of these
types. Raw SQLAlchemy / driver exceptions are translated at the store
boundary and never escape the resolver or the repointer uncategorized.
"""

from typing import Optional


class IdentityError(Exception):
    """Base class for identity engine errors."""

    code = "identity_error"
    retryable = False

    def __init__(self, message: str, *, token: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.token = token

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class IdentityNotResolvable(IdentityError):
    """Token could not be classified and no fallback seed data was given."""

    code = "identity_not_resolvable"


class DuplicatePhone(IdentityError):
    """A concurrent insert already claimed this phone."""

    code = "duplicate_phone"
    retryable = True

    def __init__(self, phone: str):
        super().__init__(f"Phone ***{phone[-4:]} is already claimed by another identity")
        self.phone = phone


class IdentityRaceUnresolved(IdentityError):
    """Conflict retries were exhausted without observing the winning row."""

    code = "identity_race_unresolved"
    retryable = True


class IdentityResolutionTimeout(IdentityError):
    """A store call exceeded its time bound."""

    code = "identity_resolution_timeout"
    retryable = True


class IdentityStoreUnavailable(IdentityResolutionTimeout):
    """The store failed for a reason other than a timeout (connection lost, etc.)."""

    code = "identity_store_unavailable"


class RepointPartialFailure(IdentityError):
    """Dependent records could not be moved from one identity to another."""

    code = "repoint_partial_failure"
    retryable = True

    def __init__(self, from_id: str, to_id: str, reason: str):
        super().__init__(f"Failed to repoint records from {from_id} to {to_id}: {reason}")
        self.from_id = from_id
        self.to_id = to_id
        self.reason = reason
