"""
Identity Engine - Database Models

SQLAlchemy models for canonical customer identities, the legacy
customer collection they are bridged from, the phone claims that keep
creation race-safe, and the audit trail.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import Column, String, Boolean, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB

from database.connection import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class IdentityDB(Base):
    """
    Customer Identity - Canonical Customer Table

    One row per customer, keyed by a 10 digit phone. Bookings and
    addresses reference ``id``; duplicates for the same phone can exist
    until the consolidation job merges them.
    """
    __tablename__ = "customer_identity"

    id = Column(String(36), primary_key=True, default=_new_id)
    phone = Column(String(10), nullable=False, index=True)
    customer_code = Column(String(40), unique=True, nullable=False)
    display_name = Column(String(100))
    email = Column(String(255))
    verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_login_at = Column(DateTime(timezone=True))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "phone": self.phone,
            "customer_code": self.customer_code,
            "display_name": self.display_name,
            "email": self.email,
            "verified": bool(self.verified),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_login_at": _iso(self.last_login_at),
        }


class PhoneClaimDB(Base):
    """
    Phone Claim - Uniqueness Anchor

    The primary key on ``phone`` is the store constraint that makes two
    concurrent creations for the same phone conflict. Written together
    with the identity row it points at.
    """
    __tablename__ = "identity_phone_claim"

    phone = Column(String(10), primary_key=True)
    identity_id = Column(String(36), nullable=False, index=True)
    claimed_at = Column(DateTime(timezone=True), default=_utcnow)


class LegacyIdentityDB(Base):
    """
    Legacy Customer - Pre-existing Identity Collection

    Owned by the older OTP login flow. The engine only reads from it.
    """
    __tablename__ = "legacy_customer"

    id = Column(String(36), primary_key=True)
    phone = Column(String(15), nullable=False, unique=True)
    name = Column(String(100))
    email = Column(String(255))
    is_verified = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_login = Column(DateTime(timezone=True))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "name": self.name,
            "email": self.email,
            "is_verified": bool(self.is_verified),
            "created_at": _iso(self.created_at),
            "last_login": _iso(self.last_login),
        }


class IdentityLinkLogDB(Base):
    """
    Identity Link Log - Audit trail for identity operations

    Records creation, legacy bridging, registration and merges. Not a
    foreign key to the identity table: merged identities are deleted but
    their history stays.
    """
    __tablename__ = "identity_link_log"

    id = Column(String(36), primary_key=True, default=_new_id)
    identity_id = Column(String(36), nullable=False)
    action = Column(String(50), nullable=False)  # create, legacy_bridge, register, merge
    source_type = Column(String(50))  # booking, registration, legacy, consolidation
    source_id = Column(String(100))
    performed_by = Column(String(100))
    details = Column(JSON().with_variant(JSONB, "postgresql"), default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_identity_link_log_identity_id", "identity_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "action": self.action,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "performed_by": self.performed_by,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }
