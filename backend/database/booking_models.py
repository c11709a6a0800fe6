"""
Booking and Address Models

The booking and address subsystems own these tables. Only the columns
the identity engine touches (the customer foreign keys) matter here;
they are a weak relation to ``customer_identity.id``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Text

from .connection import Base


class BookingDB(Base):
    """Customer booking"""
    __tablename__ = "booking"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), nullable=False, index=True)
    customer_code = Column(String(40))
    service = Column(String(100))
    service_type = Column(String(50))
    scheduled_date = Column(String(20))
    scheduled_time = Column(String(20))
    address = Column(Text)
    total_price = Column(Numeric(10, 2))
    status = Column(String(30), default="pending")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))


class AddressDB(Base):
    """Saved customer address"""
    __tablename__ = "address"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(100))
    full_address = Column(Text)
    city = Column(String(100))
    pincode = Column(String(6))
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
