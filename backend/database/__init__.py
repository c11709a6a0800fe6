from .connection import (
    Base, get_engine, get_legacy_engine, get_session_factory,
    get_legacy_session_factory, build_engine, build_session_factory, init_db
)

# Import booking models to ensure they are registered with Base
from .booking_models import BookingDB, AddressDB

__all__ = [
    'Base', 'get_engine', 'get_legacy_engine', 'get_session_factory',
    'get_legacy_session_factory', 'build_engine', 'build_session_factory', 'init_db',
    # Dependent record models
    'BookingDB', 'AddressDB',
]
