"""
Identity Engine - Audit Events

Application-log side of the identity audit trail. Persistent rows are
written by the store (``identity_link_log``); this module only emits
structured log records.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .normalizer import mask_phone

logger = logging.getLogger("identity.audit")


class IdentityAuditEvent:
    """Audit event types for identity operations."""
    IDENTITY_RESOLVED = "identity.resolved"
    IDENTITY_CREATED = "identity.created"
    LEGACY_BRIDGED = "identity.legacy_bridged"
    IDENTITY_REGISTERED = "identity.registered"
    RACE_RETRIED = "identity.race_retried"
    AUTHORIZATION_DECIDED = "identity.authorization"
    MERGE_PERFORMED = "merge.performed"
    MERGE_SKIPPED = "merge.skipped"


def log_identity_event(
    event_type: str,
    identity_id: Optional[str],
    details: Dict[str, Any],
    success: bool = True
):
    """
    Log an identity operation for the audit trail.

    Phones are masked to their last 4 digits; names and emails are
    dropped entirely.
    """
    pii_fields = ('email', 'name', 'display_name', 'token')
    safe_details = {k: v for k, v in details.items() if k not in pii_fields}
    if safe_details.get('phone'):
        safe_details['phone'] = mask_phone(safe_details['phone'])

    log_entry = {
        "event": event_type,
        "identity_id": identity_id,
        "details": safe_details,
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

    if success:
        logger.info(f"Identity event: {event_type} for {identity_id}", extra=log_entry)
    else:
        logger.warning(f"Identity event FAILED: {event_type} for {identity_id}", extra=log_entry)
