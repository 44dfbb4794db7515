# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Audit event vocabulary and best-effort emission.

The sink itself lives in services.py; this module only knows the closed
set of actions, the actor types, and how to strip secrets from metadata.
"""
import logging
from datetime import date, datetime
from typing import Any, Mapping

logger = logging.getLogger(__name__)

ACTOR_TYPES = frozenset({"user", "system", "recipient", "trusted_contact"})

ACTIONS = frozenset({
    "login_requested",
    "login_success",
    "recipient_invited",
    "recipient_accepted",
    "state_to_grace",
    "state_to_cooldown",
    "state_to_delivered",
    "checkin_confirmed",
    "checkin_paused",
    "checkin_resumed",
    "checkin_reminder_sent",
    "grace_warning_sent",
    "cooldown_warning_sent",
    "delivery_notice_sent",
    "delivery_blocked_by_trusted_contact",
    "emergency_stop",
    "panic_revoke_used",
    "recovery_code_rotated",
    "recovery_code_viewed",
    "delivery_link_opened",
    "trusted_contact_ping_sent",
    "trusted_contact_ping_notice_sent",
    "trusted_contact_confirmed",
    "trusted_contact_confirmation_notice_sent",
    "trusted_contact_token_invalid",
    "magic_link_sent",
    "recipient_invite_sent",
    "recipient_delivery_sent",
    "checkin_resumed_for_messages",
    "checkin_token_invalid",
    "delivery_token_invalid",
    "invite_token_invalid",
    "scheduler_user_failed",
})

SENSITIVE_KEY_PARTS = ("password", "passphrase", "token", "secret", "key", "private")


def _plain(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return sanitize_metadata(value)
    if isinstance(value, (list, tuple, set)):
        return [_plain(v) for v in value]
    return value


def sanitize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Drop any key that looks like it could carry a secret."""
    if not metadata:
        return {}
    clean = {}
    for key, value in metadata.items():
        key = str(key)
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            continue
        clean[key] = _plain(value)
    return clean


def validate_event(action: str, actor_type: str) -> None:
    if action not in ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if actor_type not in ACTOR_TYPES:
        raise ValueError(f"Unknown actor type: {actor_type}")


def safe_log_event(sink, action: str, actor_type: str = "system",
                   user_id: int | None = None, metadata: Mapping[str, Any] | None = None) -> None:
    """Record an audit event, never raising into the caller."""
    try:
        validate_event(action, actor_type)
        sink.log_event(action, actor_type, user_id, sanitize_metadata(metadata))
    except Exception:  # noqa: BLE001
        logger.warning("Audit event %s for user %s was not recorded", action, user_id, exc_info=True)
