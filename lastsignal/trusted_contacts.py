# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Trusted contact gate.

A user may elect one trusted contact. While escalating, the contact gets a
ping; confirming it pauses delivery for the contact's pause duration.
This is the only path that holds back delivery once cooldown has begun.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from .clock import as_utc
from .models import TrustedContact, User, UserState
from .tokens import TokenPurpose, TokenVault

PING_STATES = (UserState.GRACE, UserState.COOLDOWN)

# Why a ping is due
NEVER_PINGED = "never_pinged"
NEW_ESCALATION = "new_escalation"
PAUSE_ELAPSED = "pause_elapsed"


@dataclass
class PingResult:
    raw_token: str
    reason: str | None
    restarted_delivery_timer: bool = False


def pause_active(contact: TrustedContact | None, now: datetime) -> bool:
    if contact is None:
        return False
    paused_until = as_utc(contact.paused_until)
    return paused_until is not None and paused_until > now


def delivery_blocked(user: User, now: datetime) -> bool:
    return pause_active(user.trusted_contact, now)


def ping_reason(contact: TrustedContact, user: User, now: datetime) -> str | None:
    if user.state not in PING_STATES:
        return None
    if pause_active(contact, now):
        return None

    last_pinged_at = as_utc(contact.last_pinged_at)
    if last_pinged_at is None:
        return NEVER_PINGED

    cooldown_stamp = as_utc(user.cooldown_warning_sent_at)
    if cooldown_stamp is not None and last_pinged_at < cooldown_stamp:
        return NEW_ESCALATION

    if _pause_lapsed_since_ping(contact, now):
        return PAUSE_ELAPSED

    return None


def _pause_lapsed_since_ping(contact: TrustedContact, now: datetime) -> bool:
    paused_until = as_utc(contact.paused_until)
    last_pinged_at = as_utc(contact.last_pinged_at)
    if paused_until is None or paused_until > now:
        return False
    return last_pinged_at is None or last_pinged_at < paused_until


def ping_due(contact: TrustedContact, user: User, now: datetime) -> bool:
    return ping_reason(contact, user, now) is not None


def ping(contact: TrustedContact, user: User, now: datetime, vault: TokenVault) -> PingResult:
    """Issue a fresh confirmation token and stamp the ping.

    A re-ping after an elapsed pause during cooldown restarts the delivery
    timer, giving the contact a full attempt interval to answer again.
    """
    reason = ping_reason(contact, user, now)
    pause_lapsed = _pause_lapsed_since_ping(contact, now)
    issued = vault.issue(TokenPurpose.TRUSTED_CONTACT, contact, now=now)
    contact.last_pinged_at = now

    # Whatever the reason, a confirmed pause that ran out gets a full interval
    restarted = False
    if pause_lapsed and user.state == UserState.COOLDOWN:
        user.cooldown_warning_sent_at = now
        restarted = True

    return PingResult(raw_token=issued.raw, reason=reason, restarted_delivery_timer=restarted)


def confirm(contact: TrustedContact, now: datetime) -> datetime:
    contact.last_confirmed_at = now
    contact.paused_until = now + timedelta(hours=contact.effective_pause_duration_hours)
    contact.token_digest = None
    contact.token_expires_at = None
    return contact.paused_until
