# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
User lifecycle state machine.

    active -> grace -> cooldown -> delivered
    paused  <- any non-delivered state, back to active on unpause

Every transition takes a row the caller has already locked and an explicit
`now`. A failed precondition is a no-op that returns a `guard_failed`
result, never an exception: the scheduler relies on that to re-evaluate
users whose state moved between query time and lock time.
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import User, UserState
from .services import MailKind
from .tokens import TokenPurpose, TokenVault, clear_user_slot


class TransitionStatus(str, enum.Enum):
    APPLIED = "applied"
    GUARD_FAILED = "guard_failed"
    NOT_FOUND = "not_found"


@dataclass
class TransitionResult:
    status: TransitionStatus
    state: UserState | None = None
    reason: str | None = None
    # Filled by send_attempt only
    attempt_number: int | None = None
    mail_kind: MailKind | None = None
    raw_token: str | None = None
    entered_cooldown: bool = False

    @property
    def applied(self) -> bool:
        return self.status == TransitionStatus.APPLIED

    @classmethod
    def not_found(cls, reason: str = "user not found") -> "TransitionResult":
        return cls(TransitionStatus.NOT_FOUND, reason=reason)


def _applied(user: User, **extra) -> TransitionResult:
    return TransitionResult(TransitionStatus.APPLIED, state=user.state, **extra)


def _guard_failed(user: User, reason: str) -> TransitionResult:
    return TransitionResult(TransitionStatus.GUARD_FAILED, state=user.state, reason=reason)


def attempt_kind(attempt_number: int, total_attempts: int) -> MailKind:
    # The last attempt wins over the first, so a single-attempt user still
    # reaches cooldown.
    if attempt_number >= total_attempts:
        return MailKind.COOLDOWN_WARNING
    if attempt_number == 1:
        return MailKind.REMINDER
    return MailKind.GRACE_WARNING


ATTEMPT_STATES = {
    MailKind.REMINDER: UserState.ACTIVE,
    MailKind.GRACE_WARNING: UserState.GRACE,
    MailKind.COOLDOWN_WARNING: UserState.COOLDOWN,
}


def schedule_first_checkin(user: User, now: datetime) -> TransitionResult:
    user.state = UserState.ACTIVE
    user.checkin_attempts_sent = 0
    user.next_checkin_at = now + timedelta(hours=user.effective_checkin_interval_hours)
    return _applied(user)


def confirm_checkin(user: User, now: datetime, allow_after_delivery: bool = True) -> TransitionResult:
    """Reset the cycle. Relative to `now`, so repeating it is not additive."""
    if user.state == UserState.DELIVERED and not allow_after_delivery:
        return _guard_failed(user, "already delivered")

    user.state = UserState.ACTIVE
    user.last_checkin_confirmed_at = now
    user.next_checkin_at = now + timedelta(hours=user.effective_checkin_interval_hours)
    user.checkin_attempts_sent = 0
    user.last_checkin_attempt_at = None
    user.cooldown_warning_sent_at = None
    user.delivery_notice_sent_at = None
    user.delivered_at = None
    clear_user_slot(user)
    return _applied(user)


def send_attempt(user: User, now: datetime, vault: TokenVault) -> TransitionResult:
    """Send the next reminder/escalation attempt of the current cycle."""
    if user.state in (UserState.PAUSED, UserState.DELIVERED):
        return _guard_failed(user, f"user is {user.state.value}")

    total = user.effective_checkin_attempts
    sent = user.checkin_attempts_sent or 0
    if sent >= total:
        return _guard_failed(user, "all attempts sent")

    attempt_number = sent + 1
    kind = attempt_kind(attempt_number, total)
    new_state = ATTEMPT_STATES[kind]

    user.state = new_state
    user.last_checkin_attempt_at = now
    user.checkin_attempts_sent = attempt_number
    if new_state != UserState.ACTIVE:
        user.next_checkin_at = None

    entered_cooldown = False
    if new_state == UserState.COOLDOWN and user.cooldown_warning_sent_at is None:
        user.cooldown_warning_sent_at = now
        entered_cooldown = True

    # Valid until roughly the time delivery would happen
    remaining = total - attempt_number + 1
    ttl = timedelta(hours=user.effective_checkin_attempt_interval_hours * remaining)
    purpose = TokenPurpose.PANIC if kind == MailKind.COOLDOWN_WARNING else TokenPurpose.CHECKIN
    issued = vault.issue(purpose, user, ttl=ttl, now=now)

    return _applied(
        user,
        attempt_number=attempt_number,
        mail_kind=kind,
        raw_token=issued.raw,
        entered_cooldown=entered_cooldown,
    )


def mark_delivered(user: User, now: datetime) -> TransitionResult:
    if user.state != UserState.COOLDOWN:
        return _guard_failed(user, "not in cooldown")
    user.state = UserState.DELIVERED
    user.delivered_at = now
    clear_user_slot(user)
    return _applied(user)


def _enter_paused(user: User) -> None:
    user.state = UserState.PAUSED
    user.next_checkin_at = None
    user.checkin_attempts_sent = 0
    user.last_checkin_attempt_at = None
    user.cooldown_warning_sent_at = None
    clear_user_slot(user)


def pause(user: User, now: datetime) -> TransitionResult:
    if user.state == UserState.PAUSED:
        return _guard_failed(user, "already paused")
    if user.state == UserState.DELIVERED:
        return _guard_failed(user, "already delivered")
    _enter_paused(user)
    return _applied(user)


def unpause(user: User, now: datetime) -> TransitionResult:
    if user.state != UserState.PAUSED:
        return _guard_failed(user, "not paused")
    return confirm_checkin(user, now)


def emergency_stop(user: User, now: datetime) -> TransitionResult:
    """Pause reached through a recovery code, so no session is involved."""
    if user.state == UserState.PAUSED:
        return _guard_failed(user, "already paused")
    _enter_paused(user)
    return _applied(user)


def panic_revoke(user: User, now: datetime, allow_after_delivery: bool = True) -> TransitionResult:
    if user.state in (UserState.ACTIVE, UserState.PAUSED):
        return _guard_failed(user, f"user is {user.state.value}")
    return confirm_checkin(user, now, allow_after_delivery=allow_after_delivery)


def resume_checkins_for_messages(user: User, now: datetime) -> TransitionResult:
    if user.state in (UserState.PAUSED, UserState.DELIVERED):
        return _guard_failed(user, f"user is {user.state.value}")
    return confirm_checkin(user, now)
