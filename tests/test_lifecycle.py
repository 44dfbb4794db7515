# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
from datetime import timedelta

import pytest
from conftest import T0, FrozenClock

from lastsignal import lifecycle
from lastsignal.lifecycle import TransitionStatus, attempt_kind
from lastsignal.models import User, UserState
from lastsignal.services import MailKind
from lastsignal.tokens import TokenVault


def new_user(**fields):
    user = User(email="Someone@Example.com ", **fields)
    lifecycle.schedule_first_checkin(user, T0)
    return user


@pytest.fixture
def vault():
    # Slot tokens live on the user row, no session needed
    return TokenVault(None, FrozenClock())


def test_schedule_first_checkin_uses_effective_interval():
    user = new_user(checkin_interval_hours=24)
    assert user.email == "someone@example.com"
    assert user.state == UserState.ACTIVE
    assert user.next_checkin_at == T0 + timedelta(hours=24)

    default = new_user()
    assert default.next_checkin_at == T0 + timedelta(hours=168)


@pytest.mark.parametrize(
    "field,value",
    [
        ("checkin_interval_hours", 23),
        ("checkin_interval_hours", 8761),
        ("checkin_attempts", 0),
        ("checkin_attempts", 11),
        ("checkin_attempt_interval_hours", 721),
    ],
)
def test_out_of_range_configuration_is_rejected(field, value):
    with pytest.raises(ValueError):
        User(email="a@example.com", **{field: value})


@pytest.mark.parametrize(
    "attempt,total,kind",
    [
        (1, 3, MailKind.REMINDER),
        (2, 3, MailKind.GRACE_WARNING),
        (3, 3, MailKind.COOLDOWN_WARNING),
        (1, 1, MailKind.COOLDOWN_WARNING),
        (2, 2, MailKind.COOLDOWN_WARNING),
        (4, 5, MailKind.GRACE_WARNING),
    ],
)
def test_attempt_kind_by_position(attempt, total, kind):
    assert attempt_kind(attempt, total) == kind


def test_send_attempt_walks_the_escalation_ladder(vault):
    user = new_user(checkin_attempts=3, checkin_attempt_interval_hours=24)

    first = lifecycle.send_attempt(user, T0, vault)
    assert first.applied
    assert first.mail_kind == MailKind.REMINDER
    assert user.state == UserState.ACTIVE
    assert user.checkin_attempts_sent == 1
    assert user.checkin_token_purpose == "checkin"
    assert first.raw_token

    second = lifecycle.send_attempt(user, T0 + timedelta(hours=24), vault)
    assert second.mail_kind == MailKind.GRACE_WARNING
    assert user.state == UserState.GRACE
    assert user.next_checkin_at is None
    assert user.cooldown_warning_sent_at is None

    third_at = T0 + timedelta(hours=48)
    third = lifecycle.send_attempt(user, third_at, vault)
    assert third.mail_kind == MailKind.COOLDOWN_WARNING
    assert third.entered_cooldown
    assert user.state == UserState.COOLDOWN
    assert user.cooldown_warning_sent_at == third_at
    assert user.checkin_token_purpose == "panic"
    assert user.last_checkin_attempt_at == third_at


def test_send_attempt_token_expiry_matches_the_attempt_stamp(vault):
    user = new_user(checkin_attempts=3, checkin_attempt_interval_hours=24)
    # The vault clock still reads T0; the pass timestamp wins
    attempt_at = T0 + timedelta(hours=5)
    lifecycle.send_attempt(user, attempt_at, vault)
    assert user.last_checkin_attempt_at == attempt_at
    assert user.checkin_token_expires_at == attempt_at + timedelta(hours=72)


def test_send_attempt_never_exceeds_configured_attempts(vault):
    user = new_user(checkin_attempts=2)
    lifecycle.send_attempt(user, T0, vault)
    lifecycle.send_attempt(user, T0, vault)
    assert user.checkin_attempts_sent == 2

    result = lifecycle.send_attempt(user, T0, vault)
    assert result.status == TransitionStatus.GUARD_FAILED
    assert user.checkin_attempts_sent == 2


def test_cooldown_stamp_is_only_set_once_per_cycle(vault):
    user = new_user(checkin_attempts=1)
    user.cooldown_warning_sent_at = T0 - timedelta(hours=1)
    result = lifecycle.send_attempt(user, T0, vault)
    assert user.state == UserState.COOLDOWN
    assert not result.entered_cooldown
    assert user.cooldown_warning_sent_at == T0 - timedelta(hours=1)


@pytest.mark.parametrize("state", [UserState.PAUSED, UserState.DELIVERED])
def test_send_attempt_is_a_noop_when_not_escalating(state, vault):
    user = new_user()
    user.state = state
    result = lifecycle.send_attempt(user, T0, vault)
    assert result.status == TransitionStatus.GUARD_FAILED
    assert user.checkin_attempts_sent == 0


def test_confirm_checkin_resets_everything(vault):
    user = new_user(checkin_attempts=1)
    lifecycle.send_attempt(user, T0, vault)
    lifecycle.mark_delivered(user, T0)
    user.delivery_notice_sent_at = T0

    later = T0 + timedelta(hours=5)
    result = lifecycle.confirm_checkin(user, later)
    assert result.applied
    assert user.state == UserState.ACTIVE
    assert user.last_checkin_confirmed_at == later
    assert user.next_checkin_at == later + timedelta(hours=168)
    assert user.checkin_attempts_sent == 0
    assert user.last_checkin_attempt_at is None
    assert user.cooldown_warning_sent_at is None
    assert user.delivery_notice_sent_at is None
    assert user.delivered_at is None
    assert user.checkin_token_digest is None


def test_confirm_checkin_is_a_reset_not_additive():
    user = new_user(checkin_interval_hours=48)
    lifecycle.confirm_checkin(user, T0)
    lifecycle.confirm_checkin(user, T0 + timedelta(hours=1))
    assert user.next_checkin_at == T0 + timedelta(hours=49)


def test_confirm_after_delivery_can_be_disabled(vault):
    user = new_user(checkin_attempts=1)
    lifecycle.send_attempt(user, T0, vault)
    lifecycle.mark_delivered(user, T0)

    result = lifecycle.confirm_checkin(user, T0, allow_after_delivery=False)
    assert result.status == TransitionStatus.GUARD_FAILED
    assert user.state == UserState.DELIVERED


def test_mark_delivered_only_from_cooldown(vault):
    user = new_user()
    assert lifecycle.mark_delivered(user, T0).status == TransitionStatus.GUARD_FAILED
    assert user.delivered_at is None

    user.checkin_attempts = 1
    lifecycle.send_attempt(user, T0, vault)
    assert lifecycle.mark_delivered(user, T0).applied
    assert user.state == UserState.DELIVERED
    assert user.delivered_at == T0
    assert user.checkin_token_digest is None
    # Idempotent
    assert not lifecycle.mark_delivered(user, T0 + timedelta(hours=1)).applied
    assert user.delivered_at == T0


def test_pause_clears_the_cycle(vault):
    user = new_user()
    lifecycle.send_attempt(user, T0, vault)
    result = lifecycle.pause(user, T0)
    assert result.applied
    assert user.state == UserState.PAUSED
    assert user.next_checkin_at is None
    assert user.checkin_attempts_sent == 0
    assert user.last_checkin_attempt_at is None
    assert user.checkin_token_digest is None

    assert lifecycle.pause(user, T0).status == TransitionStatus.GUARD_FAILED


def test_pause_not_allowed_after_delivery():
    user = new_user()
    user.state = UserState.DELIVERED
    assert not lifecycle.pause(user, T0).applied
    assert user.state == UserState.DELIVERED


def test_unpause_only_from_paused():
    user = new_user()
    assert not lifecycle.unpause(user, T0).applied

    lifecycle.pause(user, T0)
    later = T0 + timedelta(days=2)
    assert lifecycle.unpause(user, later).applied
    assert user.state == UserState.ACTIVE
    assert user.next_checkin_at == later + timedelta(hours=168)


def test_emergency_stop_from_delivered_but_not_twice():
    user = new_user()
    user.state = UserState.DELIVERED
    assert lifecycle.emergency_stop(user, T0).applied
    assert user.state == UserState.PAUSED
    assert not lifecycle.emergency_stop(user, T0).applied


@pytest.mark.parametrize(
    "state,applied",
    [
        (UserState.ACTIVE, False),
        (UserState.PAUSED, False),
        (UserState.GRACE, True),
        (UserState.COOLDOWN, True),
        (UserState.DELIVERED, True),
    ],
)
def test_panic_revoke(state, applied):
    user = new_user()
    user.state = state
    assert lifecycle.panic_revoke(user, T0).applied is applied
    if applied:
        assert user.state == UserState.ACTIVE


@pytest.mark.parametrize(
    "state,applied",
    [
        (UserState.ACTIVE, True),
        (UserState.GRACE, True),
        (UserState.PAUSED, False),
        (UserState.DELIVERED, False),
    ],
)
def test_resume_checkins_for_messages(state, applied):
    user = new_user()
    user.state = state
    assert lifecycle.resume_checkins_for_messages(user, T0).applied is applied
