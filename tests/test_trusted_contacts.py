# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
from datetime import timedelta

import pytest
from conftest import T0, FrozenClock

from lastsignal import trusted_contacts
from lastsignal.models import TrustedContact, User, UserState
from lastsignal.tokens import TokenVault


def escalating_user(state=UserState.COOLDOWN, cooldown_at=T0):
    user = User(email="owner@example.com", state=state, checkin_attempts_sent=3)
    user.cooldown_warning_sent_at = cooldown_at if state == UserState.COOLDOWN else None
    contact = TrustedContact(email=" Friend@Example.com", user=user)
    return user, contact


@pytest.fixture
def vault():
    return TokenVault(None, FrozenClock())


def test_pause_active_is_strictly_in_the_future():
    _, contact = escalating_user()
    assert not trusted_contacts.pause_active(contact, T0)
    assert not trusted_contacts.pause_active(None, T0)

    contact.paused_until = T0 + timedelta(seconds=1)
    assert trusted_contacts.pause_active(contact, T0)
    assert not trusted_contacts.pause_active(contact, T0 + timedelta(seconds=1))


def test_delivery_blocked_follows_the_contact_pause():
    user, contact = escalating_user()
    assert not trusted_contacts.delivery_blocked(user, T0)
    contact.paused_until = T0 + timedelta(hours=1)
    assert trusted_contacts.delivery_blocked(user, T0)


@pytest.mark.parametrize("state", [UserState.ACTIVE, UserState.PAUSED, UserState.DELIVERED])
def test_no_ping_outside_escalation(state):
    user, contact = escalating_user(state=state)
    assert not trusted_contacts.ping_due(contact, user, T0)


def test_never_pinged_contact_is_due_in_grace_and_cooldown():
    for state in (UserState.GRACE, UserState.COOLDOWN):
        user, contact = escalating_user(state=state)
        assert trusted_contacts.ping_reason(contact, user, T0) == trusted_contacts.NEVER_PINGED


def test_new_escalation_cycle_makes_ping_due_again():
    user, contact = escalating_user(cooldown_at=T0)
    contact.last_pinged_at = T0 - timedelta(days=10)
    assert trusted_contacts.ping_reason(contact, user, T0) == trusted_contacts.NEW_ESCALATION

    contact.last_pinged_at = T0
    assert not trusted_contacts.ping_due(contact, user, T0)


def test_elapsed_pause_makes_ping_due():
    user, contact = escalating_user(cooldown_at=T0 - timedelta(days=3))
    contact.last_pinged_at = T0 - timedelta(days=2)
    contact.paused_until = T0 + timedelta(days=1)
    assert not trusted_contacts.ping_due(contact, user, T0)

    after = T0 + timedelta(days=1)
    assert trusted_contacts.ping_reason(contact, user, after) == trusted_contacts.PAUSE_ELAPSED


def test_ping_stamps_and_issues_token(vault):
    user, contact = escalating_user(state=UserState.GRACE)
    result = trusted_contacts.ping(contact, user, T0, vault)
    assert result.raw_token
    assert result.reason == trusted_contacts.NEVER_PINGED
    assert not result.restarted_delivery_timer
    assert contact.last_pinged_at == T0
    assert contact.token_digest is not None
    assert contact.token_expires_at == vault.clock.now() + timedelta(hours=72)
    assert not trusted_contacts.ping_due(contact, user, T0)


def test_re_ping_after_elapsed_pause_restarts_delivery_timer(vault):
    user, contact = escalating_user(cooldown_at=T0 - timedelta(days=3))
    contact.last_pinged_at = T0 - timedelta(days=2)
    contact.paused_until = T0

    result = trusted_contacts.ping(contact, user, T0, vault)
    assert result.reason == trusted_contacts.PAUSE_ELAPSED
    assert result.restarted_delivery_timer
    assert user.cooldown_warning_sent_at == T0


def test_lapsed_pause_restarts_timer_even_for_a_new_escalation(vault):
    # Pinged and confirmed in grace, cooldown stamped while the pause held
    user, contact = escalating_user(cooldown_at=T0 - timedelta(hours=100))
    contact.last_pinged_at = T0 - timedelta(hours=150)
    contact.paused_until = T0 - timedelta(minutes=1)
    assert trusted_contacts.ping_reason(contact, user, T0) == trusted_contacts.NEW_ESCALATION

    result = trusted_contacts.ping(contact, user, T0, vault)
    assert result.restarted_delivery_timer
    assert user.cooldown_warning_sent_at == T0


def test_new_escalation_without_a_pause_keeps_the_timer(vault):
    user, contact = escalating_user(cooldown_at=T0 - timedelta(hours=1))
    contact.last_pinged_at = T0 - timedelta(days=10)

    result = trusted_contacts.ping(contact, user, T0, vault)
    assert not result.restarted_delivery_timer
    assert user.cooldown_warning_sent_at == T0 - timedelta(hours=1)


def test_ping_token_expiry_uses_the_pass_timestamp(vault):
    user, contact = escalating_user(state=UserState.GRACE)
    later = T0 + timedelta(hours=5)
    trusted_contacts.ping(contact, user, later, vault)
    assert contact.token_expires_at == later + timedelta(hours=72)


def test_confirm_pauses_for_effective_duration():
    _, contact = escalating_user()
    contact.token_digest = "d" * 64
    contact.token_expires_at = T0 + timedelta(hours=1)

    paused_until = trusted_contacts.confirm(contact, T0)
    assert paused_until == T0 + timedelta(hours=168)
    assert contact.paused_until == paused_until
    assert contact.last_confirmed_at == T0
    assert contact.token_digest is None
    assert contact.token_expires_at is None

    contact.pause_duration_hours = 48
    assert trusted_contacts.confirm(contact, T0) == T0 + timedelta(hours=48)


def test_contact_email_normalised_and_pause_bounds_validated():
    _, contact = escalating_user()
    assert contact.email == "friend@example.com"
    with pytest.raises(ValueError):
        contact.pause_duration_hours = 12
    with pytest.raises(ValueError):
        contact.pause_duration_hours = 2161
