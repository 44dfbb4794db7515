# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Due-set queries for the scheduler.

SQL only narrows candidates by state and presence of timestamps. The due
time itself depends on per-user intervals, so it is computed here in Python
by the `is_*_due` predicates. The scheduler calls the same predicates again
after locking each row.
"""
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session, contains_eager

from .clock import as_utc
from .models import TrustedContact, User, UserState
from .trusted_contacts import PING_STATES, ping_due

PAGE_SIZE = 200

FOLLOWUP_STATES = (UserState.ACTIVE, UserState.GRACE, UserState.COOLDOWN)


def next_attempt_due_at(user: User) -> datetime | None:
    last_attempt = as_utc(user.last_checkin_attempt_at)
    if last_attempt is None:
        return None
    return last_attempt + timedelta(hours=user.effective_checkin_attempt_interval_hours)


def delivery_due_at(user: User) -> datetime | None:
    anchor = as_utc(user.cooldown_warning_sent_at)
    if anchor is None:
        return None
    return anchor + timedelta(hours=user.effective_checkin_attempt_interval_hours)


def is_initial_attempt_due(user: User, now: datetime) -> bool:
    next_checkin_at = as_utc(user.next_checkin_at)
    return (
        user.state == UserState.ACTIVE
        and next_checkin_at is not None
        and next_checkin_at <= now
        and (user.checkin_attempts_sent or 0) == 0
    )


def is_followup_due(user: User, now: datetime) -> bool:
    sent = user.checkin_attempts_sent or 0
    due_at = next_attempt_due_at(user)
    return (
        user.state in FOLLOWUP_STATES
        and due_at is not None
        and 0 < sent < user.effective_checkin_attempts
        and now >= due_at
    )


def is_delivery_due(user: User, now: datetime) -> bool:
    due_at = delivery_due_at(user)
    return user.state == UserState.COOLDOWN and due_at is not None and now >= due_at


def is_ping_due(user: User, now: datetime) -> bool:
    contact = user.trusted_contact
    return contact is not None and ping_due(contact, user, now)


def iter_users(query: Query, page_size: int = PAGE_SIZE) -> Iterator[list[User]]:
    """Yield pages of users via keyset pagination on id.

    The scheduler mutates state while a pass runs, so offsets would skip rows
    as the filtered set shrinks. Keyset pagination stays stable.
    """
    last_seen_id = 0
    while True:
        batch = query.filter(User.id > last_seen_id).order_by(User.id).limit(page_size).all()
        if not batch:
            break
        yield batch
        last_seen_id = batch[-1].id


def _due_ids(query: Query, predicate: Callable[[User, datetime], bool], now: datetime,
             page_size: int) -> list[int]:
    return [
        user.id
        for page in iter_users(query, page_size)
        for user in page
        if predicate(user, now)
    ]


def initial_attempts_due(session: Session, now: datetime, page_size: int = PAGE_SIZE) -> list[int]:
    query = session.query(User).filter(
        User.state == UserState.ACTIVE,
        User.next_checkin_at.isnot(None),
        User.next_checkin_at <= now,
        or_(User.checkin_attempts_sent == 0, User.checkin_attempts_sent.is_(None)),
    )
    return _due_ids(query, is_initial_attempt_due, now, page_size)


def followup_attempts_due(session: Session, now: datetime, page_size: int = PAGE_SIZE) -> list[int]:
    query = session.query(User).filter(
        User.state.in_(FOLLOWUP_STATES),
        User.last_checkin_attempt_at.isnot(None),
        User.last_checkin_attempt_at <= now,
        User.checkin_attempts_sent > 0,
    )
    return _due_ids(query, is_followup_due, now, page_size)


def trusted_contact_pings_due(session: Session, now: datetime, page_size: int = PAGE_SIZE) -> list[int]:
    """User ids (not contact ids): the scheduler locks the user first."""
    query = (
        session.query(User)
        .join(User.trusted_contact)
        .options(contains_eager(User.trusted_contact))
    ).filter(
        User.state.in_(PING_STATES),
        or_(TrustedContact.paused_until.is_(None), TrustedContact.paused_until <= now),
    )
    return _due_ids(query, is_ping_due, now, page_size)


def deliveries_due(session: Session, now: datetime, page_size: int = PAGE_SIZE) -> list[int]:
    query = session.query(User).filter(
        User.state == UserState.COOLDOWN,
        User.cooldown_warning_sent_at.isnot(None),
        User.cooldown_warning_sent_at <= now,
    )
    return _due_ids(query, is_delivery_due, now, page_size)
