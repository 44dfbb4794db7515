# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Check-in scheduler.

Invoked periodically by an external timer (cron endpoint or the command
line). One pass runs four phases in order:

1. initial attempts   - first reminder once a check-in is overdue
2. followup attempts  - next escalation step once the attempt interval passed
3. trusted contact pings
4. delivery           - release once cooldown has run its course

Each candidate is locked and re-checked in its own transaction. A user gets
at most one email per pass, so a long scheduler outage advances a user by a
single escalation step per run instead of fast-forwarding them to delivery.
Mail, audit and delivery dispatch are flushed only after the commit.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy.orm import Session, sessionmaker

from . import lifecycle, queries, trusted_contacts
from .audit import safe_log_event
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .database import SessionLocal
from .delivery import SqlDeliveryDispatcher, SqlMessageDirectory
from .models import TrustedContact, User
from .services import (
    AuditSink,
    DeliveryDispatcher,
    Mailer,
    MailKind,
    SideEffects,
    build_audit_sink,
    build_mailer,
)
from .tokens import TokenVault

logger = logging.getLogger(__name__)

SENT_ACTIONS = {
    MailKind.REMINDER: "checkin_reminder_sent",
    MailKind.GRACE_WARNING: "grace_warning_sent",
    MailKind.COOLDOWN_WARNING: "cooldown_warning_sent",
}


class MessageDirectory(Protocol):
    def has_active_messages(self, session: Session, user_id: int) -> bool: ...

    def affected_recipient_emails(self, session: Session, user_id: int) -> list[str]: ...


@dataclass
class RunReport:
    started_at: datetime
    initial_attempts: int = 0
    followup_attempts: int = 0
    trusted_contact_pings: int = 0
    deliveries: int = 0
    blocked_deliveries: int = 0
    delivery_notices: int = 0
    skipped_already_emailed: int = 0
    errors: int = 0
    effect_failures: int = 0

    def as_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


# (report counters to bump, whether the user was emailed)
Outcome = tuple[tuple[str, ...], bool]
NOTHING: Outcome = ((), False)


class CheckinScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        mailer: Mailer,
        audit: AuditSink,
        dispatcher: DeliveryDispatcher | None,
        directory: MessageDirectory,
        clock: Clock | None = None,
        settings: Settings | None = None,
        page_size: int = queries.PAGE_SIZE,
    ):
        self.session_factory = session_factory
        self.mailer = mailer
        self.audit = audit
        self.dispatcher = dispatcher
        self.directory = directory
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.page_size = page_size

    def run(self) -> RunReport:
        now = self.clock.now()
        report = RunReport(started_at=now)
        emailed: set[int] = set()

        logger.info("Starting check-in processing at %s", now.isoformat())
        self._run_phase("initial_attempts", queries.initial_attempts_due, self._initial_attempt, now, emailed, report)
        self._run_phase("followup_attempts", queries.followup_attempts_due, self._followup_attempt, now, emailed, report)
        self._run_phase("trusted_contact_pings", queries.trusted_contact_pings_due, self._ping, now, emailed, report)
        self._run_phase("deliveries", queries.deliveries_due, self._deliver, now, emailed, report)
        logger.info("Completed check-in processing: %s", report.as_dict())
        return report

    # ------------------------------------------------------------------
    # Phase driver
    # ------------------------------------------------------------------

    def _run_phase(self, name: str, due_query: Callable[..., list[int]],
                   handler: Callable[[Session, User, datetime, SideEffects], Outcome],
                   now: datetime, emailed: set[int], report: RunReport) -> None:
        with self.session_factory() as session:
            user_ids = due_query(session, now, self.page_size)
        if user_ids:
            logger.info("Phase %s: %s candidate(s)", name, len(user_ids))

        for user_id in user_ids:
            if user_id in emailed:
                report.skipped_already_emailed += 1
                continue

            effects = SideEffects(self.mailer, self.audit, self.dispatcher)
            try:
                with self.session_factory() as session, session.begin():
                    user = session.get(User, user_id, with_for_update=True)
                    if user is None:
                        continue
                    counters, was_emailed = handler(session, user, now, effects)
            except Exception:  # noqa: BLE001
                effects.discard()
                report.errors += 1
                logger.exception("Phase %s failed for user %s", name, user_id)
                safe_log_event(self.audit, "scheduler_user_failed", "system", user_id, {"phase": name})
                continue

            for counter in counters:
                setattr(report, counter, getattr(report, counter) + 1)
            if was_emailed:
                emailed.add(user_id)
            report.effect_failures += effects.flush()

    def _lock_contact(self, session: Session, user: User) -> TrustedContact | None:
        # Always after the user row, never before
        return (
            session.query(TrustedContact)
            .filter(TrustedContact.user_id == user.id)
            .with_for_update()
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Phases 1 and 2: attempts
    # ------------------------------------------------------------------

    def _initial_attempt(self, session, user, now, effects) -> Outcome:
        if not queries.is_initial_attempt_due(user, now):
            return NOTHING
        if not self.directory.has_active_messages(session, user.id):
            return NOTHING
        return self._send_attempt(session, user, now, effects, "initial_attempts")

    def _followup_attempt(self, session, user, now, effects) -> Outcome:
        if not queries.is_followup_due(user, now):
            return NOTHING
        if not self.directory.has_active_messages(session, user.id):
            return NOTHING
        return self._send_attempt(session, user, now, effects, "followup_attempts")

    def _send_attempt(self, session, user, now, effects, counter) -> Outcome:
        previous_state = user.state
        vault = TokenVault(session, self.clock)
        result = lifecycle.send_attempt(user, now, vault)
        if not result.applied:
            logger.info("Attempt skipped for user %s: %s", user.id, result.reason)
            return NOTHING

        kind = result.mail_kind
        params = {
            "attempt_number": result.attempt_number,
            "total_attempts": user.effective_checkin_attempts,
        }
        if kind == MailKind.COOLDOWN_WARNING:
            params["panic_url"] = self.settings.url_for(f"/panic/{result.raw_token}")
            params["delivery_due_at"] = queries.delivery_due_at(user).isoformat()
            if result.entered_cooldown:
                contact = self._lock_contact(session, user)
                if contact is not None and not trusted_contacts.pause_active(contact, now):
                    self._queue_ping(user, contact, now, vault, effects)
                    # The user hears about the ping inside the cooldown warning
                    params["trusted_contact_email"] = contact.email
        else:
            params["checkin_url"] = self.settings.url_for(f"/checkin/{result.raw_token}")

        effects.mail(kind, user.email, params)
        effects.log(SENT_ACTIONS[kind], user.id, metadata={"attempt_number": result.attempt_number})
        if user.state != previous_state:
            effects.log(f"state_to_{user.state.value}", user.id, metadata={
                "from": previous_state.value,
                "delivery_due_at": params.get("delivery_due_at"),
            })

        logger.info(
            "User %s attempt %s/%s sent (%s), state %s",
            user.id, result.attempt_number, user.effective_checkin_attempts, kind.value, user.state.value,
        )
        return (counter,), True

    # ------------------------------------------------------------------
    # Phase 3: trusted contact pings
    # ------------------------------------------------------------------

    def _queue_ping(self, user, contact, now, vault, effects) -> trusted_contacts.PingResult:
        ping = trusted_contacts.ping(contact, user, now, vault)
        effects.mail(MailKind.TRUSTED_CONTACT_PING, contact.email, {
            "user_email": user.email,
            "contact_name": contact.name,
            "confirm_url": self.settings.url_for(f"/trusted-contact/confirm/{ping.raw_token}"),
        })
        effects.log("trusted_contact_ping_sent", user.id, metadata={
            "trusted_contact_id": contact.id,
            "reason": ping.reason,
            "pinged_at": now,
            "restarted_delivery_timer": ping.restarted_delivery_timer,
        })
        return ping

    def _ping(self, session, user, now, effects) -> Outcome:
        contact = self._lock_contact(session, user)
        if contact is None or not trusted_contacts.ping_due(contact, user, now):
            return NOTHING
        if not self.directory.has_active_messages(session, user.id):
            return NOTHING

        ping = self._queue_ping(user, contact, now, TokenVault(session, self.clock), effects)
        effects.mail(MailKind.TRUSTED_CONTACT_PING_NOTICE, user.email, {
            "trusted_contact_email": contact.email,
            "trusted_contact_name": contact.name,
        })
        effects.log("trusted_contact_ping_notice_sent", user.id, metadata={"trusted_contact_id": contact.id})

        logger.info("Trusted contact %s pinged for user %s (%s)", contact.id, user.id, ping.reason)
        return ("trusted_contact_pings",), True

    # ------------------------------------------------------------------
    # Phase 4: delivery
    # ------------------------------------------------------------------

    def _deliver(self, session, user, now, effects) -> Outcome:
        if not queries.is_delivery_due(user, now):
            return NOTHING
        if not self.directory.has_active_messages(session, user.id):
            return NOTHING

        contact = self._lock_contact(session, user)
        if trusted_contacts.pause_active(contact, now):
            logger.info("User %s delivery due but trusted contact pause is active", user.id)
            effects.log("delivery_blocked_by_trusted_contact", user.id, metadata={
                "trusted_contact_id": contact.id,
                "paused_until": contact.paused_until,
            })
            return ("blocked_deliveries",), False

        recipients = self.directory.affected_recipient_emails(session, user.id)
        result = lifecycle.mark_delivered(user, now)
        if not result.applied:
            return NOTHING

        logger.info("User %s cooldown expired, triggering delivery", user.id)
        effects.dispatch(user.id)
        effects.log("state_to_delivered", user.id, metadata={"delivered_at": now})

        if user.delivery_notice_sent_at is not None:
            return ("deliveries",), False

        user.delivery_notice_sent_at = now
        effects.mail(MailKind.DELIVERY_NOTICE, user.email, {
            "recipients": recipients,
            "delivered_at": now.isoformat(),
        })
        effects.log("delivery_notice_sent", user.id, metadata={"recipients_count": len(recipients)})
        return ("deliveries", "delivery_notices"), True


def build_scheduler(settings: Settings | None = None, session_factory: sessionmaker | None = None,
                    clock: Clock | None = None) -> CheckinScheduler:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    clock = clock or SystemClock()
    mailer = build_mailer(settings)
    audit = build_audit_sink(settings)
    dispatcher = SqlDeliveryDispatcher(session_factory, mailer, audit, settings, clock)
    return CheckinScheduler(
        session_factory,
        mailer=mailer,
        audit=audit,
        dispatcher=dispatcher,
        directory=SqlMessageDirectory(),
        clock=clock,
        settings=settings,
    )


__all__ = ["CheckinScheduler", "RunReport", "build_scheduler"]
