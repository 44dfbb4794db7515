# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Check-in service: the operations request handlers call.

Each public method is one transaction. The user row is locked before any
guard field is read, the trusted contact row (if needed) after it. Mail and
audit events are sent once the transaction has committed.
"""
import logging
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from . import lifecycle, recovery, trusted_contacts
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .database import SessionLocal
from .lifecycle import TransitionResult
from .models import TrustedContact, User
from .services import AuditSink, Mailer, MailKind, SideEffects, build_audit_sink, build_mailer
from .tokens import TokenPurpose, TokenVault, clear_user_slot, digest_token

logger = logging.getLogger(__name__)


class CheckinService:
    def __init__(self, session_factory: sessionmaker, mailer: Mailer, audit: AuditSink,
                 clock: Clock | None = None, settings: Settings | None = None):
        self.session_factory = session_factory
        self.mailer = mailer
        self.audit = audit
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    @contextmanager
    def _unit_of_work(self):
        effects = SideEffects(self.mailer, self.audit)
        with self.session_factory() as session, session.begin():
            yield session, effects
        effects.flush()

    @staticmethod
    def _lock_user(session, user_id: int) -> User | None:
        return session.get(User, user_id, with_for_update=True)

    def _apply(self, user_id: int, transition, action: str, **kwargs) -> TransitionResult:
        with self._unit_of_work() as (session, effects):
            user = self._lock_user(session, user_id)
            if user is None:
                return TransitionResult.not_found()
            result = transition(user, self.clock.now(), **kwargs)
            if result.applied:
                effects.log(action, user.id, actor_type="user", metadata={"state": user.state.value})
        return result

    # ==========================================
    # ACCOUNT
    # ==========================================

    def create_user(self, email: str, checkin_interval_hours: int | None = None,
                    checkin_attempts: int | None = None,
                    checkin_attempt_interval_hours: int | None = None) -> tuple[int, str]:
        """Create a user with the first check-in scheduled.

        Returns the new id and the recovery code, which is only shown once.
        Raises ValueError for invalid email or out-of-range settings.
        """
        with self._unit_of_work() as (session, effects):
            user = User(
                email=email,
                checkin_interval_hours=checkin_interval_hours,
                checkin_attempts=checkin_attempts,
                checkin_attempt_interval_hours=checkin_attempt_interval_hours,
            )
            lifecycle.schedule_first_checkin(user, self.clock.now())
            code = recovery.generate(user)
            session.add(user)
            session.flush()
            user_id = user.id
        logger.info("Created user %s", user_id)
        return user_id, code

    # ==========================================
    # CHECK-INS
    # ==========================================

    def confirm_checkin(self, user_id: int) -> TransitionResult:
        return self._apply(
            user_id, lifecycle.confirm_checkin, "checkin_confirmed",
            allow_after_delivery=self.settings.allow_checkin_after_delivery,
        )

    def pause(self, user_id: int) -> TransitionResult:
        return self._apply(user_id, lifecycle.pause, "checkin_paused")

    def unpause(self, user_id: int) -> TransitionResult:
        return self._apply(user_id, lifecycle.unpause, "checkin_resumed")

    def resume_for_new_message(self, user_id: int) -> TransitionResult:
        return self._apply(user_id, lifecycle.resume_checkins_for_messages, "checkin_resumed_for_messages")

    def issue_checkin_token(self, user_id: int) -> str | None:
        with self._unit_of_work() as (session, _):
            user = self._lock_user(session, user_id)
            if user is None:
                return None
            issued = TokenVault(session, self.clock).issue(TokenPurpose.CHECKIN, user)
        return issued.raw

    def verify_checkin_token(self, raw_token: str | None) -> int | None:
        """Consume a check-in token. Works once."""
        with self._unit_of_work() as (session, effects):
            user = TokenVault(session, self.clock).verify(TokenPurpose.CHECKIN, raw_token)
            if user is None:
                effects.log("checkin_token_invalid", actor_type="user")
                return None
            clear_user_slot(user)
            user_id = user.id
        return user_id

    def confirm_checkin_token(self, raw_token: str | None) -> TransitionResult:
        """Check-in link handler: verify, consume and confirm in one go."""
        with self._unit_of_work() as (session, effects):
            user = TokenVault(session, self.clock).verify(TokenPurpose.CHECKIN, raw_token)
            if user is None:
                effects.log("checkin_token_invalid", actor_type="user")
                return TransitionResult.not_found("invalid or expired token")
            result = lifecycle.confirm_checkin(
                user, self.clock.now(), allow_after_delivery=self.settings.allow_checkin_after_delivery
            )
            clear_user_slot(user)
            if result.applied:
                effects.log("checkin_confirmed", user.id, metadata={"via": "token"})
        return result

    def panic_revoke(self, raw_token: str | None) -> TransitionResult:
        """Cooldown warning link: stop delivery and restart the cycle."""
        with self._unit_of_work() as (session, effects):
            user = TokenVault(session, self.clock).verify(TokenPurpose.PANIC, raw_token)
            if user is None:
                effects.log("checkin_token_invalid", actor_type="user", metadata={"purpose": "panic"})
                return TransitionResult.not_found("invalid or expired token")
            previous_state = user.state
            result = lifecycle.panic_revoke(
                user, self.clock.now(), allow_after_delivery=self.settings.allow_checkin_after_delivery
            )
            clear_user_slot(user)
            if result.applied:
                effects.log("panic_revoke_used", user.id, metadata={"from": previous_state.value})
        return result

    # ==========================================
    # RECOVERY CODES
    # ==========================================

    def verify_and_use_recovery_code(self, email: str, code: str) -> str | None:
        """Emergency stop via recovery code. Returns the replacement code.

        Unknown email and wrong code look the same to the caller.
        """
        email = (email or "").strip().lower()
        with self._unit_of_work() as (session, effects):
            user = (
                session.query(User)
                .filter(User.email == email)
                .with_for_update()
                .one_or_none()
            )
            outcome = recovery.use(user, code, self.clock.now())
            if outcome is None:
                return None
            new_code, result = outcome
            if result.applied:
                effects.log("emergency_stop", user.id, metadata={"via": "recovery_code"})
                effects.mail(MailKind.EMERGENCY_STOP_NOTICE, user.email, {})
            effects.log("recovery_code_rotated", user.id)
        return new_code

    def mark_recovery_code_viewed(self, user_id: int) -> bool:
        with self._unit_of_work() as (session, effects):
            user = self._lock_user(session, user_id)
            if user is None:
                return False
            marked = recovery.mark_viewed(user, self.clock.now())
            if marked:
                effects.log("recovery_code_viewed", user.id)
        return marked

    # ==========================================
    # TRUSTED CONTACT
    # ==========================================

    def confirm_trusted_contact(self, raw_token: str | None) -> int | None:
        """Contact says the user is safe: pause delivery. Returns the contact id."""
        if not raw_token:
            return None
        with self._unit_of_work() as (session, effects):
            # Find the owner without locking so the user row is locked first
            user_id = (
                session.query(TrustedContact.user_id)
                .filter(TrustedContact.token_digest == digest_token(raw_token))
                .scalar()
            )
            user = self._lock_user(session, user_id) if user_id is not None else None
            contact = TokenVault(session, self.clock).verify(TokenPurpose.TRUSTED_CONTACT, raw_token)
            if user is None or contact is None:
                effects.log("trusted_contact_token_invalid", actor_type="trusted_contact")
                return None

            paused_until = trusted_contacts.confirm(contact, self.clock.now())
            effects.log("trusted_contact_confirmed", user.id, actor_type="trusted_contact", metadata={
                "trusted_contact_id": contact.id,
                "paused_until": paused_until,
            })
            effects.mail(MailKind.TRUSTED_CONTACT_CONFIRMATION_NOTICE, user.email, {
                "trusted_contact_email": contact.email,
                "paused_until": paused_until.isoformat(),
            })
            effects.log("trusted_contact_confirmation_notice_sent", user.id, metadata={
                "trusted_contact_id": contact.id,
            })
            contact_id = contact.id
        logger.info("Trusted contact %s paused delivery for user %s", contact_id, user_id)
        return contact_id

    # ==========================================
    # MAGIC LINKS
    # ==========================================

    def request_magic_link(self, email: str) -> str | None:
        """Email a sign-in link. Unknown addresses get nothing, silently."""
        email = (email or "").strip().lower()
        with self._unit_of_work() as (session, effects):
            user = session.query(User).filter(User.email == email).one_or_none()
            if user is None:
                return None
            issued = TokenVault(session, self.clock).issue(TokenPurpose.MAGIC_LINK, user)
            effects.mail(MailKind.MAGIC_LINK, user.email, {
                "login_url": self.settings.url_for(f"/auth/verify/{issued.raw}"),
                "expires_in_minutes": int(
                    (issued.expires_at - self.clock.now()) / timedelta(minutes=1)
                ),
            })
            effects.log("login_requested", user.id)
            effects.log("magic_link_sent", user.id)
        return issued.raw

    def verify_magic_link(self, raw_token: str | None) -> int | None:
        with self._unit_of_work() as (session, effects):
            user = TokenVault(session, self.clock).verify(TokenPurpose.MAGIC_LINK, raw_token)
            if user is None:
                return None
            effects.log("login_success", user.id)
            user_id = user.id
        return user_id


def build_checkin_service(settings: Settings | None = None, session_factory: sessionmaker | None = None,
                          clock: Clock | None = None) -> CheckinService:
    settings = settings or get_settings()
    return CheckinService(
        session_factory or SessionLocal,
        mailer=build_mailer(settings),
        audit=build_audit_sink(settings),
        clock=clock,
        settings=settings,
    )
