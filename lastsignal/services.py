# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Outbound collaborators: mail, audit and delivery dispatch.

The core never waits on these. Everything goes through `SideEffects`, which
buffers requests while a row lock is held and flushes them after commit.
A failure in one effect is logged and the rest still run.
"""
import enum
import logging
from dataclasses import dataclass, field
from html import escape
from typing import Any, Callable, Protocol

import resend
from posthog import Posthog

from .audit import safe_log_event
from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class MailKind(str, enum.Enum):
    REMINDER = "reminder"
    GRACE_WARNING = "grace_warning"
    COOLDOWN_WARNING = "cooldown_warning"
    DELIVERY_NOTICE = "delivery_notice"
    TRUSTED_CONTACT_PING = "trusted_contact_ping"
    TRUSTED_CONTACT_PING_NOTICE = "trusted_contact_ping_notice"
    TRUSTED_CONTACT_CONFIRMATION_NOTICE = "trusted_contact_confirmation_notice"
    MAGIC_LINK = "magic_link"
    RECIPIENT_DELIVERY = "recipient_delivery"
    EMERGENCY_STOP_NOTICE = "emergency_stop_notice"


class Mailer(Protocol):
    def send_mail(self, kind: MailKind, to: str, params: dict[str, Any]) -> None: ...


class AuditSink(Protocol):
    def log_event(self, action: str, actor_type: str, user_id: int | None,
                  metadata: dict[str, Any]) -> None: ...


class DeliveryDispatcher(Protocol):
    def dispatch_delivery(self, user_id: int) -> None: ...


# ==========================================
# MAIL
# ==========================================

SUBJECTS = {
    MailKind.REMINDER: "quick check-in from LastSignal",
    MailKind.GRACE_WARNING: "we haven't heard from you",
    MailKind.COOLDOWN_WARNING: "urgent: your messages will be delivered soon",
    MailKind.DELIVERY_NOTICE: "your messages have been delivered",
    MailKind.TRUSTED_CONTACT_PING: "can you confirm {user_email} is okay?",
    MailKind.TRUSTED_CONTACT_PING_NOTICE: "we asked your trusted contact about you",
    MailKind.TRUSTED_CONTACT_CONFIRMATION_NOTICE: "your trusted contact confirmed you are safe",
    MailKind.MAGIC_LINK: "your LastSignal sign-in link",
    MailKind.RECIPIENT_DELIVERY: "a message from {user_email}",
    MailKind.EMERGENCY_STOP_NOTICE: "emergency stop activated",
}


def _link(url: str | None, label: str) -> str:
    if not url:
        return ""
    return f'<p><a href="{escape(url)}" style="color: #000; font-weight: bold;">{escape(label)}</a></p>'


def render_email(kind: MailKind, params: dict[str, Any]) -> tuple[str, str]:
    """Subject and HTML body for a mail kind."""
    kind = MailKind(kind)
    safe = {k: escape(str(v)) for k, v in params.items() if isinstance(v, (str, int))}
    subject = SUBJECTS[kind].format_map(_Missing(safe))

    if kind == MailKind.REMINDER:
        body = "<p>hey,</p><p>it's time for your check-in. one click resets your timer.</p>"
        body += _link(params.get("checkin_url"), "i'm still here")
    elif kind == MailKind.GRACE_WARNING:
        body = (
            f"<p>we haven't heard from you. this is attempt {safe.get('attempt_number', '')} "
            f"of {safe.get('total_attempts', '')}.</p>"
        )
        body += _link(params.get("checkin_url"), "i'm here, reset the timer")
    elif kind == MailKind.COOLDOWN_WARNING:
        body = (
            "<p>this is the last warning. if you don't respond your messages will be "
            f"delivered after {safe.get('delivery_due_at', 'the cooldown period')}.</p>"
        )
        body += _link(params.get("panic_url"), "stop delivery, i'm alive")
        if params.get("trusted_contact_email"):
            body += (
                f"<p>we also asked your trusted contact ({safe['trusted_contact_email']}) "
                "to confirm you are okay.</p>"
            )
    elif kind == MailKind.DELIVERY_NOTICE:
        recipients = ", ".join(escape(r) for r in params.get("recipients", [])) or "your recipients"
        body = f"<p>your messages were delivered to: {recipients}.</p>"
    elif kind == MailKind.TRUSTED_CONTACT_PING:
        body = (
            f"<p>{safe.get('user_email', 'someone')} listed you as a trusted contact and "
            "hasn't checked in. if you know they are safe, confirm below to pause delivery.</p>"
        )
        body += _link(params.get("confirm_url"), "they are safe")
    elif kind == MailKind.TRUSTED_CONTACT_PING_NOTICE:
        body = (
            f"<p>we emailed your trusted contact ({safe.get('trusted_contact_email', '')}) "
            "to ask whether you are okay.</p>"
        )
    elif kind == MailKind.TRUSTED_CONTACT_CONFIRMATION_NOTICE:
        body = (
            f"<p>your trusted contact confirmed you are safe. delivery is paused until "
            f"{safe.get('paused_until', '')}.</p>"
        )
    elif kind == MailKind.MAGIC_LINK:
        body = "<p>click below to sign in. the link works once and expires soon.</p>"
        body += _link(params.get("login_url"), "sign in")
    elif kind == MailKind.RECIPIENT_DELIVERY:
        body = (
            f"<p>{safe.get('user_email', 'someone')} left you "
            f"{safe.get('messages_count', '')} message(s).</p>"
        )
        body += _link(params.get("delivery_url"), "open messages")
    else:
        body = "<p>an emergency stop was activated on your account. check-ins are paused.</p>"

    html = f'<div style="font-family: Georgia, serif; line-height: 1.6; color: #222;">{body}</div>'
    return subject, html


class _Missing(dict):
    def __missing__(self, key):
        return ""


def send_email(to_email: str, subject: str, html_content: str, sender: str) -> None:
    resend.Emails.send({
        "from": sender,
        "to": to_email,
        "subject": subject,
        "html": html_content,
    })


class ResendMailer:
    def __init__(self, settings: Settings):
        self.settings = settings
        resend.api_key = settings.resend_api_key

    @property
    def sender(self) -> str:
        return f"{self.settings.mail_from_name} <{self.settings.mail_from_email}>"

    def send_mail(self, kind, to, params):
        subject, html = render_email(kind, params)
        send_email(to, subject, html, self.sender)


class LoggingMailer:
    """Used when no mail provider is configured."""

    def send_mail(self, kind, to, params):
        logger.info("Mail %s to %s (not sent, no provider configured)", MailKind(kind).value, to)


# ==========================================
# AUDIT
# ==========================================

class PosthogAuditSink:
    def __init__(self, client: Posthog):
        self.client = client

    def log_event(self, action, actor_type, user_id, metadata):
        self.client.capture(
            distinct_id=f"user:{user_id}" if user_id is not None else "system",
            event=action,
            properties={"actor_type": actor_type, **metadata},
        )


class LoggingAuditSink:
    def log_event(self, action, actor_type, user_id, metadata):
        logger.info("audit action=%s actor=%s user=%s metadata=%s", action, actor_type, user_id, metadata)


def build_posthog(settings: Settings | None = None) -> Posthog | None:
    settings = settings or get_settings()
    if not settings.posthog_api_key:
        return None
    return Posthog(
        project_api_key=settings.posthog_api_key,
        host=settings.posthog_host,
        enable_exception_autocapture=True,
    )


def build_mailer(settings: Settings | None = None) -> Mailer:
    settings = settings or get_settings()
    if settings.resend_api_key:
        return ResendMailer(settings)
    return LoggingMailer()


def build_audit_sink(settings: Settings | None = None) -> AuditSink:
    client = build_posthog(settings)
    if client is None:
        return LoggingAuditSink()
    return PosthogAuditSink(client)


# ==========================================
# OUTBOX
# ==========================================

@dataclass
class SideEffects:
    """Effects requested inside a locked transaction, run after commit."""

    mailer: Mailer
    audit: AuditSink
    dispatcher: DeliveryDispatcher | None = None
    _pending: list[tuple[str, Callable[[], None]]] = field(default_factory=list)

    def mail(self, kind: MailKind, to: str, params: dict[str, Any] | None = None) -> None:
        kind = MailKind(kind)
        params = dict(params or {})
        self._pending.append((f"mail:{kind.value}", lambda: self.mailer.send_mail(kind, to, params)))

    def log(self, action: str, user_id: int | None = None, actor_type: str = "system",
            metadata: dict[str, Any] | None = None) -> None:
        self._pending.append(
            (f"audit:{action}", lambda: safe_log_event(self.audit, action, actor_type, user_id, metadata))
        )

    def dispatch(self, user_id: int) -> None:
        if self.dispatcher is None:
            logger.warning("No delivery dispatcher configured, user %s not dispatched", user_id)
            return
        self._pending.append(("dispatch", lambda: self.dispatcher.dispatch_delivery(user_id)))

    def __len__(self):
        return len(self._pending)

    def discard(self) -> None:
        self._pending.clear()

    def flush(self) -> int:
        """Run buffered effects in order. Returns how many failed."""
        pending, self._pending = self._pending, []
        failures = 0
        for name, effect in pending:
            try:
                effect()
            except Exception:  # noqa: BLE001
                failures += 1
                logger.warning("Side effect %s failed", name, exc_info=True)
        return failures
