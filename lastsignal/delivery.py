# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Message directory and delivery hand-off.

The server only stores ciphertext and per-recipient key envelopes. Delivering
means giving each eligible recipient a revocable link to fetch them.
"""
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .models import Message, MessageRecipient, Recipient, RecipientState, User, UserState
from .services import AuditSink, Mailer, MailKind, SideEffects
from .tokens import TokenPurpose, TokenVault

logger = logging.getLogger(__name__)


def _deliverable(session: Session, user_id: int):
    return (
        session.query(Recipient, func.count(func.distinct(Message.id)))
        .join(MessageRecipient, MessageRecipient.recipient_id == Recipient.id)
        .join(Message, Message.id == MessageRecipient.message_id)
        .filter(
            Message.user_id == user_id,
            Recipient.user_id == user_id,
            Recipient.state == RecipientState.ACCEPTED,
            Recipient.public_key.isnot(None),
            Recipient.public_key != "",
        )
        .group_by(Recipient.id)
        .order_by(Recipient.id)
    )


class SqlMessageDirectory:
    """Answers "does this user have anything to deliver, and to whom"."""

    def has_active_messages(self, session: Session, user_id: int) -> bool:
        return _deliverable(session, user_id).first() is not None

    def affected_recipient_emails(self, session: Session, user_id: int) -> list[str]:
        return [recipient.email for recipient, _ in _deliverable(session, user_id)]


class SqlDeliveryDispatcher:
    def __init__(self, session_factory: sessionmaker, mailer: Mailer, audit: AuditSink,
                 settings: Settings | None = None, clock: Clock | None = None):
        self.session_factory = session_factory
        self.mailer = mailer
        self.audit = audit
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    def dispatch_delivery(self, user_id: int) -> int:
        """Send every eligible recipient a delivery link. Returns how many."""
        effects = SideEffects(self.mailer, self.audit)
        sent = 0
        with self.session_factory() as session, session.begin():
            user = session.get(User, user_id)
            if user is None or user.state != UserState.DELIVERED:
                logger.info("Skipping delivery dispatch for user %s, not delivered", user_id)
                return 0

            vault = TokenVault(session, self.clock)
            for recipient, messages_count in _deliverable(session, user_id).all():
                issued = vault.issue(TokenPurpose.DELIVERY, recipient)
                effects.mail(MailKind.RECIPIENT_DELIVERY, recipient.email, {
                    "user_email": user.email,
                    "recipient_name": recipient.display_name,
                    "messages_count": messages_count,
                    "delivery_url": self.settings.url_for(f"/delivery/{issued.raw}"),
                })
                effects.log("recipient_delivery_sent", user_id, metadata={
                    "recipient_id": recipient.id,
                    "messages_count": messages_count,
                })
                sent += 1

        effects.flush()
        logger.info("Dispatched delivery for user %s to %s recipient(s)", user_id, sent)
        return sent
