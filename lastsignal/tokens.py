# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Token vault.

Every stateful action that arrives out of band (check-in link, panic link,
trusted contact confirmation, magic link, recipient invite, delivery link)
is authorised by a random single-purpose token. Only the SHA-256 digest is
persisted; the raw value is returned once at issuance so it can be emailed.

Lookups go by digest so verification is a single indexed query. The match
is then re-confirmed with a constant-time comparison.
"""
import enum
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from .clock import Clock, SystemClock, as_utc
from .config import (
    MAGIC_LINK_TTL_MINUTES,
    INVITE_TOKEN_TTL_DAYS,
    TRUSTED_CONTACT_TOKEN_TTL_HOURS,
)
from .models import (
    User,
    TrustedContact,
    Recipient,
    RecipientState,
    MagicLinkToken,
    DeliveryToken,
)

TOKEN_BYTES = 32  # 256 bits of entropy


class TokenPurpose(str, enum.Enum):
    CHECKIN = "checkin"
    PANIC = "panic"
    INVITE = "invite"
    DELIVERY = "delivery"
    TRUSTED_CONTACT = "trusted_contact"
    MAGIC_LINK = "magic_link"


# Check-in and panic tokens share one slot on the user row
USER_SLOT_PURPOSES = frozenset({TokenPurpose.CHECKIN, TokenPurpose.PANIC})


class IssuedToken(NamedTuple):
    raw: str
    digest: str
    expires_at: Optional[datetime]


def generate_raw_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def digest_token(raw_token: str) -> str:
    """One-way digest of a raw token, the only form we persist."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def digests_match(raw_token: str | None, stored_digest: str | None) -> bool:
    if not raw_token or not stored_digest:
        return False
    return hmac.compare_digest(digest_token(raw_token), stored_digest)


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    expires_at = as_utc(expires_at)
    return expires_at is not None and expires_at <= now


def clear_user_slot(user: User) -> None:
    user.checkin_token_digest = None
    user.checkin_token_purpose = None
    user.checkin_token_expires_at = None


class TokenVault:
    """Issues and verifies tokens against the current session.

    `verify` locks the owning row (`SELECT ... FOR UPDATE`) so callers can
    mutate it inside the same transaction without a second lookup.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.db = session
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, purpose: TokenPurpose, owner, ttl: timedelta | None = None,
              now: datetime | None = None) -> IssuedToken:
        """`now` lets a transition stamp its token with the same instant as its other fields."""
        purpose = TokenPurpose(purpose)
        if now is None:
            now = self.clock.now()
        raw = generate_raw_token()
        digest = digest_token(raw)

        if purpose in USER_SLOT_PURPOSES:
            if ttl is None:
                ttl = timedelta(
                    hours=owner.effective_checkin_attempt_interval_hours
                    * owner.effective_checkin_attempts
                )
            expires_at = now + ttl
            # Overwrite: the previous check-in/panic token stops working
            owner.checkin_token_digest = digest
            owner.checkin_token_purpose = purpose.value
            owner.checkin_token_expires_at = expires_at

        elif purpose == TokenPurpose.TRUSTED_CONTACT:
            expires_at = now + (ttl or timedelta(hours=TRUSTED_CONTACT_TOKEN_TTL_HOURS))
            owner.token_digest = digest
            owner.token_expires_at = expires_at

        elif purpose == TokenPurpose.INVITE:
            expires_at = now + (ttl or timedelta(days=INVITE_TOKEN_TTL_DAYS))
            owner.invite_token_digest = digest
            owner.invite_expires_at = expires_at

        elif purpose == TokenPurpose.MAGIC_LINK:
            expires_at = now + (ttl or timedelta(minutes=MAGIC_LINK_TTL_MINUTES))
            self.db.add(MagicLinkToken(user=owner, token_digest=digest, expires_at=expires_at))

        elif purpose == TokenPurpose.DELIVERY:
            # Delivery links do not expire, they are revoked
            expires_at = None
            self.db.add(DeliveryToken(recipient=owner, token_digest=digest))

        else:  # pragma: no cover
            raise ValueError(f"Unknown token purpose: {purpose}")

        return IssuedToken(raw=raw, digest=digest, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, purpose: TokenPurpose, raw_token: str | None):
        """Return the owning entity, or None for absent/expired/mismatched tokens.

        Expired tokens are left in place; cleanup happens elsewhere.
        """
        purpose = TokenPurpose(purpose)
        if not raw_token:
            return None
        digest = digest_token(raw_token)
        now = self.clock.now()

        if purpose in USER_SLOT_PURPOSES:
            user = (
                self.db.query(User)
                .filter(User.checkin_token_digest == digest)
                .with_for_update()
                .one_or_none()
            )
            if user is None or user.checkin_token_purpose != purpose.value:
                return None
            if is_expired(user.checkin_token_expires_at, now):
                return None
            return user if digests_match(raw_token, user.checkin_token_digest) else None

        if purpose == TokenPurpose.TRUSTED_CONTACT:
            contact = (
                self.db.query(TrustedContact)
                .filter(TrustedContact.token_digest == digest)
                .with_for_update()
                .one_or_none()
            )
            if contact is None or contact.token_expires_at is None:
                return None
            if is_expired(contact.token_expires_at, now):
                return None
            return contact if digests_match(raw_token, contact.token_digest) else None

        if purpose == TokenPurpose.INVITE:
            recipient = (
                self.db.query(Recipient)
                .filter(Recipient.invite_token_digest == digest)
                .with_for_update()
                .one_or_none()
            )
            if recipient is None or recipient.state != RecipientState.INVITED:
                return None
            if recipient.invite_expires_at is None or is_expired(recipient.invite_expires_at, now):
                return None
            return recipient if digests_match(raw_token, recipient.invite_token_digest) else None

        if purpose == TokenPurpose.MAGIC_LINK:
            token = (
                self.db.query(MagicLinkToken)
                .filter(MagicLinkToken.token_digest == digest, MagicLinkToken.used_at.is_(None))
                .with_for_update()
                .one_or_none()
            )
            if token is None or is_expired(token.expires_at, now):
                return None
            if not digests_match(raw_token, token.token_digest):
                return None
            # Single use
            token.used_at = now
            return token.user

        if purpose == TokenPurpose.DELIVERY:
            token = (
                self.db.query(DeliveryToken)
                .filter(DeliveryToken.token_digest == digest, DeliveryToken.revoked_at.is_(None))
                .one_or_none()
            )
            if token is None or not digests_match(raw_token, token.token_digest):
                return None
            token.last_accessed_at = now
            return token.recipient

        raise ValueError(f"Unknown token purpose: {purpose}")  # pragma: no cover

    def revoke_delivery_tokens(self, recipient: Recipient) -> int:
        now = self.clock.now()
        revoked = 0
        for token in recipient.delivery_tokens:
            if token.revoked_at is None:
                token.revoked_at = now
                revoked += 1
        return revoked
