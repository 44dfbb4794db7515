# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.

import enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey, Enum as SQLEnum, Index
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from .config import (
    CHECKIN_DEFAULT_INTERVAL_HOURS,
    CHECKIN_DEFAULT_ATTEMPTS,
    CHECKIN_DEFAULT_ATTEMPT_INTERVAL_HOURS,
    CHECKIN_MIN_INTERVAL_HOURS,
    CHECKIN_MAX_INTERVAL_HOURS,
    CHECKIN_MIN_ATTEMPTS,
    CHECKIN_MAX_ATTEMPTS,
    CHECKIN_MIN_ATTEMPT_INTERVAL_HOURS,
    CHECKIN_MAX_ATTEMPT_INTERVAL_HOURS,
    TRUSTED_CONTACT_DEFAULT_PAUSE_DURATION_HOURS,
    TRUSTED_CONTACT_MIN_PAUSE_DURATION_HOURS,
    TRUSTED_CONTACT_MAX_PAUSE_DURATION_HOURS,
)
from .database import Base, UTCDateTime


class UserState(str, enum.Enum):
    ACTIVE = "active"
    GRACE = "grace"
    COOLDOWN = "cooldown"
    DELIVERED = "delivered"
    PAUSED = "paused"


class RecipientState(str, enum.Enum):
    INVITED = "invited"
    ACCEPTED = "accepted"


def _enum_column(enum_cls, name, default):
    return Column(
        SQLEnum(
            enum_cls,
            name=name,
            native_enum=False,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=default,
        index=True,
    )


def _normalize_email(value):
    return value.strip().lower() if value else value


def _check_range(field, value, low, high):
    if value is None:
        return None
    if isinstance(value, bool) or int(value) != value:
        raise ValueError(f"{field} must be a whole number")
    if value < low or value > high:
        raise ValueError(f"{field} must be between {low} and {high}")
    return int(value)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)

    # Check-in configuration, NULL means "use system default"
    checkin_interval_hours = Column(Integer, nullable=True)
    checkin_attempts = Column(Integer, nullable=True)
    checkin_attempt_interval_hours = Column(Integer, nullable=True)

    # Lifecycle
    state = _enum_column(UserState, "user_state", UserState.ACTIVE)
    next_checkin_at = Column(UTCDateTime, nullable=True, index=True)
    last_checkin_confirmed_at = Column(UTCDateTime, nullable=True)
    last_checkin_attempt_at = Column(UTCDateTime, nullable=True)
    checkin_attempts_sent = Column(Integer, nullable=False, default=0)
    cooldown_warning_sent_at = Column(UTCDateTime, nullable=True)  # delivery timer anchor
    delivered_at = Column(UTCDateTime, nullable=True)
    delivery_notice_sent_at = Column(UTCDateTime, nullable=True)

    # Single outstanding check-in / panic token, digest only
    checkin_token_digest = Column(String(64), nullable=True, unique=True, index=True)
    checkin_token_purpose = Column(String(16), nullable=True)
    checkin_token_expires_at = Column(UTCDateTime, nullable=True)

    # Recovery code for emergency stop, digest only
    recovery_code_digest = Column(String(64), nullable=True)
    recovery_code_viewed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    trusted_contact = relationship(
        "TrustedContact", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    recipients = relationship("Recipient", back_populates="user", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="user", cascade="all, delete-orphan")
    magic_link_tokens = relationship(
        "MagicLinkToken", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_state_next_checkin_at", "state", "next_checkin_at"),
    )

    @validates("email")
    def _validate_email(self, key, value):
        value = _normalize_email(value)
        if not value or "@" not in value:
            raise ValueError("email is invalid")
        return value

    @validates("checkin_interval_hours")
    def _validate_interval(self, key, value):
        return _check_range(key, value, CHECKIN_MIN_INTERVAL_HOURS, CHECKIN_MAX_INTERVAL_HOURS)

    @validates("checkin_attempts")
    def _validate_attempts(self, key, value):
        return _check_range(key, value, CHECKIN_MIN_ATTEMPTS, CHECKIN_MAX_ATTEMPTS)

    @validates("checkin_attempt_interval_hours")
    def _validate_attempt_interval(self, key, value):
        return _check_range(
            key, value, CHECKIN_MIN_ATTEMPT_INTERVAL_HOURS, CHECKIN_MAX_ATTEMPT_INTERVAL_HOURS
        )

    @property
    def effective_checkin_interval_hours(self) -> int:
        return self.checkin_interval_hours or CHECKIN_DEFAULT_INTERVAL_HOURS

    @property
    def effective_checkin_attempts(self) -> int:
        return self.checkin_attempts or CHECKIN_DEFAULT_ATTEMPTS

    @property
    def effective_checkin_attempt_interval_hours(self) -> int:
        return self.checkin_attempt_interval_hours or CHECKIN_DEFAULT_ATTEMPT_INTERVAL_HOURS

    @property
    def recovery_code_viewed(self) -> bool:
        return self.recovery_code_viewed_at is not None

    def __repr__(self):
        return f"<User id={self.id} state={self.state.value if self.state else None}>"


class TrustedContact(Base):
    __tablename__ = "trusted_contacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    pause_duration_hours = Column(Integer, nullable=True)

    last_pinged_at = Column(UTCDateTime, nullable=True)
    last_confirmed_at = Column(UTCDateTime, nullable=True)
    paused_until = Column(UTCDateTime, nullable=True)

    # Outstanding ping token, digest only
    token_digest = Column(String(64), nullable=True, unique=True, index=True)
    token_expires_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())

    user = relationship("User", back_populates="trusted_contact")

    @validates("email")
    def _validate_email(self, key, value):
        value = _normalize_email(value)
        if not value or "@" not in value:
            raise ValueError("email is invalid")
        return value

    @validates("pause_duration_hours")
    def _validate_pause_duration(self, key, value):
        return _check_range(
            key,
            value,
            TRUSTED_CONTACT_MIN_PAUSE_DURATION_HOURS,
            TRUSTED_CONTACT_MAX_PAUSE_DURATION_HOURS,
        )

    @property
    def effective_pause_duration_hours(self) -> int:
        return self.pause_duration_hours or TRUSTED_CONTACT_DEFAULT_PAUSE_DURATION_HOURS


class Recipient(Base):
    __tablename__ = "recipients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    state = _enum_column(RecipientState, "recipient_state", RecipientState.INVITED)

    invite_token_digest = Column(String(64), nullable=True, unique=True, index=True)
    invite_expires_at = Column(UTCDateTime, nullable=True)
    accepted_at = Column(UTCDateTime, nullable=True)

    # Recipient's registered public key (opaque to the server)
    public_key = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())

    user = relationship("User", back_populates="recipients")
    message_links = relationship(
        "MessageRecipient", back_populates="recipient", cascade="all, delete-orphan"
    )
    delivery_tokens = relationship(
        "DeliveryToken", back_populates="recipient", cascade="all, delete-orphan"
    )

    @validates("email")
    def _validate_email(self, key, value):
        return _normalize_email(value)

    @property
    def can_receive_messages(self) -> bool:
        return self.state == RecipientState.ACCEPTED and bool(self.public_key)

    @property
    def display_name(self) -> str:
        return self.name or self.email


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    ciphertext = Column(Text, nullable=False)  # encrypted client-side

    created_at = Column(UTCDateTime, server_default=func.now())

    user = relationship("User", back_populates="messages")
    recipient_links = relationship(
        "MessageRecipient", back_populates="message", cascade="all, delete-orphan"
    )


class MessageRecipient(Base):
    __tablename__ = "message_recipients"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("recipients.id"), nullable=False, index=True)
    key_envelope = Column(Text, nullable=True)  # per-recipient wrapped message key

    message = relationship("Message", back_populates="recipient_links")
    recipient = relationship("Recipient", back_populates="message_links")


class MagicLinkToken(Base):
    __tablename__ = "magic_link_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_digest = Column(String(64), nullable=False, unique=True, index=True)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())

    user = relationship("User", back_populates="magic_link_tokens")


class DeliveryToken(Base):
    __tablename__ = "delivery_tokens"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, ForeignKey("recipients.id"), nullable=False, index=True)
    token_digest = Column(String(64), nullable=False, unique=True, index=True)
    revoked_at = Column(UTCDateTime, nullable=True)
    last_accessed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now())

    recipient = relationship("Recipient", back_populates="delivery_tokens")


__all__ = [
    "UserState",
    "RecipientState",
    "User",
    "TrustedContact",
    "Recipient",
    "Message",
    "MessageRecipient",
    "MagicLinkToken",
    "DeliveryToken",
]
