"""
SQLAlchemy models for the registration workflow.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"


class TransactionType(str, Enum):
    STUDENT_REGISTRATION = "student_registration"


OPEN_DRAFT_CONDITION = "child_id IS NULL AND status IN ('PENDING', 'ACTIVE')"


class Parent(Base):
    __tablename__ = "parents"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True)
    first_name = Column(Text, nullable=False)
    last_name = Column(Text)
    phone_number = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(x for x in [self.first_name, self.last_name] if x).strip()


class Draft(Base):
    __tablename__ = "drafts"

    id = Column(String(64), primary_key=True)
    parent_id = Column(Uuid(as_uuid=True), ForeignKey("parents.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    age = Column(Integer)
    grade = Column(Text)
    password_hash = Column(Text, nullable=False)
    image_url = Column(Text)
    payment_url = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    parent_id = Column(Uuid(as_uuid=True), ForeignKey("parents.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    age = Column(Integer)
    grade = Column(Text)
    password_hash = Column(Text, nullable=False)
    image_url = Column(Text)
    role = Column(Text, default="student", nullable=False)
    initial_quiz_id = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_open_draft",
            "draft_id",
            unique=True,
            sqlite_where=text(OPEN_DRAFT_CONDITION),
            postgresql_where=text(OPEN_DRAFT_CONDITION),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payer_id = Column(Uuid(as_uuid=True), ForeignKey("parents.id", ondelete="CASCADE"), nullable=False, index=True)
    draft_id = Column(String(64), ForeignKey("drafts.id", ondelete="SET NULL"), index=True)
    tx_ref = Column(String(80), nullable=False, unique=True)
    external_id = Column(Text)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.PENDING.value, index=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(32), nullable=False, default=PaymentMethod.CARD.value)
    child_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="SET NULL"))
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="RWF")
    checkout_url = Column(Text)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LedgerTransaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("parent_id", "account_id", "transaction_type", name="uq_transactions_registration"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    parent_id = Column(Uuid(as_uuid=True), ForeignKey("parents.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String(32), nullable=False)
    transaction_type = Column(String(32), nullable=False, default=TransactionType.STUDENT_REGISTRATION.value)
    transaction_ref = Column(Text)
    transaction_date = Column(DateTime, default=utcnow, nullable=False)
    notes = Column(Text)
