from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


CREDIT_ORDER_TYPE = "credit"


class Base(DeclarativeBase):
    pass


class PayOrderStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"


class CreditTransactionType(str, enum.Enum):
    RECHARGE = "recharge"
    CONSUME = "consume"
    REFUND = "refund"


class ReconciliationIssueStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class User(Base):
    """
    Ledger account of a user known to the host application.

    `credits` and `ledger_seq` are only written by CreditLedger, in the same
    transaction that appends the matching CreditTransaction.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    nickname: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0)
    total_spent_cents: Mapped[int] = mapped_column(Integer, default=0)
    ledger_seq: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Order(Base):
    """A confirmed purchase. Rows are inserted once and never updated."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    identifier: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(120))
    order_type: Mapped[str] = mapped_column(String(64), index=True)
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    promotion_price_cents: Mapped[int] = mapped_column(Integer, default=0)
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True)
    promoter: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    credit_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider: Mapped[str] = mapped_column(String(32), default="mock")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class PayOrder(Base):
    """
    Payment intent awaiting provider confirmation.

    `identifier` is the merchant trade number sent to the provider
    (out_trade_no). `sign` is the aggregator signature precomputed at
    creation time; callbacks must report the same value.
    """

    __tablename__ = "pay_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    identifier: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    provider: Mapped[str] = mapped_column(String(32), default="mock")
    sign: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[PayOrderStatus] = mapped_column(
        Enum(PayOrderStatus, native_enum=False),
        default=PayOrderStatus.PENDING,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(String(255))
    order_type: Mapped[str] = mapped_column(String(64), default=CREDIT_ORDER_TYPE)
    name: Mapped[str] = mapped_column(String(120), default="")
    credit_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    promoter: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    promotion_price_cents: Mapped[int] = mapped_column(Integer, default=0)
    checkout_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    type: Mapped[CreditTransactionType] = mapped_column(
        Enum(CreditTransactionType, native_enum=False),
        index=True,
    )
    amount: Mapped[int] = mapped_column(Integer)
    balance: Mapped[int] = mapped_column(Integer)
    order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class RedemptionCode(Base):
    __tablename__ = "redemption_codes"
    __table_args__ = (
        CheckConstraint("used_count <= max_uses", name="ck_redemption_codes_usage"),
        CheckConstraint("max_uses >= 1", name="ck_redemption_codes_max_uses"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    credit_amount: Mapped[int] = mapped_column(Integer)
    max_uses: Mapped[int] = mapped_column(Integer, default=1)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64))
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    records: Mapped[list["RedemptionRecord"]] = relationship(back_populates="redemption_code")


class RedemptionRecord(Base):
    __tablename__ = "redemption_records"
    __table_args__ = (UniqueConstraint("code_id", "user_id", name="uq_redemption_records_code_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code_id: Mapped[str] = mapped_column(ForeignKey("redemption_codes.id"), index=True)
    code: Mapped[str] = mapped_column(String(32))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    user_identifier: Mapped[str] = mapped_column(String(128), default="")
    credit_amount: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    redemption_code: Mapped[RedemptionCode] = relationship(back_populates="records")


class PaymentAuditLog(Base):
    """
    Append-only record of every callback attempt, including rejected ones.

    Payloads are stored redacted for dispute resolution.
    """

    __tablename__ = "payment_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), index=True)
    source: Mapped[str] = mapped_column(String(16), default="callback")
    out_trade_no: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ReconciliationIssue(Base):
    __tablename__ = "reconciliation_issues"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    pay_order_id: Mapped[str] = mapped_column(ForeignKey("pay_orders.id"), index=True)
    out_trade_no: Mapped[str] = mapped_column(String(128), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    credit_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[ReconciliationIssueStatus] = mapped_column(
        Enum(ReconciliationIssueStatus, native_enum=False),
        default=ReconciliationIssueStatus.OPEN,
        index=True,
    )
    error: Mapped[str] = mapped_column(Text)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


Index("ix_credit_transactions_user_created", CreditTransaction.user_id, CreditTransaction.created_at)
Index("ix_pay_orders_status_created", PayOrder.status, PayOrder.created_at)
