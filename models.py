"""
P2P Auto-Release Reconciliation Schema
======================================

Persistent records the reconciliation engine relies on:
- Mirrored exchange orders with their verification status and timeline
- Bank payments and their match/release lifecycle (double-spend guard)
- Append-only verification steps (audit timeline)
- Trusted counterparties keyed by immutable exchange user id
- Operator alerts
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON, Index, func
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order states as reported by the exchange"""
    TRADING = "TRADING"
    BUYER_PAYED = "BUYER_PAYED"        # Buyer clicked "paid", escrow awaiting release
    APPEALING = "APPEALING"
    COMPLETED = "COMPLETED"            # Crypto released
    CANCELLED = "CANCELLED"
    CANCELLED_BY_SYSTEM = "CANCELLED_BY_SYSTEM"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.CANCELLED_BY_SYSTEM.value,
})


class TradeType(Enum):
    BUY = "BUY"
    SELL = "SELL"


class PaymentStatus(Enum):
    """Bank payment lifecycle"""
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    RELEASED = "RELEASED"          # Terminal - never re-matchable
    REVERSED = "REVERSED"
    THIRD_PARTY = "THIRD_PARTY"
    FAILED = "FAILED"


class MatchMethod(Enum):
    BANK_WEBHOOK = "BANK_WEBHOOK"
    OCR_RECEIPT = "OCR_RECEIPT"
    SYNC = "SYNC"
    MANUAL = "MANUAL"


class VerificationStatus(Enum):
    """Verification milestones recorded on an order's timeline"""
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    BUYER_MARKED_PAID = "BUYER_MARKED_PAID"
    BANK_PAYMENT_RECEIVED = "BANK_PAYMENT_RECEIVED"
    PAYMENT_MATCHED = "PAYMENT_MATCHED"
    AMOUNT_VERIFIED = "AMOUNT_VERIFIED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    NAME_VERIFIED = "NAME_VERIFIED"
    NAME_MISMATCH = "NAME_MISMATCH"
    READY_TO_RELEASE = "READY_TO_RELEASE"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    RELEASED = "RELEASED"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================================================
# TABLES
# ============================================================================

class P2POrder(Base):
    """Read-only mirror of an exchange order plus its verification state"""
    __tablename__ = "p2p_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), unique=True, nullable=False, index=True)
    trade_type = Column(String(8), nullable=False, default=TradeType.SELL.value)
    asset = Column(String(16), nullable=False, default="USDT")
    fiat = Column(String(8), nullable=False, default="MXN")
    total_price = Column(Numeric(18, 2), nullable=False)
    counterparty_nickname = Column(String(128), nullable=True)
    counterparty_user_id = Column(String(64), nullable=True, index=True)
    buyer_real_name = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default=OrderStatus.TRADING.value)
    verification_status = Column(String(32), nullable=False, default=VerificationStatus.AWAITING_PAYMENT.value)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
    paid_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_p2p_orders_status_price", "status", "total_price"),
    )


class BankPayment(Base):
    """Incoming bank transfer and its reconciliation state"""
    __tablename__ = "bank_payments"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(128), unique=True, nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="MXN")
    sender_name = Column(String(255), nullable=True)
    sender_account = Column(String(64), nullable=True)
    concept = Column(Text, nullable=True)
    bank_reference = Column(String(128), nullable=True)
    bank_timestamp = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    matched_order_number = Column(String(64), nullable=True, index=True)
    match_method = Column(String(16), nullable=True)
    matched_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_bank_payments_status_amount", "status", "amount"),
    )


class VerificationStep(Base):
    """Immutable entry on an order's verification timeline"""
    __tablename__ = "verification_steps"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class TrustedBuyer(Base):
    """Counterparty manually vetted by an operator (keyed by exchange user id, never nickname)"""
    __tablename__ = "trusted_buyers"

    id = Column(Integer, primary_key=True, index=True)
    counterparty_user_id = Column(String(64), unique=True, nullable=False, index=True)
    nickname = Column(String(128), nullable=True)  # Display only
    is_active = Column(Boolean, nullable=False, default=True)
    auto_released_count = Column(Integer, nullable=False, default=0)
    auto_released_total = Column(Numeric(18, 2), nullable=False, default=0)
    last_released_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ReconciliationAlert(Base):
    """Operator-visible alert (third-party payments, reversals, double-spend attempts)"""
    __tablename__ = "reconciliation_alerts"

    id = Column(Integer, primary_key=True, index=True)
    alert_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default=AlertSeverity.INFO.value)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    order_number = Column(String(64), nullable=True, index=True)
    alert_metadata = Column("metadata", JSON, nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(128), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
