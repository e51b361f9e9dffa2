"""
Event and snapshot types exchanged between the sources and the orchestrator

Every source emits one small tagged dataclass; the orchestrator dispatches on
its ``type`` field.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from models import OrderStatus, TradeType


class OrderEventType(str, Enum):
    NEW = "new"
    PAID = "paid"
    MATCHED = "matched"
    RELEASED = "released"
    CANCELLED = "cancelled"


class PaymentEventType(str, Enum):
    PAYMENT = "payment"
    REVERSAL = "reversal"
    SYNC_MATCHED = "sync_matched"


class ChatEventType(str, Enum):
    IMAGE = "image"


class ReleaseEventType(str, Enum):
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_COMPLETE = "verification_complete"
    RELEASE_QUEUED = "release_queued"
    RELEASE_SUCCESS = "release_success"
    RELEASE_FAILED = "release_failed"
    MANUAL_REQUIRED = "manual_required"


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only copy of an exchange order"""

    order_number: str
    total_price: Decimal
    status: str = OrderStatus.TRADING.value
    trade_type: str = TradeType.SELL.value
    asset: str = "USDT"
    fiat: str = "MXN"
    counterparty_nickname: str = ""
    counterparty_user_id: Optional[str] = None
    buyer_real_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def buyer_display_name(self) -> str:
        """KYC name when known - it matches bank sender names far better than nicknames"""
        return self.buyer_real_name or self.counterparty_nickname or ""

    def merged_with(self, **fields: Any) -> "OrderSnapshot":
        """Copy with the given fields overlaid, ignoring None/empty values"""
        updates = {key: value for key, value in fields.items() if value not in (None, "")}
        return replace(self, **updates) if updates else self


@dataclass(frozen=True)
class BankPaymentPayload:
    """Normalized bank transfer notification"""

    transaction_id: str
    amount: Decimal
    sender_name: str = ""
    currency: str = "MXN"
    timestamp: Optional[datetime] = None
    sender_account: str = ""
    concept: str = ""
    bank_reference: str = ""


@dataclass(frozen=True)
class OrderMatch:
    """A bank payment linked to an order, prior to verification"""

    order_number: str
    transaction_id: str
    received_amount: Decimal
    expected_amount: Decimal
    sender_name: str = ""
    matched_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderEvent:
    type: OrderEventType
    order: OrderSnapshot
    match: Optional[OrderMatch] = None


@dataclass(frozen=True)
class PaymentEvent:
    type: PaymentEventType
    payload: BankPaymentPayload
    order: Optional[OrderSnapshot] = None  # Only for SYNC_MATCHED


@dataclass(frozen=True)
class ChatImage:
    order_number: str
    image_url: str
    thumbnail_url: str = ""
    sender_nickname: str = ""
    time: Optional[datetime] = None


@dataclass(frozen=True)
class ChatEvent:
    type: ChatEventType
    message: ChatImage


@dataclass(frozen=True)
class ReleaseEvent:
    """Operator-visible outcome emitted by the orchestrator"""

    type: ReleaseEventType
    order_number: str
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
