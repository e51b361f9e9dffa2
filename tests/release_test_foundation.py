"""
Test doubles and factories shared by the release engine tests
"""

import asyncio
from decimal import Decimal
from typing import Dict, List, Optional

from models import OrderStatus
from services.events import BankPaymentPayload, OrderSnapshot, ReleaseEvent, ReleaseEventType
from services.exchange_client import CounterpartyStats

TRUSTED_STATS = CounterpartyStats(
    total_orders=250, orders_30day=40, register_days=400, positive_rate=0.99, finish_rate=0.98
)
NEW_BUYER_STATS = CounterpartyStats(
    total_orders=3, orders_30day=1, register_days=10, positive_rate=0.5, finish_rate=0.6
)


def make_order(order_number: str, amount: str, nickname: str = "",
               real_name: Optional[str] = None, status: str = OrderStatus.BUYER_PAYED.value,
               user_id: Optional[str] = None) -> OrderSnapshot:
    return OrderSnapshot(
        order_number=order_number,
        total_price=Decimal(amount),
        status=status,
        counterparty_nickname=nickname,
        counterparty_user_id=user_id,
        buyer_real_name=real_name,
    )


def make_payment(transaction_id: str, amount: str, sender_name: str) -> BankPaymentPayload:
    return BankPaymentPayload(transaction_id=transaction_id, amount=Decimal(amount), sender_name=sender_name)


class FakeExchange:
    """Exchange client double: order details by number, scripted release results"""

    def __init__(self):
        self.active_orders: List[OrderSnapshot] = []
        self.details: Dict[str, OrderSnapshot] = {}
        self.stats: Dict[str, CounterpartyStats] = {}
        self.release_results: List[bool] = []
        self.release_calls: List[tuple] = []

    async def list_active_orders(self) -> List[OrderSnapshot]:
        return list(self.active_orders)

    async def get_order_detail(self, order_number: str) -> OrderSnapshot:
        if order_number not in self.details:
            raise RuntimeError(f"order {order_number} not found")
        return self.details[order_number]

    async def get_counterparty_stats(self, order_number: str) -> CounterpartyStats:
        if order_number not in self.stats:
            raise RuntimeError("stats endpoint unavailable")
        return self.stats[order_number]

    async def release(self, order_number: str, auth_type: str, code: str) -> bool:
        self.release_calls.append((order_number, auth_type, code))
        if self.release_results:
            return self.release_results.pop(0)
        return True


class FakeCodeProvider:
    """Distinct code per call, like TOTP across windows"""

    def __init__(self):
        self.issued: List[str] = []
        self.window_delay = 0.0

    async def next_code(self, order_number: Optional[str] = None) -> str:
        code = f"{len(self.issued) + 1:06d}"
        self.issued.append(code)
        return code

    def seconds_until_fresh_code(self) -> float:
        return self.window_delay if self.issued else 0.0


class EventCollector:
    """Records every ReleaseEvent emitted by the orchestrator"""

    def __init__(self):
        self.events: List[ReleaseEvent] = []

    async def __call__(self, event: ReleaseEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: ReleaseEventType, order_number: Optional[str] = None) -> List[ReleaseEvent]:
        return [
            event for event in self.events
            if event.type == event_type and (order_number is None or event.order_number == order_number)
        ]


async def wait_forever(_seconds: float) -> None:
    """Sleep double that never returns; keeps queued releases parked until cleanup"""
    await asyncio.Event().wait()
