"""
Exchange collaborator interfaces

The signed HTTP client for the exchange lives outside this package; the
engine only depends on the narrow surface below.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol

from services.events import OrderSnapshot


@dataclass(frozen=True)
class CounterpartyStats:
    """Trailing trade statistics for an order's counterparty"""

    total_orders: int = 0
    orders_30day: int = 0
    register_days: int = 0
    positive_rate: float = 0.0
    finish_rate: float = 0.0


class ExchangeClient(Protocol):
    """Protocol defining the exchange operations the engine relies on"""

    async def list_active_orders(self) -> List[OrderSnapshot]:
        """Orders currently open on the account (polled by the order source)"""
        ...

    async def get_order_detail(self, order_number: str) -> OrderSnapshot:
        """Full order detail, including the buyer's KYC real name when available"""
        ...

    async def get_counterparty_stats(self, order_number: str) -> CounterpartyStats:
        ...

    async def release(self, order_number: str, auth_type: str, code: str) -> bool:
        """Release escrowed crypto; True only when the exchange confirmed it"""
        ...


class VerificationCodeProvider(Protocol):
    """2FA code source; never knowingly returns the same code twice in one window"""

    async def next_code(self, order_number: Optional[str] = None) -> str:
        ...

    def seconds_until_fresh_code(self) -> float:
        """0 when next_code can return immediately, else the wait for an unused code"""
        ...
