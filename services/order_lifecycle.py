"""
Order Lifecycle Source
Polls the exchange for open orders, mirrors them, and emits OrderEvents on
status transitions:

- first sighting of a non-terminal order  -> new (plus paid if already BUYER_PAYED)
- transition to BUYER_PAYED               -> paid (after fetching the KYC name)
- transition to COMPLETED                 -> released
- transition to CANCELLED*                -> cancelled
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from models import TERMINAL_ORDER_STATUSES, OrderStatus
from services.events import OrderEvent, OrderEventType, OrderSnapshot
from services.exchange_client import ExchangeClient

logger = logging.getLogger(__name__)

OrderListener = Callable[[OrderEvent], Awaitable[None]]

_TERMINAL = set(TERMINAL_ORDER_STATUSES)


def _keep_identity(order: OrderSnapshot, previous: OrderSnapshot) -> OrderSnapshot:
    """Polled snapshots lack the KYC fields learned earlier from order detail"""
    return order.merged_with(
        counterparty_nickname=order.counterparty_nickname or previous.counterparty_nickname,
        counterparty_user_id=order.counterparty_user_id or previous.counterparty_user_id,
        buyer_real_name=order.buyer_real_name or previous.buyer_real_name,
    )


class OrderLifecycleSource:
    """Mirror of open exchange orders plus the release entry point"""

    def __init__(self, exchange_client: ExchangeClient, store=None):
        self.exchange_client = exchange_client
        self.store = store
        self._listeners: List[OrderListener] = []
        self._active_orders: Dict[str, OrderSnapshot] = {}
        self._release_registrations: Dict[str, str] = {}
        self._is_polling = False

    def subscribe(self, listener: OrderListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, event: OrderEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"❌ ORDER_LISTENER_ERROR: {event.type.value} {event.order.order_number}: {e}",
                    exc_info=True,
                )

    # ==================== POLLING ====================

    async def poll(self) -> None:
        """One polling pass; overlapping passes are skipped"""
        if self._is_polling:
            logger.debug("Previous order poll still in progress, skipping")
            return

        self._is_polling = True
        try:
            try:
                orders = await self.exchange_client.list_active_orders()
            except Exception as e:
                logger.error(f"❌ ORDER_POLL_FAILED: could not list orders: {e}")
                return

            for order in orders:
                await self.process_snapshot(order)
        finally:
            self._is_polling = False

    async def run(self, interval_seconds: float = 5.0) -> None:
        """Poll forever; cancel the task to stop"""
        logger.info(f"📡 ORDER_POLLING_STARTED: every {interval_seconds}s")
        while True:
            await self.poll()
            await asyncio.sleep(interval_seconds)

    async def process_snapshot(self, order: OrderSnapshot) -> None:
        existing = self._active_orders.get(order.order_number)

        if existing is None:
            if order.status not in _TERMINAL:
                await self._handle_new_order(order)
            return

        order = _keep_identity(order, existing)
        if existing.status == order.status:
            self._active_orders[order.order_number] = order
            return

        await self._handle_status_change(existing, order)

    async def fetch_buyer_detail(self, order: OrderSnapshot) -> OrderSnapshot:
        """Overlay KYC real name / user id from order detail; keep the snapshot on failure"""
        try:
            detail = await self.exchange_client.get_order_detail(order.order_number)
        except Exception as e:
            logger.warning(f"⚠️ ORDER_DETAIL_FAILED: {order.order_number}: {e}")
            return order

        enriched = order.merged_with(
            buyer_real_name=detail.buyer_real_name,
            counterparty_user_id=detail.counterparty_user_id,
            counterparty_nickname=order.counterparty_nickname or detail.counterparty_nickname,
        )
        logger.info(
            f"📋 ORDER_DETAIL: {order.order_number} buyer='{enriched.counterparty_nickname}' "
            f"real_name='{enriched.buyer_real_name or '(not available)'}'"
        )
        return enriched

    async def _save(self, order: OrderSnapshot) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_order(order)
        except Exception as e:
            logger.error(f"❌ ORDER_SAVE_FAILED: {order.order_number}: {e}")

    async def _handle_new_order(self, order: OrderSnapshot) -> None:
        logger.info(
            f"🆕 NEW_ORDER: {order.order_number} {order.total_price} {order.fiat} "
            f"({order.asset}) status={order.status}"
        )

        if order.status == OrderStatus.BUYER_PAYED.value:
            order = await self.fetch_buyer_detail(order)

        await self._save(order)
        self._active_orders[order.order_number] = order
        await self._emit(OrderEvent(type=OrderEventType.NEW, order=order))

        # Marked paid before we first saw it
        if order.status == OrderStatus.BUYER_PAYED.value:
            await self._emit(OrderEvent(type=OrderEventType.PAID, order=order))

    async def _handle_status_change(self, previous: OrderSnapshot, order: OrderSnapshot) -> None:
        logger.info(f"🔄 ORDER_STATUS_CHANGED: {order.order_number} {previous.status} -> {order.status}")

        if order.status == OrderStatus.BUYER_PAYED.value:
            order = await self.fetch_buyer_detail(order)
            await self._save(order)
            self._active_orders[order.order_number] = order
            await self._emit(OrderEvent(type=OrderEventType.PAID, order=order))
            return

        await self._save(order)

        if order.status == OrderStatus.COMPLETED.value:
            self._forget(order.order_number)
            logger.info(f"✅ ORDER_COMPLETED: {order.order_number}")
            await self._emit(OrderEvent(type=OrderEventType.RELEASED, order=order))
        elif order.status in _TERMINAL:
            self._forget(order.order_number)
            logger.info(f"🚫 ORDER_CANCELLED: {order.order_number} ({order.status})")
            await self._emit(OrderEvent(type=OrderEventType.CANCELLED, order=order))
        else:
            if order.status == OrderStatus.APPEALING.value:
                logger.warning(f"⚠️ ORDER_APPEALING: {order.order_number}")
            self._active_orders[order.order_number] = order

    def _forget(self, order_number: str) -> None:
        self._active_orders.pop(order_number, None)
        self._release_registrations.pop(order_number, None)

    # ==================== QUERIES ====================

    def get_order(self, order_number: str) -> Optional[OrderSnapshot]:
        return self._active_orders.get(order_number)

    def get_active_orders(self) -> List[OrderSnapshot]:
        return list(self._active_orders.values())

    # ==================== RELEASE ====================

    def register_order_for_release(self, order: OrderSnapshot, transaction_id: Optional[str]) -> None:
        """Track an order (possibly loaded from the store) with the bank transaction backing it"""
        logger.info(
            f"🔗 ORDER_REGISTERED_FOR_RELEASE: {order.order_number} amount={order.total_price} "
            f"bank_tx={transaction_id or 'N/A'}"
        )
        self._active_orders[order.order_number] = order
        if transaction_id:
            self._release_registrations[order.order_number] = transaction_id

    async def release_crypto(self, order_number: str, auth_type: str, code: str) -> bool:
        """
        Release escrow for a registered order

        Returns:
            True only when the exchange confirmed the release
        """
        order = self._active_orders.get(order_number)
        if order is None:
            logger.error(f"❌ RELEASE_REFUSED: order {order_number} not tracked")
            return False

        if not self._release_registrations.get(order_number):
            logger.warning(f"🚫 RELEASE_REFUSED: order {order_number} has no bank transaction registered")
            return False

        try:
            released = await self.exchange_client.release(order_number, auth_type, code)
        except Exception as e:
            logger.error(f"❌ RELEASE_API_ERROR: order {order_number}: {e}")
            return False

        if released:
            logger.info(f"🚀 CRYPTO_RELEASED: order {order_number} {order.total_price} {order.fiat} ({order.asset})")
        else:
            logger.error(f"❌ RELEASE_API_REJECTED: order {order_number}")
        return bool(released)
