"""
Tests for OrderLifecycleSource polling, events and the release entry point
"""

import pytest
from unittest.mock import AsyncMock

from models import OrderStatus
from services.events import OrderEventType
from services.order_lifecycle import OrderLifecycleSource
from tests.release_test_foundation import make_order


@pytest.fixture
def source(exchange, store):
    source = OrderLifecycleSource(exchange, store=store)
    source.listener = AsyncMock()
    source.subscribe(source.listener)
    return source


def _event_types(source):
    return [call.args[0].type for call in source.listener.await_args_list]


class TestOrderEvents:
    """Status transitions become order events"""

    @pytest.mark.asyncio
    async def test_new_paid_order_emits_new_and_paid_with_real_name(self, source, exchange, store):
        exchange.details["A1"] = make_order("A1", "1000", nickname="juanp", real_name="JUAN PEREZ LOPEZ",
                                            user_id="u-1")

        await source.process_snapshot(make_order("A1", "1000", nickname="juanp"))

        assert _event_types(source) == [OrderEventType.NEW, OrderEventType.PAID]
        paid_order = source.listener.await_args_list[1].args[0].order
        assert paid_order.buyer_real_name == "JUAN PEREZ LOPEZ"
        assert paid_order.counterparty_user_id == "u-1"
        assert (await store.get_order("A1")).buyer_real_name == "JUAN PEREZ LOPEZ"

    @pytest.mark.asyncio
    async def test_transition_to_paid_then_completed(self, source, exchange):
        exchange.details["A2"] = make_order("A2", "700", real_name="ANA RUIZ")

        await source.process_snapshot(make_order("A2", "700", status=OrderStatus.TRADING.value))
        await source.process_snapshot(make_order("A2", "700"))
        await source.process_snapshot(make_order("A2", "700", status=OrderStatus.COMPLETED.value))

        assert _event_types(source) == [OrderEventType.NEW, OrderEventType.PAID, OrderEventType.RELEASED]
        assert source.get_order("A2") is None

    @pytest.mark.asyncio
    async def test_cancelled_order_emits_cancelled(self, source):
        await source.process_snapshot(make_order("A3", "700", status=OrderStatus.TRADING.value))
        await source.process_snapshot(make_order("A3", "700", status=OrderStatus.CANCELLED_BY_SYSTEM.value))

        assert _event_types(source) == [OrderEventType.NEW, OrderEventType.CANCELLED]

    @pytest.mark.asyncio
    async def test_terminal_order_never_seen_is_ignored(self, source):
        await source.process_snapshot(make_order("A4", "700", status=OrderStatus.COMPLETED.value))

        source.listener.assert_not_called()
        assert source.get_active_orders() == []

    @pytest.mark.asyncio
    async def test_unchanged_status_keeps_learned_identity(self, source, exchange):
        exchange.details["A5"] = make_order("A5", "900", real_name="LUIS TORRES")
        await source.process_snapshot(make_order("A5", "900"))

        await source.process_snapshot(make_order("A5", "900"))

        assert len(source.listener.await_args_list) == 2
        assert source.get_order("A5").buyer_real_name == "LUIS TORRES"

    @pytest.mark.asyncio
    async def test_poll_processes_listed_orders(self, source, exchange):
        exchange.active_orders = [make_order("A6", "100", status=OrderStatus.TRADING.value)]

        await source.poll()

        assert _event_types(source) == [OrderEventType.NEW]

    @pytest.mark.asyncio
    async def test_poll_survives_exchange_errors(self, source, exchange):
        exchange.list_active_orders = AsyncMock(side_effect=RuntimeError("503"))

        await source.poll()

        source.listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_detail_failure_keeps_snapshot(self, source):
        order = make_order("A7", "100", nickname="nick")
        assert await source.fetch_buyer_detail(order) == order


class TestReleaseCrypto:
    """release_crypto only acts on tracked orders backed by a bank transaction"""

    @pytest.mark.asyncio
    async def test_untracked_order_is_refused(self, source, exchange):
        assert await source.release_crypto("NOPE", "GOOGLE", "123456") is False
        assert exchange.release_calls == []

    @pytest.mark.asyncio
    async def test_order_without_bank_transaction_is_refused(self, source, exchange):
        source.register_order_for_release(make_order("R1", "500"), None)

        assert await source.release_crypto("R1", "GOOGLE", "123456") is False
        assert exchange.release_calls == []

    @pytest.mark.asyncio
    async def test_registered_order_is_released(self, source, exchange):
        source.register_order_for_release(make_order("R2", "500"), "TX-R2")

        assert await source.release_crypto("R2", "GOOGLE", "123456") is True
        assert exchange.release_calls == [("R2", "GOOGLE", "123456")]

    @pytest.mark.asyncio
    async def test_exchange_error_returns_false(self, source, exchange):
        exchange.release = AsyncMock(side_effect=RuntimeError("timeout"))
        source.register_order_for_release(make_order("R3", "500"), "TX-R3")

        assert await source.release_crypto("R3", "GOOGLE", "123456") is False
