"""
Tests for the SQLAlchemy reconciliation store

Covers the compare-and-swap payment lifecycle that prevents double spending,
the append-only verification timeline, trusted buyers and alerts.
"""

import pytest
from decimal import Decimal

from models import AlertSeverity, MatchMethod, OrderStatus, PaymentStatus, VerificationStatus
from tests.release_test_foundation import make_order, make_payment


class TestPaymentLifecycle:
    """Bank payment binding and release are exclusive per transaction"""

    @pytest.mark.asyncio
    async def test_duplicate_payment_is_not_saved_twice(self, store):
        """Second save of the same transaction id reports a duplicate"""
        payment = make_payment("TX-1", "1000", "JUAN PEREZ")

        assert await store.save_payment(payment) is True
        assert await store.save_payment(payment) is False

        record = await store.get_payment("TX-1")
        assert record.status == PaymentStatus.PENDING.value
        assert record.amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_payment_binds_to_only_one_order(self, store):
        await store.save_payment(make_payment("TX-2", "500", "ANA RUIZ"))

        assert await store.match_payment("TX-2", "ORDER-A") is True
        # Re-binding to the same order is idempotent
        assert await store.match_payment("TX-2", "ORDER-A") is True
        assert await store.match_payment("TX-2", "ORDER-B") is False

        record = await store.get_payment("TX-2")
        assert record.status == PaymentStatus.MATCHED.value
        assert record.matched_order_number == "ORDER-A"
        assert record.match_method == MatchMethod.BANK_WEBHOOK.value

    @pytest.mark.asyncio
    async def test_released_payment_cannot_be_rematched(self, store):
        """A RELEASED payment is never bound or released again"""
        await store.save_order(make_order("ORDER-A", "500", real_name="ANA RUIZ"))
        await store.save_payment(make_payment("TX-3", "500", "ANA RUIZ"))
        await store.match_payment("TX-3", "ORDER-A")

        assert await store.mark_payment_released("TX-3", "ORDER-A") is True

        assert await store.match_payment("TX-3", "ORDER-B") is False
        assert await store.match_payment("TX-3", "ORDER-A") is False
        assert await store.mark_payment_released("TX-3", "ORDER-A") is False

        check = await store.is_already_released("TX-3")
        assert check.released is True
        assert check.order_number == "ORDER-A"
        assert check.at is not None

        order = await store.get_order("ORDER-A")
        assert order.status == OrderStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_release_requires_binding_to_that_order(self, store):
        await store.save_payment(make_payment("TX-4", "500", "ANA RUIZ"))
        assert await store.mark_payment_released("TX-4", "ORDER-A") is False

        await store.match_payment("TX-4", "ORDER-A")
        assert await store.mark_payment_released("TX-4", "ORDER-B") is False
        assert (await store.is_already_released("TX-4")).released is False

    @pytest.mark.asyncio
    async def test_unmatch_returns_payment_to_pending(self, store):
        await store.save_payment(make_payment("TX-5", "500", "ANA RUIZ"))
        await store.match_payment("TX-5", "ORDER-A")

        assert await store.unmatch_payment("TX-5") is True
        assert await store.match_payment("TX-5", "ORDER-B") is True
        assert (await store.get_payment("TX-5")).matched_order_number == "ORDER-B"

    @pytest.mark.asyncio
    async def test_unknown_payment_cannot_be_matched(self, store):
        assert await store.match_payment("TX-MISSING", "ORDER-A") is False
        assert (await store.is_already_released("TX-MISSING")).released is False

    @pytest.mark.asyncio
    async def test_reversal_flags_payment_and_raises_alert(self, store):
        await store.save_payment(make_payment("TX-6", "800", "LUIS TORRES"))
        await store.match_payment("TX-6", "ORDER-R")

        assert await store.mark_payment_reversed("TX-6") == "ORDER-R"

        assert (await store.get_payment("TX-6")).status == PaymentStatus.REVERSED.value
        assert await store.match_payment("TX-6", "ORDER-R") is False

        alerts = await store.get_unacknowledged_alerts()
        assert alerts[0]["type"] == "reversal"
        assert alerts[0]["severity"] == AlertSeverity.CRITICAL.value
        assert alerts[0]["order_number"] == "ORDER-R"

    @pytest.mark.asyncio
    async def test_reversal_after_release_keeps_released_status(self, store):
        await store.save_payment(make_payment("TX-7", "800", "LUIS TORRES"))
        await store.match_payment("TX-7", "ORDER-R")
        await store.mark_payment_released("TX-7", "ORDER-R")

        await store.mark_payment_reversed("TX-7")

        assert (await store.get_payment("TX-7")).status == PaymentStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_third_party_only_from_pending(self, store):
        await store.save_payment(make_payment("TX-8", "300", "PEDRO SANCHEZ"))
        await store.save_payment(make_payment("TX-9", "300", "PEDRO SANCHEZ"))
        await store.match_payment("TX-9", "ORDER-X")

        assert await store.mark_payment_third_party("TX-8") is True
        assert await store.mark_payment_third_party("TX-9") is False
        assert await store.match_payment("TX-8", "ORDER-X") is False


class TestPaymentQueries:
    """Lookups used by the bidirectional matcher"""

    @pytest.mark.asyncio
    async def test_unmatched_payments_within_tolerance(self, store):
        await store.save_payment(make_payment("TX-IN", "1005", "JUAN PEREZ"))
        await store.save_payment(make_payment("TX-OUT", "1050", "JUAN PEREZ"))
        await store.save_payment(make_payment("TX-BOUND", "1000", "JUAN PEREZ"))
        await store.match_payment("TX-BOUND", "ORDER-Z")

        payments = await store.find_unmatched_payments_by_amount(Decimal("1000"), Decimal("1"), 60)

        assert [payment.transaction_id for payment in payments] == ["TX-IN"]

    @pytest.mark.asyncio
    async def test_orders_awaiting_payment_exclude_bound_orders(self, store):
        await store.save_order(make_order("O-1", "1000", real_name="JUAN PEREZ"))
        await store.save_order(make_order("O-2", "1000", real_name="ANA RUIZ"))
        await store.save_order(make_order("O-3", "1000", status=OrderStatus.TRADING.value))
        await store.save_order(make_order("O-4", "2000", real_name="JUAN PEREZ"))
        await store.save_payment(make_payment("TX-O2", "1000", "ANA RUIZ"))
        await store.match_payment("TX-O2", "O-2")

        orders = await store.find_orders_awaiting_payment(Decimal("1005"))

        assert [order.order_number for order in orders] == ["O-1"]

    @pytest.mark.asyncio
    async def test_find_order_by_amount_and_name(self, store):
        await store.save_order(make_order("O-G", "500", real_name="MARIA GARCIA"))
        await store.save_order(make_order("O-T", "500", real_name="LUIS TORRES"))

        order = await store.find_order_by_amount_and_name(Decimal("500"), "LUIS TORRES RAMIREZ")
        assert order.order_number == "O-T"
        assert await store.find_order_by_amount_and_name(Decimal("500"), "PEDRO SANCHEZ") is None


class TestOrders:
    """Order mirror upserts"""

    @pytest.mark.asyncio
    async def test_save_order_keeps_known_identity(self, store):
        await store.save_order(make_order("O-K", "750", nickname="juanp", real_name="JUAN PEREZ", user_id="u-1"))
        await store.save_order(make_order("O-K", "750", status=OrderStatus.APPEALING.value))

        order = await store.get_order("O-K")
        assert order.status == OrderStatus.APPEALING.value
        assert order.buyer_real_name == "JUAN PEREZ"
        assert order.counterparty_user_id == "u-1"
        assert order.total_price == Decimal("750")

    @pytest.mark.asyncio
    async def test_missing_order_is_none(self, store):
        assert await store.get_order("NOPE") is None


class TestVerificationTimeline:
    """Steps are always appended; the recorded status never regresses"""

    @pytest.mark.asyncio
    async def test_lower_rank_step_is_appended_without_regressing(self, store):
        await store.save_order(make_order("O-V", "1000", real_name="JUAN PEREZ"))

        await store.append_verification_step("O-V", VerificationStatus.READY_TO_RELEASE, "ready")
        recorded = await store.append_verification_step(
            "O-V", VerificationStatus.NAME_MISMATCH, "late mismatch", {"score": 0.1, "amount": Decimal("10")}
        )

        assert recorded == VerificationStatus.READY_TO_RELEASE
        assert await store.get_verification_status("O-V") == VerificationStatus.READY_TO_RELEASE

        timeline = await store.get_verification_timeline("O-V")
        assert [step["status"] for step in timeline] == ["READY_TO_RELEASE", "NAME_MISMATCH"]
        assert timeline[1]["details"] == {"score": 0.1, "amount": "10"}

    @pytest.mark.asyncio
    async def test_released_always_recorded(self, store):
        await store.save_order(make_order("O-R", "1000"))
        await store.append_verification_step("O-R", VerificationStatus.MANUAL_REVIEW, "review")
        await store.append_verification_step("O-R", VerificationStatus.RELEASED, "released")

        assert await store.get_verification_status("O-R") == VerificationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_steps_for_unknown_order_are_still_kept(self, store):
        recorded = await store.append_verification_step("O-UNKNOWN", VerificationStatus.BUYER_MARKED_PAID, "paid")

        assert recorded == VerificationStatus.BUYER_MARKED_PAID
        assert len(await store.get_verification_timeline("O-UNKNOWN")) == 1
        assert await store.get_verification_status("O-UNKNOWN") is None


class TestTrustedBuyersAndAlerts:
    """Operator-managed trust list and alert acknowledgement"""

    @pytest.mark.asyncio
    async def test_trusted_buyer_by_user_id(self, store):
        await store.add_trusted_buyer("u-42", "carlos", notes="long-time buyer")

        assert await store.is_trusted_buyer("u-42") is True
        assert await store.is_trusted_buyer("u-43") is False
        assert await store.is_trusted_buyer(None) is False
        assert await store.increment_trusted_stats("u-42", Decimal("1500")) is True
        assert await store.increment_trusted_stats("u-43", Decimal("1500")) is False

    @pytest.mark.asyncio
    async def test_acknowledged_alerts_are_hidden(self, store):
        alert_id = await store.create_alert(
            "third_party_payment", AlertSeverity.WARNING, "Possible third-party payment", "details",
            metadata={"amount": Decimal("500")},
        )
        alerts = await store.get_unacknowledged_alerts()
        assert alerts[0]["metadata"] == {"amount": "500"}

        assert await store.acknowledge_alert(alert_id, "operator") is True
        assert await store.get_unacknowledged_alerts() == []
