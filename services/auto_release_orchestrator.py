"""
Auto-Release Orchestrator
Reconciles order, bank payment and receipt signals per order and releases
escrowed crypto only when every gate passes.

Signals arrive in any order (payment before or after the buyer marks paid,
receipts at any time), so each order carries one PendingRelease record that
every handler updates before re-running the readiness gates.

Concurrency: everything runs on one asyncio loop. The per-order guards
(_matching, _last_check, _logged_block_reasons) and the release queue are
plain dicts/sets/lists mutated between awaits, relying on non-preemptive
scheduling. A single drain loop (_processing flag) executes releases one at
a time; a failed attempt waits for the next 2FA window in its own task so
other queued releases are not held up.

Store writes for the audit timeline are best-effort: a failed write is
logged and never changes a release decision.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config import AutoReleaseConfig
from models import AlertSeverity, MatchMethod, OrderStatus, PaymentStatus, VerificationStatus
from services.buyer_risk_assessor import BuyerRiskAssessment, BuyerRiskAssessor
from services.events import (
    BankPaymentPayload, ChatEvent, ChatEventType, ChatImage, OrderEvent, OrderEventType,
    OrderMatch, OrderSnapshot, PaymentEvent, PaymentEventType, ReleaseEvent, ReleaseEventType,
)
from services.exchange_client import VerificationCodeProvider
from services.order_lifecycle import OrderLifecycleSource
from services.payment_ingestion import PaymentIngestionSource
from services.payment_matching import (
    NAME_MATCH_THRESHOLD, amount_tolerance, amounts_match, compare_names,
    select_best_order, select_best_payment,
)
from services.receipt_verifier import ReceiptVerification, ReceiptVerifier
from services.reconciliation_store import ReconciliationStore
from utils.background_task_runner import BackgroundTaskRunner
from utils.exceptions import ConfigurationError, DoubleSpendAttempt, ReleaseExecutionFailure

logger = logging.getLogger(__name__)

ReleaseListener = Callable[[ReleaseEvent], Awaitable[None]]


@dataclass
class PendingRelease:
    """In-flight verification state for one order"""

    order: OrderSnapshot
    bank_match: Optional[OrderMatch] = None
    amount_verified: bool = False
    name_verified: bool = False
    name_score: float = 0.0
    ocr_verified: bool = False
    ocr_confidence: float = 0.0
    receipt_url: Optional[str] = None
    queued_at: datetime = field(default_factory=datetime.utcnow)
    attempts: int = 0
    risk_assessment: Optional[BuyerRiskAssessment] = None
    manually_approved: bool = False
    match_method: MatchMethod = MatchMethod.BANK_WEBHOOK

    @property
    def order_number(self) -> str:
        return self.order.order_number

    @property
    def transaction_id(self) -> str:
        return self.bank_match.transaction_id if self.bank_match else ""

    @property
    def risk_failed(self) -> bool:
        return self.risk_assessment is not None and not self.risk_assessment.is_trusted


class AutoReleaseOrchestrator:
    """Per-order verification state machine plus the release queue"""

    def __init__(
        self,
        order_source: OrderLifecycleSource,
        payment_source: Optional[PaymentIngestionSource],
        store: ReconciliationStore,
        config: Optional[AutoReleaseConfig] = None,
        risk_assessor: Optional[BuyerRiskAssessor] = None,
        receipt_verifier: Optional[ReceiptVerifier] = None,
        code_provider: Optional[VerificationCodeProvider] = None,
        task_runner: Optional[BackgroundTaskRunner] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.order_source = order_source
        self.payment_source = payment_source
        self.store = store
        self.config = config or AutoReleaseConfig()
        self.risk_assessor = risk_assessor
        self.receipt_verifier = receipt_verifier
        self.code_provider = code_provider
        self.task_runner = task_runner or BackgroundTaskRunner()
        self._sleep = sleep
        self._clock = clock

        self._pending: Dict[str, PendingRelease] = {}
        self._release_queue: List[str] = []
        self._processing = False
        self._executing: Optional[str] = None
        self._last_check: Dict[str, float] = {}
        self._logged_block_reasons: Dict[str, str] = {}
        self._matching: Set[str] = set()
        self._listeners: List[ReleaseListener] = []
        self._released_count = 0
        self._failed_count = 0

        order_source.subscribe(self.handle_order_event)
        if payment_source is not None:
            payment_source.subscribe(self.handle_payment_event)

        logger.info(
            f"🤖 AUTO_RELEASE_INIT: enabled={self.config.enable_auto_release}, "
            f"max_amount={self.config.max_auto_release_amount}, "
            f"ocr_required={self.config.require_ocr_verification}, "
            f"risk_check={self.config.enable_buyer_risk_check}"
        )

    # ==================== EVENTS ====================

    def subscribe(self, listener: ReleaseListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, event_type: ReleaseEventType, order_number: str,
                    reason: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        event = ReleaseEvent(type=event_type, order_number=order_number, reason=reason, data=data or {})
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"❌ RELEASE_LISTENER_ERROR: {event_type.value} {order_number}: {e}", exc_info=True)

    async def handle_order_event(self, event: OrderEvent) -> None:
        order_number = event.order.order_number

        if event.type == OrderEventType.NEW:
            logger.debug(f"Watching new order {order_number}")
        elif event.type == OrderEventType.PAID:
            await self.start_verification(event.order)
        elif event.type == OrderEventType.MATCHED:
            if event.match:
                await self.handle_payment_match(event.order, event.match)
        elif event.type in (OrderEventType.RELEASED, OrderEventType.CANCELLED):
            self._purge(order_number)

    async def handle_payment_event(self, event: PaymentEvent) -> None:
        if event.type == PaymentEventType.PAYMENT:
            await self.handle_bank_payment(event.payload)
        elif event.type == PaymentEventType.REVERSAL:
            await self.handle_bank_reversal(event.payload)
        elif event.type == PaymentEventType.SYNC_MATCHED:
            await self.handle_sync_matched(event.payload, event.order)

    async def handle_chat_event(self, event: ChatEvent) -> None:
        if event.type == ChatEventType.IMAGE and event.message:
            await self.handle_receipt_image(event.message)

    # ==================== STORE HELPERS ====================

    async def _record_step(self, order_number: str, status: VerificationStatus, message: str,
                           details: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self.store.append_verification_step(order_number, status, message, details)
        except Exception as e:
            logger.warning(f"⚠️ STEP_NOT_RECORDED: {order_number} {status.value} - continuing: {e}")

    async def _alert(self, alert_type: str, severity: AlertSeverity, title: str, message: str,
                     order_number: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self.store.create_alert(alert_type, severity, title, message, order_number, metadata)
        except Exception as e:
            logger.error(f"❌ ALERT_NOT_RECORDED: {alert_type} {order_number}: {title} - {message} ({e})")

    async def _bind_payment(self, transaction_id: str, order_number: str, method: MatchMethod) -> bool:
        """
        Bind payment to order in the store

        An explicit rejection (already bound/released) is final. A store
        outage degrades to the in-memory match; execute_release binds the
        payment again (compare-and-swap) before any money moves.
        """
        try:
            return await self.store.match_payment(transaction_id, order_number, method)
        except Exception as e:
            logger.warning(f"⚠️ MATCH_NOT_PERSISTED: {transaction_id} -> {order_number} - continuing in memory: {e}")
            return True

    def _get_or_create_pending(self, order: OrderSnapshot) -> PendingRelease:
        pending = self._pending.get(order.order_number)
        if pending is None:
            pending = PendingRelease(order=order)
            self._pending[order.order_number] = pending
        else:
            # Keep KYC data already learned; take the freshest status/amount
            pending.order = order.merged_with(
                buyer_real_name=order.buyer_real_name or pending.order.buyer_real_name,
                counterparty_user_id=order.counterparty_user_id or pending.order.counterparty_user_id,
                counterparty_nickname=order.counterparty_nickname or pending.order.counterparty_nickname,
            )
        return pending

    # ==================== VERIFICATION ====================

    async def start_verification(self, order: OrderSnapshot) -> None:
        """Buyer marked the order paid: look for a payment that already arrived"""
        order_number = order.order_number
        logger.info(f"🔍 VERIFICATION_STARTED: {order_number} expecting {order.total_price} {order.fiat}")

        try:
            await self._record_step(
                order_number,
                VerificationStatus.BUYER_MARKED_PAID,
                "Buyer marked order as paid - awaiting bank confirmation",
                {"expected_amount": order.total_price, "buyer": order.buyer_display_name},
            )
            await self._emit(ReleaseEventType.VERIFICATION_STARTED, order_number)

            pending = self._get_or_create_pending(order)

            if pending.bank_match is None:
                await self._match_existing_payment(pending)
        except Exception as e:
            logger.error(f"❌ VERIFICATION_START_ERROR: {order_number} - continuing to readiness check: {e}", exc_info=True)
        finally:
            await self.check_ready_for_release(order_number)

    async def _match_existing_payment(self, pending: PendingRelease) -> None:
        """Bidirectional search: the bank payment arrived before the buyer marked paid"""
        order = pending.order
        try:
            payments = await self.store.find_unmatched_payments_by_amount(
                order.total_price,
                self.config.amount_tolerance_pct,
                self.config.payment_lookback_minutes,
            )
        except Exception as e:
            logger.warning(f"⚠️ PAYMENT_LOOKUP_FAILED: {order.order_number} - continuing: {e}")
            return

        best = select_best_payment(order, payments, self.config.amount_tolerance_pct)
        if best is None:
            if payments:
                logger.info(
                    f"🔍 NO_NAME_MATCH: {len(payments)} payment(s) of {order.total_price} found for "
                    f"{order.order_number} but no sender matches '{order.buyer_display_name}'"
                )
            return

        payment = best.item
        if not await self._bind_payment(payment.transaction_id, order.order_number, MatchMethod.BANK_WEBHOOK):
            return

        logger.info(
            f"✅ PAYMENT_ARRIVED_FIRST: {payment.transaction_id} -> order {order.order_number} "
            f"(score={best.score:.2f})"
        )
        await self._record_step(
            order.order_number,
            VerificationStatus.PAYMENT_MATCHED,
            "Bank payment linked (payment arrived first)",
            {
                "transaction_id": payment.transaction_id,
                "received_amount": payment.amount,
                "sender_name": payment.sender_name,
                "match_type": "payment_arrived_first",
            },
        )
        await self.handle_payment_match(order, self._build_match(order, payment))

    @staticmethod
    def _build_match(order: OrderSnapshot, payment: BankPaymentPayload) -> OrderMatch:
        return OrderMatch(
            order_number=order.order_number,
            transaction_id=payment.transaction_id,
            received_amount=Decimal(str(payment.amount)),
            expected_amount=Decimal(str(order.total_price)),
            sender_name=payment.sender_name,
            matched_at=datetime.utcnow(),
        )

    async def handle_bank_payment(self, payment: BankPaymentPayload) -> None:
        """New bank deposit: smart-match it against orders awaiting payment"""
        logger.info(
            f"💰 PROCESSING_BANK_PAYMENT: {payment.transaction_id} amount={payment.amount} "
            f"sender='{payment.sender_name}'"
        )

        try:
            is_new = await self.store.save_payment(payment)
            if not is_new:
                existing = await self.store.get_payment(payment.transaction_id)
                if existing and existing.status != PaymentStatus.PENDING.value:
                    logger.info(
                        f"🔁 PAYMENT_ALREADY_PROCESSED: {payment.transaction_id} status={existing.status}"
                    )
                    return
        except Exception as e:
            logger.warning(f"⚠️ PAYMENT_NOT_PERSISTED: {payment.transaction_id} - continuing: {e}")

        candidates = await self._awaiting_orders(payment)
        best = select_best_order(payment, candidates, self.config.amount_tolerance_pct)

        if best is None:
            if candidates:
                await self._flag_third_party(payment, candidates)
            else:
                logger.info(
                    f"📝 PAYMENT_WAITING: {payment.transaction_id} saved, waiting for an order to be marked paid"
                )
            return

        order = best.item
        if not await self._bind_payment(payment.transaction_id, order.order_number, MatchMethod.BANK_WEBHOOK):
            logger.warning(
                f"🚫 PAYMENT_NOT_BOUND: {payment.transaction_id} rejected by store for order {order.order_number}"
            )
            return

        await self._record_step(
            order.order_number,
            VerificationStatus.BANK_PAYMENT_RECEIVED,
            f"Bank payment received from {payment.sender_name}",
            {
                "transaction_id": payment.transaction_id,
                "received_amount": payment.amount,
                "sender_name": payment.sender_name,
            },
        )
        await self._record_step(
            order.order_number,
            VerificationStatus.PAYMENT_MATCHED,
            "Payment linked to order (order marked first)",
            {
                "transaction_id": payment.transaction_id,
                "received_amount": payment.amount,
                "expected_amount": order.total_price,
                "name_match": round(best.score, 2),
                "match_type": "order_marked_first",
            },
        )
        await self.handle_payment_match(order, self._build_match(order, payment))

    async def _awaiting_orders(self, payment: BankPaymentPayload) -> List[OrderSnapshot]:
        """Tracked and persisted orders that could still be funded by this payment"""
        candidates: Dict[str, OrderSnapshot] = {}

        for pending in self._pending.values():
            awaiting = pending.bank_match is None or not pending.name_verified
            if (awaiting and pending.order.status == OrderStatus.BUYER_PAYED.value
                    and pending.order_number not in self._release_queue
                    and pending.order_number != self._executing):
                candidates[pending.order_number] = pending.order

        try:
            for order in await self.store.find_orders_awaiting_payment(
                payment.amount, self.config.amount_tolerance_pct
            ):
                candidates.setdefault(order.order_number, order)
        except Exception as e:
            logger.warning(f"⚠️ ORDER_LOOKUP_FAILED: {payment.transaction_id} - using tracked orders only: {e}")

        return list(candidates.values())

    async def _flag_third_party(self, payment: BankPaymentPayload, candidates: List[OrderSnapshot]) -> None:
        """Amount matches open orders but the sender matches none of their buyers"""
        logger.warning(
            f"🚫 THIRD_PARTY_PAYMENT: {payment.transaction_id} from '{payment.sender_name}' "
            f"matches the amount of {len(candidates)} order(s) but no buyer"
        )
        try:
            await self.store.mark_payment_third_party(payment.transaction_id)
        except Exception as e:
            logger.warning(f"⚠️ THIRD_PARTY_NOT_PERSISTED: {payment.transaction_id}: {e}")

        await self._alert(
            "third_party_payment",
            AlertSeverity.WARNING,
            "Possible third-party payment",
            f"Payment {payment.transaction_id} of {payment.amount} from '{payment.sender_name}' "
            f"matches no counterparty",
            metadata={
                "transaction_id": payment.transaction_id,
                "amount": payment.amount,
                "sender_name": payment.sender_name,
                "candidate_orders": [order.order_number for order in candidates],
            },
        )

    async def handle_sync_matched(self, payment: BankPaymentPayload, order: Optional[OrderSnapshot]) -> None:
        """Externally linked payment/order pair: run the same verification as a normal match"""
        if order is None:
            try:
                order = await self.store.find_order_by_amount_and_name(
                    payment.amount, payment.sender_name, self.config.amount_tolerance_pct
                )
            except Exception as e:
                logger.warning(f"⚠️ ORDER_LOOKUP_FAILED: {payment.transaction_id}: {e}")
        if order is None:
            logger.warning(f"⚠️ SYNC_MATCH_WITHOUT_ORDER: {payment.transaction_id} ignored")
            return

        logger.info(f"🔄 SYNC_MATCHED: {payment.transaction_id} -> order {order.order_number}")
        if not await self._bind_payment(payment.transaction_id, order.order_number, MatchMethod.SYNC):
            logger.warning(
                f"🚫 SYNC_MATCH_REJECTED: {payment.transaction_id} cannot be bound to {order.order_number}"
            )
            return

        await self.handle_payment_match(order, self._build_match(order, payment), MatchMethod.SYNC)

    async def handle_payment_match(self, order: OrderSnapshot, match: OrderMatch,
                                   method: MatchMethod = MatchMethod.BANK_WEBHOOK) -> None:
        """
        Verify amount and name for a payment linked to an order

        name_verified is always written back and the readiness check always
        runs, even when a sub-step fails.
        """
        order_number = order.order_number
        if order_number in self._matching:
            logger.debug(f"Order {order_number} already being matched, skipping duplicate call")
            return
        self._matching.add(order_number)

        pending = self._get_or_create_pending(order)
        amount_ok = False
        name_ok = False
        score = 0.0

        try:
            pending.bank_match = match
            pending.match_method = method
            expected = match.expected_amount or pending.order.total_price
            difference = abs(Decimal(str(match.received_amount)) - Decimal(str(expected)))
            amount_ok = amounts_match(match.received_amount, expected, self.config.amount_tolerance_pct)

            if amount_ok:
                await self._record_step(
                    order_number,
                    VerificationStatus.AMOUNT_VERIFIED,
                    f"Amount verified: {match.received_amount} ~ {expected} (difference {difference})",
                    {"received_amount": match.received_amount, "expected_amount": expected, "difference": difference},
                )
            else:
                await self._record_step(
                    order_number,
                    VerificationStatus.AMOUNT_MISMATCH,
                    f"Amount mismatch: received {match.received_amount} vs expected {expected}",
                    {
                        "received_amount": match.received_amount,
                        "expected_amount": expected,
                        "difference": difference,
                        "tolerance": amount_tolerance(expected, self.config.amount_tolerance_pct),
                    },
                )

            if not pending.order.buyer_real_name:
                logger.info(f"🔍 NAME_CHECK: fetching order detail for {order_number} to get buyer real name")
                pending.order = await self.order_source.fetch_buyer_detail(pending.order)

            real_name = pending.order.buyer_real_name
            score = compare_names(match.sender_name, real_name) if real_name else 0.0
            name_ok = bool(real_name) and score > NAME_MATCH_THRESHOLD
            pending.name_score = score

            if not real_name:
                await self._record_step(
                    order_number,
                    VerificationStatus.NAME_MISMATCH,
                    "Buyer real name unavailable from exchange - manual verification required",
                    {"sender_name": match.sender_name, "reason": "real_name_not_available"},
                )
            elif name_ok:
                await self._record_step(
                    order_number,
                    VerificationStatus.NAME_VERIFIED,
                    f"Name verified: '{match.sender_name}' ~ '{real_name}' ({score:.0%})",
                    {"sender_name": match.sender_name, "buyer_real_name": real_name, "score": score},
                )
            else:
                await self._record_step(
                    order_number,
                    VerificationStatus.NAME_MISMATCH,
                    f"Name mismatch: bank sender '{match.sender_name}' vs buyer '{real_name}' ({score:.0%})",
                    {"sender_name": match.sender_name, "buyer_real_name": real_name, "score": score},
                )

            if amount_ok and name_ok and not pending.risk_failed:
                await self._record_step(
                    order_number,
                    VerificationStatus.READY_TO_RELEASE,
                    "Verification complete - all checks passed",
                    {"amount_verified": True, "name_verified": True, "recommendation": "RELEASE"},
                )
            else:
                await self._record_step(
                    order_number,
                    VerificationStatus.MANUAL_REVIEW,
                    "Manual review required",
                    {
                        "amount_verified": amount_ok,
                        "name_verified": name_ok,
                        "risk_failed": pending.risk_failed,
                        "recommendation": "MANUAL_REVIEW",
                    },
                )

            if not name_ok:
                # Free the payment for another order sharing the amount
                try:
                    await self.store.unmatch_payment(match.transaction_id)
                except Exception as e:
                    logger.warning(f"⚠️ UNMATCH_FAILED: {match.transaction_id}: {e}")
        except Exception as e:
            logger.error(
                f"❌ PAYMENT_MATCH_ERROR: {order_number} - will still check release status: {e}", exc_info=True
            )
        finally:
            pending.amount_verified = amount_ok
            pending.name_verified = name_ok
            logger.info(
                f"{'✅' if name_ok else '❌'} NAME_{'VERIFIED' if name_ok else 'NOT_VERIFIED'}: "
                f"order {order_number} sender='{match.sender_name}' score={score:.2f} amount_ok={amount_ok}"
            )
            self._matching.discard(order_number)
            await self.check_ready_for_release(order_number, force=True)

    async def handle_receipt_image(self, image: ChatImage) -> None:
        pending = self._pending.get(image.order_number)
        if pending is None:
            logger.debug(f"Receipt image for untracked order {image.order_number}")
            return

        logger.info(f"🧾 RECEIPT_RECEIVED: order {image.order_number} {image.image_url}")
        pending.receipt_url = image.image_url

        if self.config.require_ocr_verification:
            verification = await self._verify_receipt(pending, image.image_url)
            pending.ocr_verified = verification.verified
            pending.ocr_confidence = verification.confidence
        else:
            pending.ocr_verified = True
            pending.ocr_confidence = 0.5

        await self.check_ready_for_release(image.order_number, force=True)

    async def _verify_receipt(self, pending: PendingRelease, image_url: str) -> ReceiptVerification:
        if self.receipt_verifier is None:
            logger.warning(f"⚠️ OCR_NOT_CONFIGURED: cannot verify receipt for {pending.order_number}")
            return ReceiptVerification(verified=False, confidence=0.0, issues=["OCR not configured"])

        try:
            extraction = await self.receipt_verifier.extract(image_url)
        except Exception as e:
            logger.warning(f"⚠️ OCR_FAILED: {pending.order_number}: {e}")
            return ReceiptVerification(verified=False, confidence=0.0, issues=[f"OCR failed: {e}"])

        return self.receipt_verifier.verify(
            extraction, pending.order.total_price, pending.order.buyer_display_name
        )

    async def handle_bank_reversal(self, payment: BankPaymentPayload) -> None:
        """Charge-back: drop every order funded by this transaction"""
        logger.warning(f"🚨 BANK_REVERSAL: {payment.transaction_id} amount={payment.amount}")

        try:
            await self.store.mark_payment_reversed(payment.transaction_id)
        except Exception as e:
            logger.error(f"❌ REVERSAL_NOT_PERSISTED: {payment.transaction_id}: {e}")

        affected = [
            order_number for order_number, pending in self._pending.items()
            if pending.transaction_id == payment.transaction_id
        ]
        for order_number in affected:
            if order_number == self._executing:
                logger.critical(
                    f"🚨 REVERSAL_DURING_RELEASE: order {order_number} release already in flight - "
                    f"no further attempts will be made"
                )
            self._purge(order_number)
            logger.error(f"❌ RELEASE_DROPPED: order {order_number} removed due to bank reversal")
            await self._emit(
                ReleaseEventType.RELEASE_FAILED, order_number, reason="Bank reversal detected",
                data={"transaction_id": payment.transaction_id},
            )

    # ==================== READINESS ====================

    async def _block(self, order_number: str, reason_key: str, reason: str,
                     data: Optional[Dict[str, Any]] = None, notify: bool = True) -> None:
        """Log and report a blocking reason once per order"""
        if self._logged_block_reasons.get(order_number) == reason_key:
            return
        self._logged_block_reasons[order_number] = reason_key

        if notify:
            logger.warning(f"🚫 AUTO_RELEASE_BLOCKED: order {order_number}: {reason}")
            await self._emit(ReleaseEventType.MANUAL_REQUIRED, order_number, reason=reason, data=data)
        else:
            logger.info(f"⏳ AUTO_RELEASE_WAITING: order {order_number}: {reason}")

    async def _is_trusted(self, pending: PendingRelease) -> bool:
        user_id = pending.order.counterparty_user_id
        if not user_id:
            return False
        try:
            return await self.store.is_trusted_buyer(user_id)
        except Exception as e:
            logger.warning(f"⚠️ TRUSTED_LOOKUP_FAILED: user {user_id}: {e}")
            return False

    async def check_ready_for_release(self, order_number: str, force: bool = False) -> bool:
        """
        Run the release gates for an order

        Args:
            order_number: Order to evaluate
            force: Bypass the per-order throttle after a significant state change

        Returns:
            True when the order was queued for release
        """
        pending = self._pending.get(order_number)
        if pending is None:
            return False

        now = self._clock()
        last_check = self._last_check.get(order_number)
        if not force and last_check is not None and now - last_check < self.config.check_throttle_seconds:
            return False
        self._last_check[order_number] = now

        config = self.config
        amount = Decimal(str(pending.order.total_price))

        if not config.enable_auto_release:
            await self._block(order_number, "disabled", "Auto-release disabled")
            return False

        if amount > config.max_auto_release_amount:
            await self._block(
                order_number, "exceeds_limit",
                f"Amount {amount} exceeds auto-release limit {config.max_auto_release_amount}",
            )
            return False

        # With require_bank_match the buyer is only assessed once a payment is linked
        risk_due = not config.require_bank_match or pending.bank_match is not None

        if config.enable_buyer_risk_check and amount > config.skip_risk_check_threshold:
            if not risk_due:
                logger.debug(f"⏳ RISK_CHECK_DEFERRED: order {order_number} waiting for a bank match")
            elif await self._is_trusted(pending):
                logger.info(
                    f"⭐ TRUSTED_BUYER: order {order_number} user {pending.order.counterparty_user_id} "
                    f"skips risk check (name match still required)"
                )
            elif not await self._passes_risk_check(pending):
                return False
        elif config.enable_buyer_risk_check:
            logger.debug(f"💚 RISK_CHECK_SKIPPED: order {order_number} amount {amount} <= {config.skip_risk_check_threshold}")

        if not pending.transaction_id:
            await self._block(order_number, "awaiting_bank_payment", "No bank transaction matched yet", notify=False)
            return False

        if not pending.amount_verified and not pending.manually_approved:
            await self._block(
                order_number, "amount_mismatch",
                f"Bank amount {pending.bank_match.received_amount} does not match order amount {amount}",
            )
            return False

        if not pending.name_verified:
            await self._block(
                order_number, "name_not_verified",
                "Name verification failed - bank sender does not match buyer (possible third-party payment)",
                data={"transaction_id": pending.transaction_id, "score": pending.name_score},
            )
            return False

        if config.require_ocr_verification and not (
            pending.ocr_verified and pending.ocr_confidence >= config.min_confidence
        ):
            if pending.receipt_url:
                await self._block(
                    order_number, "ocr_not_verified",
                    f"Receipt not verified (confidence {pending.ocr_confidence:.0%} < {config.min_confidence:.0%})",
                )
            else:
                await self._block(order_number, "awaiting_receipt", "Waiting for payment receipt", notify=False)
            return False

        logger.info(f"✅ AUTO_RELEASE_READY: order {order_number} all conditions met, queueing for release")
        await self._emit(
            ReleaseEventType.VERIFICATION_COMPLETE, order_number,
            data={
                "transaction_id": pending.transaction_id,
                "ocr_verified": pending.ocr_verified,
                "confidence": pending.ocr_confidence,
                "name_verified": True,
            },
        )
        return await self.queue_for_release(order_number)

    async def _passes_risk_check(self, pending: PendingRelease) -> bool:
        order_number = pending.order_number

        if self.risk_assessor is None:
            await self._block(order_number, "risk_unavailable", "Buyer risk check enabled but no assessor configured")
            return False

        if pending.risk_assessment is None:
            try:
                pending.risk_assessment = await self.risk_assessor.assess_buyer_by_order(
                    order_number, pending.order.total_price
                )
            except Exception as e:
                logger.error(f"❌ RISK_ASSESSMENT_ERROR: order {order_number}: {e}", exc_info=True)
                await self._block(order_number, "risk_error", "Error during buyer risk assessment")
                return False

            assessment = pending.risk_assessment
            await self._record_step(
                order_number,
                self._risk_step_status(pending),
                "Buyer history meets trust criteria" if assessment.is_trusted
                else "Manual verification required - buyer does not meet trust criteria",
                assessment.to_dict(),
            )

        assessment = pending.risk_assessment
        if pending.risk_failed:
            await self._block(
                order_number, "risk_failed",
                f"Buyer risk assessment failed: {', '.join(assessment.failed_criteria)}",
                data={"risk_assessment": assessment.to_dict()},
            )
            return False
        return True

    @staticmethod
    def _risk_step_status(pending: PendingRelease) -> VerificationStatus:
        """
        Timeline status for the risk outcome

        READY_TO_RELEASE comes only from the amount/name outcome. A failed
        assessment on a matched payment routes to MANUAL_REVIEW; any other
        outcome is recorded at a rank that never advances the order.
        """
        if pending.bank_match is None:
            return VerificationStatus.AWAITING_PAYMENT
        if pending.risk_failed:
            return VerificationStatus.MANUAL_REVIEW
        return VerificationStatus.PAYMENT_MATCHED

    # ==================== RELEASE EXECUTION ====================

    async def queue_for_release(self, order_number: str) -> bool:
        """Idempotent enqueue; the drain starts after release_delay_ms"""
        if order_number in self._release_queue or order_number == self._executing:
            return False

        self._release_queue.append(order_number)
        pending = self._pending.get(order_number)
        if pending is not None:
            pending.queued_at = datetime.utcnow()

        logger.info(f"📥 RELEASE_QUEUED: order {order_number} (position {len(self._release_queue)})")
        await self._emit(ReleaseEventType.RELEASE_QUEUED, order_number)

        self.task_runner.run(self._drain_after_delay(), name=f"release_drain_{order_number}")
        return True

    async def _drain_after_delay(self) -> None:
        if self.config.release_delay_ms > 0:
            await self._sleep(self.config.release_delay_ms / 1000)
        await self.process_release_queue()

    async def process_release_queue(self) -> None:
        """Single-flight drain: one release at a time, paced for exchange rate limits"""
        if self._processing or not self._release_queue:
            return

        self._processing = True
        try:
            while self._release_queue:
                order_number = self._release_queue.pop(0)
                self._executing = order_number
                try:
                    await self.execute_release(order_number)
                except Exception as e:
                    logger.error(f"❌ RELEASE_EXECUTION_ERROR: order {order_number}: {e}", exc_info=True)
                finally:
                    self._executing = None

                if self._release_queue and self.config.release_interval_seconds > 0:
                    await self._sleep(self.config.release_interval_seconds)
        finally:
            self._processing = False

    async def execute_release(self, order_number: str) -> None:
        pending = self._pending.get(order_number)
        if pending is None:
            logger.warning(f"⚠️ RELEASE_SKIPPED: order {order_number} no longer pending")
            return

        transaction_id = pending.transaction_id
        if not transaction_id:
            await self._block(order_number, "no_transaction", "Release requested without a bank transaction")
            return

        try:
            check = await self.store.is_already_released(transaction_id)
        except Exception as e:
            # Never release without a successful double-spend check
            pending.attempts += 1
            await self._handle_release_failure(pending, e)
            return

        if check.released:
            error = DoubleSpendAttempt(transaction_id, order_number, check.order_number)
            logger.critical(f"🚨 DOUBLE_SPEND_BLOCKED: {error}")
            await self._alert(
                "double_spend", AlertSeverity.CRITICAL, "Double-spend attempt blocked", str(error),
                order_number=order_number,
                metadata={"transaction_id": transaction_id, "released_order_number": check.order_number,
                          "released_at": check.at},
            )
            await self._emit(ReleaseEventType.RELEASE_FAILED, order_number, reason=str(error))
            self._purge(order_number)
            return

        current = self.order_source.get_order(order_number) or pending.order
        self.order_source.register_order_for_release(current, transaction_id)

        if current.status != OrderStatus.BUYER_PAYED.value:
            logger.warning(f"⚠️ RELEASE_SKIPPED: order {order_number} status is {current.status}")
            return

        # The payment must be bound to this order in the store before money moves
        method = MatchMethod.MANUAL if pending.manually_approved else pending.match_method
        try:
            bound = await self.store.match_payment(transaction_id, order_number, method)
        except Exception as e:
            pending.attempts += 1
            await self._handle_release_failure(pending, e)
            return

        if not bound:
            await self._reject_unbound_payment(pending)
            return

        pending.attempts += 1
        try:
            if self.code_provider is None:
                raise ConfigurationError("No verification code provider configured", order_number=order_number)

            code = await self.code_provider.next_code(order_number)
            released = await self.order_source.release_crypto(order_number, self.config.auth_type, code)
            if not released:
                raise ReleaseExecutionFailure("Release API call failed", order_number)
        except ConfigurationError as e:
            logger.error(f"❌ RELEASE_CONFIGURATION_ERROR: order {order_number}: {e}")
            await self._escalate(pending, str(e))
            return
        except Exception as e:
            await self._handle_release_failure(pending, e)
            return

        await self._on_release_success(pending, transaction_id)

    async def _reject_unbound_payment(self, pending: PendingRelease) -> None:
        """Payment is released, reversed, flagged or bound to another order: never release"""
        order_number = pending.order_number
        transaction_id = pending.transaction_id
        reason = f"Payment {transaction_id} cannot be bound to order {order_number}"
        logger.critical(f"🚨 RELEASE_BIND_REJECTED: {reason}")

        self._failed_count += 1
        await self._alert(
            "release_bind_rejected", AlertSeverity.CRITICAL, "Release blocked: payment not bound to order",
            reason, order_number=order_number, metadata={"transaction_id": transaction_id},
        )
        await self._emit(ReleaseEventType.RELEASE_FAILED, order_number, reason=reason)
        await self._emit(
            ReleaseEventType.MANUAL_REQUIRED, order_number, reason=reason,
            data={"transaction_id": transaction_id},
        )
        self._purge(order_number)

    async def _on_release_success(self, pending: PendingRelease, transaction_id: str) -> None:
        order_number = pending.order_number
        order = pending.order
        logger.info(f"🎉 RELEASE_SUCCESS: order {order_number} {order.total_price} {order.fiat} ({order.asset})")

        try:
            marked = await self.store.mark_payment_released(transaction_id, order_number)
        except Exception as e:
            marked = None
            logger.error(f"❌ RELEASE_NOT_PERSISTED: {transaction_id} order {order_number}: {e}")

        if marked is False:
            await self._alert(
                "release_mark_conflict", AlertSeverity.CRITICAL, "Released payment was not bound to order",
                f"Crypto released for order {order_number} but payment {transaction_id} could not be marked released",
                order_number=order_number, metadata={"transaction_id": transaction_id},
            )

        await self._record_step(
            order_number, VerificationStatus.RELEASED, "Crypto released automatically",
            {"transaction_id": transaction_id, "attempts": pending.attempts},
        )

        user_id = order.counterparty_user_id
        if user_id and await self._is_trusted(pending):
            try:
                await self.store.increment_trusted_stats(user_id, order.total_price)
                logger.info(f"⭐ TRUSTED_BUYER_STATS: user {user_id} auto-released {order.total_price}")
            except Exception as e:
                logger.warning(f"⚠️ TRUSTED_STATS_FAILED: user {user_id}: {e}")

        self._released_count += 1
        await self._emit(
            ReleaseEventType.RELEASE_SUCCESS, order_number,
            data={"amount": order.total_price, "asset": order.asset, "transaction_id": transaction_id},
        )
        self._purge(order_number)

    async def _handle_release_failure(self, pending: PendingRelease, error: Exception) -> None:
        order_number = pending.order_number
        logger.error(f"❌ RELEASE_FAILED: order {order_number} attempt {pending.attempts}: {error}")

        still_pending = self._pending.get(order_number) is pending
        if still_pending and pending.attempts < self.config.max_release_attempts:
            self.task_runner.run(self._retry_after_code_window(pending), name=f"release_retry_{order_number}")
            return

        if still_pending:
            await self._escalate(pending, str(error) or type(error).__name__)

    def _seconds_until_fresh_code(self) -> float:
        if self.code_provider is None:
            return 0.0
        return self.code_provider.seconds_until_fresh_code()

    async def _retry_after_code_window(self, pending: PendingRelease) -> None:
        """Wait for the next 2FA window off the drain loop, then queue the order again"""
        order_number = pending.order_number
        delay = self._seconds_until_fresh_code()
        if delay > 0:
            logger.info(
                f"🕐 RELEASE_RETRY_SCHEDULED: order {order_number} attempt {pending.attempts + 1} in {delay:.0f}s"
            )
            await self._sleep(delay)

        # Reversal, cancellation or a completed order purged it meanwhile
        if self._pending.get(order_number) is not pending:
            return
        if order_number in self._release_queue or order_number == self._executing:
            return

        self._release_queue.append(order_number)
        await self.process_release_queue()

    async def _escalate(self, pending: PendingRelease, reason: str) -> None:
        order_number = pending.order_number
        self._failed_count += 1
        await self._emit(ReleaseEventType.RELEASE_FAILED, order_number, reason=reason)
        await self._emit(
            ReleaseEventType.MANUAL_REQUIRED, order_number,
            reason="Max release attempts exceeded" if pending.attempts >= self.config.max_release_attempts else reason,
            data={"attempts": pending.attempts},
        )
        await self._alert(
            "release_failed", AlertSeverity.CRITICAL, "Automatic release failed",
            f"Order {order_number} could not be released after {pending.attempts} attempt(s): {reason}",
            order_number=order_number, metadata={"transaction_id": pending.transaction_id},
        )

    # ==================== MANUAL OPERATIONS ====================

    async def manual_approve(self, order_number: str) -> bool:
        """Operator override of the OCR and name checks; the double-spend guard still applies"""
        pending = self._pending.get(order_number)
        if pending is None:
            order = self.order_source.get_order(order_number)
            if order is None:
                try:
                    order = await self.store.get_order(order_number)
                except Exception as e:
                    logger.warning(f"⚠️ ORDER_LOOKUP_FAILED: {order_number}: {e}")
            if order is None:
                logger.warning(f"⚠️ MANUAL_APPROVE_UNKNOWN_ORDER: {order_number}")
                return False
            pending = self._get_or_create_pending(order)

        if pending.transaction_id:
            # A name mismatch returned the payment to PENDING; claim it again for this order
            try:
                bound = await self.store.match_payment(pending.transaction_id, order_number, MatchMethod.MANUAL)
            except Exception as e:
                logger.warning(
                    f"⚠️ MANUAL_BIND_DEFERRED: {pending.transaction_id} -> {order_number} - "
                    f"release re-binds before executing: {e}"
                )
                bound = True
            if not bound:
                logger.warning(
                    f"🚫 MANUAL_APPROVE_REJECTED: payment {pending.transaction_id} is no longer available "
                    f"for order {order_number}"
                )
                return False

        pending.ocr_verified = True
        pending.ocr_confidence = 1.0
        pending.name_verified = True
        pending.amount_verified = True
        pending.manually_approved = True
        self._logged_block_reasons.pop(order_number, None)

        await self._record_step(order_number, VerificationStatus.READY_TO_RELEASE, "Release approved manually")
        queued = await self.queue_for_release(order_number)
        logger.info(f"👤 MANUAL_RELEASE_APPROVED: order {order_number} (queued={queued})")
        return True

    def cancel_release(self, order_number: str) -> bool:
        was_tracked = order_number in self._pending or order_number in self._release_queue
        self._purge(order_number)
        logger.info(f"🛑 RELEASE_CANCELLED: order {order_number}")
        return was_tracked

    def update_config(self, **changes: Any) -> AutoReleaseConfig:
        self.config = self.config.with_changes(**changes)
        logger.info(f"🔧 AUTO_RELEASE_CONFIG_UPDATED: {changes}")
        return self.config

    def _purge(self, order_number: str) -> None:
        """Drop all per-order bookkeeping and any not-yet-executing queue entry"""
        self._pending.pop(order_number, None)
        self._last_check.pop(order_number, None)
        self._logged_block_reasons.pop(order_number, None)
        self._release_queue[:] = [queued for queued in self._release_queue if queued != order_number]

    # ==================== STATUS ====================

    def get_pending_releases(self) -> List[PendingRelease]:
        return list(self._pending.values())

    def get_release_queue(self) -> List[str]:
        return list(self._release_queue)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending_verification": len(self._pending),
            "queued_for_release": len(self._release_queue),
            "processing": self._processing,
            "executing": self._executing,
            "released": self._released_count,
            "failed": self._failed_count,
        }
