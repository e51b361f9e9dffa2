"""
Reconciliation Store
Durable record of orders, bank payments, verification timelines, trusted
buyers and alerts.

Double-spend protection lives here as compare-and-swap updates:
- match_payment only links a PENDING payment (or re-links to the same order)
- mark_payment_released only flips MATCHED -> RELEASED for the linked order
so a payment can be bound to, and released for, exactly one order.

All public methods are coroutines; the blocking SQLAlchemy work runs in a
worker thread via run_io_task. SQLAlchemy errors surface as TransientInfraError.
"""

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import (
    AlertSeverity, BankPayment, MatchMethod, OrderStatus, P2POrder, PaymentStatus,
    ReconciliationAlert, TrustedBuyer, VerificationStatus, VerificationStep,
)
from services.events import BankPaymentPayload, OrderSnapshot
from services.payment_matching import DEFAULT_AMOUNT_TOLERANCE_PCT, amount_tolerance, select_best_order
from services.verification_state import STATUS_EMOJI, advance_or_append, as_status
from utils.background_task_runner import run_io_task
from utils.exceptions import TransientInfraError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRecord:
    transaction_id: str
    amount: Decimal
    sender_name: str
    currency: str
    status: str
    matched_order_number: Optional[str] = None
    match_method: Optional[str] = None
    matched_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_payload(self) -> BankPaymentPayload:
        return BankPaymentPayload(
            transaction_id=self.transaction_id,
            amount=self.amount,
            sender_name=self.sender_name,
            currency=self.currency,
            timestamp=self.created_at,
        )


@dataclass(frozen=True)
class ReleaseCheck:
    """Result of a double-spend lookup"""

    released: bool
    order_number: Optional[str] = None
    at: Optional[datetime] = None


def _jsonable(value: Any) -> Any:
    """Make verification/alert details safe for a JSON column"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if hasattr(value, "value") and not isinstance(value, (str, int, float, bool)):
        return _jsonable(value.value)
    return value


def _transient(func: Callable) -> Callable:
    """Translate SQLAlchemy failures in a sync store operation into TransientInfraError"""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            with self._io_lock:
                return func(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"❌ STORE_ERROR: {func.__name__} failed: {e}")
            raise TransientInfraError(f"{func.__name__} failed: {e}") from e

    return wrapper


def _order_to_snapshot(row: P2POrder) -> OrderSnapshot:
    return OrderSnapshot(
        order_number=row.order_number,
        total_price=Decimal(str(row.total_price)),
        status=row.status,
        trade_type=row.trade_type,
        asset=row.asset,
        fiat=row.fiat,
        counterparty_nickname=row.counterparty_nickname or "",
        counterparty_user_id=row.counterparty_user_id,
        buyer_real_name=row.buyer_real_name,
        created_at=row.created_at,
    )


def _payment_to_record(row: BankPayment) -> PaymentRecord:
    return PaymentRecord(
        transaction_id=row.transaction_id,
        amount=Decimal(str(row.amount)),
        sender_name=row.sender_name or "",
        currency=row.currency,
        status=row.status,
        matched_order_number=row.matched_order_number,
        match_method=row.match_method,
        matched_at=row.matched_at,
        released_at=row.released_at,
        created_at=row.created_at,
    )


class ReconciliationStore:
    """SQLAlchemy-backed store used by the auto-release orchestrator"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        bind = session_factory.kw.get("bind")
        # SQLite shares a single connection across worker threads
        self._io_lock = threading.Lock() if bind is not None and bind.dialect.name == "sqlite" else nullcontext()

    # ==================== ORDERS ====================

    async def save_order(self, order: OrderSnapshot) -> None:
        await run_io_task(self._save_order_sync, order)

    @_transient
    def _save_order_sync(self, order: OrderSnapshot) -> None:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(P2POrder).where(P2POrder.order_number == order.order_number)
            ).scalar_one_or_none()

            if row is None:
                row = P2POrder(order_number=order.order_number, total_price=order.total_price)
                session.add(row)

            row.total_price = order.total_price
            row.trade_type = order.trade_type
            row.asset = order.asset
            row.fiat = order.fiat
            row.status = order.status
            # Never erase identity data learned earlier from order detail
            row.counterparty_nickname = order.counterparty_nickname or row.counterparty_nickname
            row.counterparty_user_id = order.counterparty_user_id or row.counterparty_user_id
            row.buyer_real_name = order.buyer_real_name or row.buyer_real_name

            now = datetime.utcnow()
            if order.status == OrderStatus.BUYER_PAYED.value and row.paid_at is None:
                row.paid_at = now
            if order.status == OrderStatus.COMPLETED.value and row.released_at is None:
                row.released_at = now

    async def get_order(self, order_number: str) -> Optional[OrderSnapshot]:
        return await run_io_task(self._get_order_sync, order_number)

    @_transient
    def _get_order_sync(self, order_number: str) -> Optional[OrderSnapshot]:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(P2POrder).where(P2POrder.order_number == order_number)
            ).scalar_one_or_none()
            return _order_to_snapshot(row) if row else None

    async def find_orders_awaiting_payment(
        self, amount, tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT
    ) -> List[OrderSnapshot]:
        """Orders marked paid, not released, without a bound payment, within tolerance of amount"""
        return await run_io_task(self._find_orders_awaiting_payment_sync, Decimal(str(amount)), tolerance_pct)

    @_transient
    def _find_orders_awaiting_payment_sync(self, amount: Decimal, tolerance_pct) -> List[OrderSnapshot]:
        tolerance = amount_tolerance(amount, tolerance_pct)
        already_bound = exists().where(
            and_(
                BankPayment.matched_order_number == P2POrder.order_number,
                BankPayment.status.in_([PaymentStatus.MATCHED.value, PaymentStatus.RELEASED.value]),
            )
        )
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(P2POrder)
                .where(
                    P2POrder.status == OrderStatus.BUYER_PAYED.value,
                    P2POrder.released_at.is_(None),
                    P2POrder.total_price.between(amount - tolerance, amount + tolerance),
                    ~already_bound,
                )
                .order_by(P2POrder.created_at.asc(), P2POrder.id.asc())
                .limit(10)
            ).scalars().all()
            return [_order_to_snapshot(row) for row in rows]

    async def find_order_by_amount_and_name(
        self, amount, sender_name: str, tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT
    ) -> Optional[OrderSnapshot]:
        """Smart match against persisted orders"""
        candidates = await self.find_orders_awaiting_payment(amount, tolerance_pct)
        lookup = BankPaymentPayload(transaction_id="lookup", amount=Decimal(str(amount)), sender_name=sender_name)
        best = select_best_order(lookup, candidates, tolerance_pct)
        return best.item if best else None

    # ==================== PAYMENTS ====================

    async def save_payment(self, payload: BankPaymentPayload,
                           status: PaymentStatus = PaymentStatus.PENDING) -> bool:
        """Persist a bank payment. Returns False when the transaction id was already recorded."""
        return await run_io_task(self._save_payment_sync, payload, status)

    @_transient
    def _save_payment_sync(self, payload: BankPaymentPayload, status: PaymentStatus) -> bool:
        try:
            with managed_session(self.session_factory) as session:
                session.add(BankPayment(
                    transaction_id=payload.transaction_id,
                    amount=payload.amount,
                    currency=payload.currency,
                    sender_name=payload.sender_name,
                    sender_account=payload.sender_account or None,
                    concept=payload.concept or None,
                    bank_reference=payload.bank_reference or None,
                    bank_timestamp=payload.timestamp,
                    status=status.value,
                ))
            logger.debug(f"Payment saved: {payload.transaction_id}")
            return True
        except IntegrityError:
            logger.info(f"🔁 PAYMENT_DUPLICATE: {payload.transaction_id} already recorded")
            return False

    async def get_payment(self, transaction_id: str) -> Optional[PaymentRecord]:
        return await run_io_task(self._get_payment_sync, transaction_id)

    @_transient
    def _get_payment_sync(self, transaction_id: str) -> Optional[PaymentRecord]:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(BankPayment).where(BankPayment.transaction_id == transaction_id)
            ).scalar_one_or_none()
            return _payment_to_record(row) if row else None

    async def find_unmatched_payments_by_amount(
        self, amount, tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT, max_age_minutes: int = 60
    ) -> List[BankPaymentPayload]:
        """Recent PENDING payments within tolerance of amount, newest first"""
        return await run_io_task(
            self._find_unmatched_payments_sync, Decimal(str(amount)), tolerance_pct, max_age_minutes
        )

    @_transient
    def _find_unmatched_payments_sync(self, amount: Decimal, tolerance_pct, max_age_minutes: int):
        tolerance = amount_tolerance(amount, tolerance_pct)
        since = datetime.utcnow() - timedelta(minutes=max_age_minutes)
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(BankPayment)
                .where(
                    BankPayment.status == PaymentStatus.PENDING.value,
                    BankPayment.amount.between(amount - tolerance, amount + tolerance),
                    BankPayment.created_at >= since,
                )
                .order_by(BankPayment.created_at.desc())
                .limit(10)
            ).scalars().all()
            return [_payment_to_record(row).to_payload() for row in rows]

    async def match_payment(self, transaction_id: str, order_number: str,
                            method: Union[MatchMethod, str] = MatchMethod.BANK_WEBHOOK) -> bool:
        """
        Bind a payment to an order

        Returns:
            False if the payment is unknown, already bound to another order,
            released, reversed or flagged; True otherwise.
        """
        method_value = method.value if isinstance(method, MatchMethod) else method
        return await run_io_task(self._match_payment_sync, transaction_id, order_number, method_value)

    @_transient
    def _match_payment_sync(self, transaction_id: str, order_number: str, method: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(BankPayment)
                .where(
                    BankPayment.transaction_id == transaction_id,
                    or_(
                        BankPayment.status == PaymentStatus.PENDING.value,
                        and_(
                            BankPayment.status == PaymentStatus.MATCHED.value,
                            BankPayment.matched_order_number == order_number,
                        ),
                    ),
                )
                .values(
                    status=PaymentStatus.MATCHED.value,
                    matched_order_number=order_number,
                    match_method=method,
                    matched_at=datetime.utcnow(),
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount == 1

        if matched:
            logger.info(f"🔗 PAYMENT_MATCHED: {transaction_id} -> order {order_number} via {method}")
        else:
            logger.warning(f"🚫 PAYMENT_MATCH_REJECTED: {transaction_id} cannot be bound to order {order_number}")
        return matched

    async def unmatch_payment(self, transaction_id: str) -> bool:
        """Return a MATCHED payment to PENDING so it can match another order"""
        return await run_io_task(self._unmatch_payment_sync, transaction_id)

    @_transient
    def _unmatch_payment_sync(self, transaction_id: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(BankPayment)
                .where(
                    BankPayment.transaction_id == transaction_id,
                    BankPayment.status == PaymentStatus.MATCHED.value,
                )
                .values(
                    status=PaymentStatus.PENDING.value,
                    matched_order_number=None,
                    match_method=None,
                    matched_at=None,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            unmatched = result.rowcount == 1

        if unmatched:
            logger.info(f"↩️ PAYMENT_UNMATCHED: {transaction_id} returned to PENDING")
        return unmatched

    async def is_already_released(self, transaction_id: str) -> ReleaseCheck:
        return await run_io_task(self._is_already_released_sync, transaction_id)

    @_transient
    def _is_already_released_sync(self, transaction_id: str) -> ReleaseCheck:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(BankPayment).where(BankPayment.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if row is None or row.status != PaymentStatus.RELEASED.value:
                return ReleaseCheck(released=False)
            return ReleaseCheck(released=True, order_number=row.matched_order_number, at=row.released_at)

    async def mark_payment_released(self, transaction_id: str, order_number: str) -> bool:
        """Atomically flip MATCHED -> RELEASED for the bound order and close the order"""
        return await run_io_task(self._mark_payment_released_sync, transaction_id, order_number)

    @_transient
    def _mark_payment_released_sync(self, transaction_id: str, order_number: str) -> bool:
        now = datetime.utcnow()
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(BankPayment)
                .where(
                    BankPayment.transaction_id == transaction_id,
                    BankPayment.status == PaymentStatus.MATCHED.value,
                    BankPayment.matched_order_number == order_number,
                )
                .values(status=PaymentStatus.RELEASED.value, released_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            session.execute(
                update(P2POrder)
                .where(P2POrder.order_number == order_number)
                .values(status=OrderStatus.COMPLETED.value, released_at=now)
                .execution_options(synchronize_session=False)
            )

        logger.info(f"✨ PAYMENT_RELEASED: {transaction_id} consumed by order {order_number}")
        return True

    async def mark_payment_reversed(self, transaction_id: str) -> Optional[str]:
        """
        Flag a reversed (charged back) payment

        Returns:
            The order number the payment was bound to, if any
        """
        matched_order = await run_io_task(self._mark_payment_reversed_sync, transaction_id)
        await self.create_alert(
            alert_type="reversal",
            severity=AlertSeverity.CRITICAL,
            title="Payment Reversal Detected",
            message=f"Bank transaction {transaction_id} was reversed",
            order_number=matched_order,
            metadata={"transaction_id": transaction_id},
        )
        return matched_order

    @_transient
    def _mark_payment_reversed_sync(self, transaction_id: str) -> Optional[str]:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(BankPayment).where(BankPayment.transaction_id == transaction_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            if row.status in (PaymentStatus.PENDING.value, PaymentStatus.MATCHED.value):
                row.status = PaymentStatus.REVERSED.value
                row.updated_at = datetime.utcnow()
            else:
                logger.critical(
                    f"🚨 REVERSAL_ON_{row.status}: transaction {transaction_id} "
                    f"(order {row.matched_order_number}) cannot transition to REVERSED"
                )
            return row.matched_order_number

    async def mark_payment_third_party(self, transaction_id: str) -> bool:
        return await run_io_task(self._mark_payment_third_party_sync, transaction_id)

    @_transient
    def _mark_payment_third_party_sync(self, transaction_id: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(BankPayment)
                .where(
                    BankPayment.transaction_id == transaction_id,
                    BankPayment.status == PaymentStatus.PENDING.value,
                )
                .values(status=PaymentStatus.THIRD_PARTY.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ==================== VERIFICATION TIMELINE ====================

    async def append_verification_step(
        self,
        order_number: str,
        status: VerificationStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> VerificationStatus:
        """Append a step to the order timeline; the recorded status never moves backward"""
        return await run_io_task(self._append_verification_step_sync, order_number, status, message, details)

    @_transient
    def _append_verification_step_sync(self, order_number, status, message, details) -> VerificationStatus:
        status = as_status(status)
        with managed_session(self.session_factory) as session:
            session.add(VerificationStep(
                order_number=order_number,
                status=status.value,
                message=message,
                details=_jsonable(details) if details else None,
            ))

            order = session.execute(
                select(P2POrder).where(P2POrder.order_number == order_number)
            ).scalar_one_or_none()

            recorded = status
            if order is not None:
                transition = advance_or_append(order.verification_status, status)
                recorded = transition.recorded
                if transition.advanced:
                    order.verification_status = recorded.value
                else:
                    logger.info(
                        f"📎 VERIFICATION_APPENDED: order {order_number} step {status.value} "
                        f"kept recorded status {recorded.value}"
                    )

        logger.info(f"{STATUS_EMOJI.get(status, '📋')} {order_number}: {message}")
        return recorded

    async def get_verification_timeline(self, order_number: str) -> List[Dict[str, Any]]:
        return await run_io_task(self._get_verification_timeline_sync, order_number)

    @_transient
    def _get_verification_timeline_sync(self, order_number: str) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(VerificationStep)
                .where(VerificationStep.order_number == order_number)
                .order_by(VerificationStep.id.asc())
            ).scalars().all()
            return [
                {
                    "timestamp": row.created_at,
                    "status": row.status,
                    "message": row.message,
                    "details": row.details or {},
                }
                for row in rows
            ]

    async def get_verification_status(self, order_number: str) -> Optional[VerificationStatus]:
        return await run_io_task(self._get_verification_status_sync, order_number)

    @_transient
    def _get_verification_status_sync(self, order_number: str) -> Optional[VerificationStatus]:
        with managed_session(self.session_factory) as session:
            value = session.execute(
                select(P2POrder.verification_status).where(P2POrder.order_number == order_number)
            ).scalar_one_or_none()
            return VerificationStatus(value) if value else None

    # ==================== TRUSTED BUYERS ====================

    async def is_trusted_buyer(self, counterparty_user_id: Optional[str]) -> bool:
        if not counterparty_user_id:
            return False
        return await run_io_task(self._is_trusted_buyer_sync, counterparty_user_id)

    @_transient
    def _is_trusted_buyer_sync(self, counterparty_user_id: str) -> bool:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(TrustedBuyer.id).where(
                    TrustedBuyer.counterparty_user_id == counterparty_user_id,
                    TrustedBuyer.is_active.is_(True),
                )
            ).first()
            return row is not None

    async def add_trusted_buyer(self, counterparty_user_id: str, nickname: str = "",
                                notes: Optional[str] = None) -> None:
        await run_io_task(self._add_trusted_buyer_sync, counterparty_user_id, nickname, notes)

    @_transient
    def _add_trusted_buyer_sync(self, counterparty_user_id: str, nickname: str, notes: Optional[str]) -> None:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(TrustedBuyer).where(TrustedBuyer.counterparty_user_id == counterparty_user_id)
            ).scalar_one_or_none()
            if row is None:
                session.add(TrustedBuyer(
                    counterparty_user_id=counterparty_user_id, nickname=nickname or None, notes=notes,
                ))
            else:
                row.is_active = True
                row.nickname = nickname or row.nickname
        logger.info(f"⭐ TRUSTED_BUYER_ADDED: user {counterparty_user_id} ({nickname or 'no nickname'})")

    async def increment_trusted_stats(self, counterparty_user_id: str, amount) -> bool:
        return await run_io_task(self._increment_trusted_stats_sync, counterparty_user_id, Decimal(str(amount)))

    @_transient
    def _increment_trusted_stats_sync(self, counterparty_user_id: str, amount: Decimal) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(TrustedBuyer)
                .where(TrustedBuyer.counterparty_user_id == counterparty_user_id)
                .values(
                    auto_released_count=TrustedBuyer.auto_released_count + 1,
                    auto_released_total=TrustedBuyer.auto_released_total + amount,
                    last_released_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ==================== ALERTS ====================

    async def create_alert(
        self,
        alert_type: str,
        severity: Union[AlertSeverity, str],
        title: str,
        message: str,
        order_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        severity_value = severity.value if isinstance(severity, AlertSeverity) else severity
        return await run_io_task(
            self._create_alert_sync, alert_type, severity_value, title, message, order_number, metadata
        )

    @_transient
    def _create_alert_sync(self, alert_type, severity, title, message, order_number, metadata) -> int:
        with managed_session(self.session_factory) as session:
            alert = ReconciliationAlert(
                alert_type=alert_type,
                severity=severity,
                title=title,
                message=message,
                order_number=order_number,
                alert_metadata=_jsonable(metadata) if metadata else None,
            )
            session.add(alert)
            session.flush()
            alert_id = alert.id

        log = logger.critical if severity == AlertSeverity.CRITICAL.value else logger.warning
        log(f"🚨 ALERT[{severity}] {alert_type}: {title} - {message}")
        return alert_id

    async def get_unacknowledged_alerts(self) -> List[Dict[str, Any]]:
        return await run_io_task(self._get_unacknowledged_alerts_sync)

    @_transient
    def _get_unacknowledged_alerts_sync(self) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(ReconciliationAlert)
                .where(ReconciliationAlert.acknowledged.is_(False))
                .order_by(ReconciliationAlert.created_at.desc())
            ).scalars().all()
            return [
                {
                    "id": row.id,
                    "type": row.alert_type,
                    "severity": row.severity,
                    "title": row.title,
                    "message": row.message,
                    "order_number": row.order_number,
                    "metadata": row.alert_metadata or {},
                    "created_at": row.created_at,
                }
                for row in rows
            ]

    async def acknowledge_alert(self, alert_id: int, acknowledged_by: str) -> bool:
        return await run_io_task(self._acknowledge_alert_sync, alert_id, acknowledged_by)

    @_transient
    def _acknowledge_alert_sync(self, alert_id: int, acknowledged_by: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(
                update(ReconciliationAlert)
                .where(ReconciliationAlert.id == alert_id)
                .values(acknowledged=True, acknowledged_by=acknowledged_by, acknowledged_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
