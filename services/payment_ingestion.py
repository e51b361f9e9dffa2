"""
Payment Ingestion Source
Normalizes bank transfer notifications (OPM core-banking format and the
generic/legacy formats) into BankPaymentPayload and emits PaymentEvents.

The HTTP endpoint that receives the webhook is not part of this package; it
hands the raw body and signature headers to ``ingest``.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

from services.events import BankPaymentPayload, OrderSnapshot, PaymentEvent, PaymentEventType

logger = logging.getLogger(__name__)

PaymentListener = Callable[[PaymentEvent], Awaitable[None]]

DUPLICATE_WINDOW_SECONDS = 300
SIGNATURE_MAX_SKEW_SECONDS = 300

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"

_COMPLETED_ALIASES = {"completed", "completado", "success", "exitoso", "liquidado"}
_PENDING_ALIASES = {"pending", "pendiente", "processing", "en_proceso"}


def normalize_status(status: Optional[str]) -> str:
    value = (status or "").lower().strip()
    if value in _COMPLETED_ALIASES:
        return STATUS_COMPLETED
    if value in _PENDING_ALIASES:
        return STATUS_PENDING
    return STATUS_FAILED


def _parse_amount(raw: Any) -> Decimal:
    try:
        return Decimal(str(raw if raw not in (None, "") else "0"))
    except InvalidOperation:
        return Decimal("0")


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, (int, float)):
        # Epoch milliseconds from the bank core
        return datetime.utcfromtimestamp(raw / 1000 if raw > 1e11 else raw)
    if isinstance(raw, str) and raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            logger.debug(f"Unparseable payment timestamp {raw!r} - using receive time")
    return datetime.utcnow()


def parse_payload(body: Dict[str, Any]) -> Optional[tuple]:
    """
    Parse a webhook body

    Returns:
        (BankPaymentPayload, normalized status) or None when required fields
        are missing
    """
    if body.get("trackingKey") and body.get("payerName"):
        payload = BankPaymentPayload(
            transaction_id=str(body["trackingKey"]),
            amount=_parse_amount(body.get("amount")),
            sender_name=body.get("payerName") or "",
            currency="MXN",
            timestamp=_parse_timestamp(body.get("receivedTimestamp")),
            sender_account=body.get("payerAccount") or "",
            concept=body.get("concept") or "",
            bank_reference=str(body.get("numericalReference") or ""),
        )
        # OPM notifications are always settled deposits
        status = STATUS_COMPLETED
    else:
        transaction_id = body.get("transactionId") or body.get("transaction_id") or body.get("id")
        payload = BankPaymentPayload(
            transaction_id=str(transaction_id or ""),
            amount=_parse_amount(body.get("amount") or body.get("monto")),
            sender_name=body.get("senderName") or body.get("sender_name") or body.get("ordenante") or "",
            currency=body.get("currency") or body.get("moneda") or "MXN",
            timestamp=_parse_timestamp(body.get("timestamp") or body.get("fecha")),
            sender_account=body.get("senderAccount") or body.get("sender_account") or body.get("cuenta_origen") or "",
            concept=body.get("concept") or body.get("concepto") or body.get("description") or "",
            bank_reference=body.get("bankReference") or body.get("bank_reference") or body.get("referencia") or "",
        )
        status = normalize_status(body.get("status") or body.get("estado"))

    if not payload.transaction_id or payload.amount <= 0:
        logger.warning(f"⚠️ PAYMENT_PAYLOAD_INVALID: missing transaction id or amount in {body}")
        return None
    return payload, status


def validate_signature(raw_body: str, signature: str, timestamp: str, secret: str,
                       now: Optional[float] = None) -> bool:
    """HMAC-SHA256 over '<timestamp>.<body>' with a 5 minute replay window"""
    if not signature or not timestamp or not secret:
        return False

    try:
        sent_at = int(timestamp) / 1000
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > SIGNATURE_MAX_SKEW_SECONDS:
        logger.warning(f"⚠️ WEBHOOK_TIMESTAMP_EXPIRED: {timestamp}")
        return False

    expected = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{raw_body}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(signature, expected)


class PaymentIngestionSource:
    """Turns bank notifications into PaymentEvents for subscribed listeners"""

    def __init__(self, webhook_secret: str = "", clock: Callable[[], float] = time.monotonic):
        self.webhook_secret = webhook_secret
        self._clock = clock
        self._listeners: List[PaymentListener] = []
        self._recent: Dict[str, float] = {}

    def subscribe(self, listener: PaymentListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, event: PaymentEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"❌ PAYMENT_LISTENER_ERROR: {event.type.value} {event.payload.transaction_id}: {e}",
                    exc_info=True,
                )

    def _is_duplicate(self, transaction_id: str) -> bool:
        now = self._clock()
        for seen_id, seen_at in list(self._recent.items()):
            if now - seen_at > DUPLICATE_WINDOW_SECONDS:
                del self._recent[seen_id]
        if transaction_id in self._recent:
            return True
        self._recent[transaction_id] = now
        return False

    async def ingest(self, body: Dict[str, Any], raw_body: Optional[str] = None,
                     signature: str = "", timestamp: str = "") -> Dict[str, Any]:
        """
        Process one deposit notification

        Returns:
            Acknowledgement dict for the HTTP layer
        """
        if self.webhook_secret and not validate_signature(raw_body or "", signature, timestamp, self.webhook_secret):
            logger.warning("🚫 WEBHOOK_SIGNATURE_INVALID: deposit notification rejected")
            return {"status": "rejected", "reason": "invalid_signature"}

        parsed = parse_payload(body)
        if parsed is None:
            return {"status": "rejected", "reason": "invalid_payload"}
        payload, status = parsed

        if self._is_duplicate(payload.transaction_id):
            logger.warning(f"🔁 PAYMENT_DUPLICATE_IGNORED: {payload.transaction_id}")
            return {"status": "acknowledged", "duplicate": True, "transaction_id": payload.transaction_id}

        logger.info(
            f"💰 BANK_PAYMENT_RECEIVED: {payload.transaction_id} amount={payload.amount} "
            f"sender='{payload.sender_name}' status={status}"
        )

        # Only settled deposits can fund a release
        if status == STATUS_COMPLETED:
            await self.emit_payment(payload)
        return {"status": "acknowledged", "transaction_id": payload.transaction_id, "payment_status": status}

    async def ingest_reversal(self, body: Dict[str, Any], raw_body: Optional[str] = None,
                              signature: str = "", timestamp: str = "") -> Dict[str, Any]:
        if self.webhook_secret and not validate_signature(raw_body or "", signature, timestamp, self.webhook_secret):
            logger.warning("🚫 WEBHOOK_SIGNATURE_INVALID: reversal notification rejected")
            return {"status": "rejected", "reason": "invalid_signature"}

        parsed = parse_payload(body)
        if parsed is None:
            return {"status": "rejected", "reason": "invalid_payload"}
        payload, _ = parsed

        logger.warning(f"🚨 BANK_REVERSAL_RECEIVED: {payload.transaction_id} amount={payload.amount}")
        await self.emit_reversal(payload)
        return {"status": "acknowledged", "transaction_id": payload.transaction_id}

    async def emit_payment(self, payload: BankPaymentPayload) -> None:
        await self._emit(PaymentEvent(type=PaymentEventType.PAYMENT, payload=payload))

    async def emit_reversal(self, payload: BankPaymentPayload) -> None:
        await self._emit(PaymentEvent(type=PaymentEventType.REVERSAL, payload=payload))

    async def emit_sync_matched(self, payload: BankPaymentPayload, order: OrderSnapshot) -> None:
        """An operator or sync job linked payment and order outside the webhook flow"""
        await self._emit(PaymentEvent(type=PaymentEventType.SYNC_MATCHED, payload=payload, order=order))
