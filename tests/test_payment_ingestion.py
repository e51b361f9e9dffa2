"""
Tests for bank webhook parsing, signature validation and de-duplication
"""

import hashlib
import hmac
import json

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from services.events import PaymentEventType
from services.payment_ingestion import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    PaymentIngestionSource,
    normalize_status,
    parse_payload,
    validate_signature,
)

OPM_BODY = {
    "trackingKey": "OPM123456",
    "payerName": "BRIBIESCA/LOPEZ,SAIB",
    "amount": 1005.5,
    "payerAccount": "012180001234567890",
    "concept": "pago orden",
    "numericalReference": 1234567,
    "receivedTimestamp": 1714560000000,
}


def _sign(body: str, timestamp: str, secret: str) -> str:
    return hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()


class TestParsePayload:
    """Both webhook formats normalize to BankPaymentPayload"""

    def test_opm_format(self):
        payload, status = parse_payload(OPM_BODY)

        assert status == STATUS_COMPLETED
        assert payload.transaction_id == "OPM123456"
        assert payload.amount == Decimal("1005.5")
        assert payload.sender_name == "BRIBIESCA/LOPEZ,SAIB"
        assert payload.bank_reference == "1234567"
        assert payload.currency == "MXN"
        assert payload.timestamp.year == 2024

    def test_generic_format_with_spanish_keys(self):
        payload, status = parse_payload({
            "id": "SPEI-9",
            "monto": "250.00",
            "ordenante": "ANA RUIZ",
            "estado": "completado",
            "referencia": "REF-1",
            "fecha": "2024-05-01T10:00:00Z",
        })

        assert status == STATUS_COMPLETED
        assert payload.transaction_id == "SPEI-9"
        assert payload.amount == Decimal("250.00")
        assert payload.sender_name == "ANA RUIZ"
        assert payload.bank_reference == "REF-1"
        assert payload.timestamp.tzinfo is None

    def test_missing_transaction_or_amount_is_rejected(self):
        assert parse_payload({"amount": "100", "senderName": "X"}) is None
        assert parse_payload({"transactionId": "T-1", "amount": "0"}) is None
        assert parse_payload({"transactionId": "T-2", "amount": "abc"}) is None

    def test_status_aliases(self):
        assert normalize_status("SUCCESS") == STATUS_COMPLETED
        assert normalize_status("liquidado") == STATUS_COMPLETED
        assert normalize_status("pendiente") == STATUS_PENDING
        assert normalize_status("rechazado") == STATUS_FAILED
        assert normalize_status(None) == STATUS_FAILED


class TestSignature:
    """HMAC-SHA256 over timestamp.body with a five minute window"""

    def test_valid_signature(self):
        body = json.dumps(OPM_BODY)
        timestamp = "1714560000000"
        signature = _sign(body, timestamp, "s3cret")

        assert validate_signature(body, signature, timestamp, "s3cret", now=1714560100) is True

    def test_tampered_body_or_wrong_secret(self):
        body = json.dumps(OPM_BODY)
        timestamp = "1714560000000"
        signature = _sign(body, timestamp, "s3cret")

        assert validate_signature(body + " ", signature, timestamp, "s3cret", now=1714560000) is False
        assert validate_signature(body, signature, timestamp, "other", now=1714560000) is False

    def test_expired_timestamp(self):
        body = "{}"
        timestamp = "1714560000000"
        signature = _sign(body, timestamp, "s3cret")

        assert validate_signature(body, signature, timestamp, "s3cret", now=1714560000 + 301) is False

    def test_missing_parts(self):
        assert validate_signature("{}", "", "1714560000000", "s3cret") is False
        assert validate_signature("{}", "abc", "not-a-number", "s3cret") is False


class TestPaymentIngestionSource:
    """Ingestion emits one payment event per settled, unseen transaction"""

    @pytest.mark.asyncio
    async def test_completed_payment_is_emitted(self):
        source = PaymentIngestionSource()
        listener = AsyncMock()
        source.subscribe(listener)

        ack = await source.ingest(OPM_BODY)

        assert ack == {"status": "acknowledged", "transaction_id": "OPM123456", "payment_status": "completed"}
        event = listener.await_args.args[0]
        assert event.type == PaymentEventType.PAYMENT
        assert event.payload.transaction_id == "OPM123456"

    @pytest.mark.asyncio
    async def test_duplicate_within_window_is_ignored(self):
        now = [1000.0]
        source = PaymentIngestionSource(clock=lambda: now[0])
        listener = AsyncMock()
        source.subscribe(listener)

        await source.ingest(OPM_BODY)
        ack = await source.ingest(OPM_BODY)
        assert ack["duplicate"] is True
        assert listener.await_count == 1

        now[0] += 301
        await source.ingest(OPM_BODY)
        assert listener.await_count == 2

    @pytest.mark.asyncio
    async def test_pending_payment_is_not_emitted(self):
        source = PaymentIngestionSource()
        listener = AsyncMock()
        source.subscribe(listener)

        ack = await source.ingest({"transactionId": "T-P", "amount": "100", "status": "pending"})

        assert ack["payment_status"] == STATUS_PENDING
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self):
        source = PaymentIngestionSource(webhook_secret="s3cret")
        listener = AsyncMock()
        source.subscribe(listener)

        ack = await source.ingest(OPM_BODY, raw_body=json.dumps(OPM_BODY), signature="bad", timestamp="1")

        assert ack == {"status": "rejected", "reason": "invalid_signature"}
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_ingestion(self):
        source = PaymentIngestionSource()
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        source.subscribe(failing)
        source.subscribe(healthy)

        ack = await source.ingest(OPM_BODY)

        assert ack["status"] == "acknowledged"
        healthy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reversal_is_emitted(self):
        source = PaymentIngestionSource()
        listener = AsyncMock()
        source.subscribe(listener)

        await source.ingest_reversal({"transactionId": "T-R", "amount": "800"})

        event = listener.await_args.args[0]
        assert event.type == PaymentEventType.REVERSAL
        assert event.payload.transaction_id == "T-R"
