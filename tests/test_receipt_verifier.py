"""
Tests for receipt confidence scoring
"""

import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from services.receipt_verifier import ReceiptExtraction, ReceiptVerifier


class TestReceiptVerifier:
    """OCR confidence is scaled by the amount, name and date checks"""

    def test_matching_receipt_is_verified(self):
        verifier = ReceiptVerifier()
        extraction = ReceiptExtraction(
            confidence=0.8, amount=Decimal("1000"), sender_name="JUAN PEREZ LOPEZ", date=datetime(2024, 5, 1),
        )

        result = verifier.verify(extraction, Decimal("1000"), "PEREZ LOPEZ JUAN")

        assert result.verified is True
        assert result.confidence == 1.0
        assert result.issues == []

    def test_missing_amount_and_date(self):
        verifier = ReceiptVerifier()
        extraction = ReceiptExtraction(confidence=0.8)

        result = verifier.verify(extraction, Decimal("1000"))

        assert result.verified is False
        assert result.confidence == pytest.approx(0.8 * 0.7 * 0.9)
        assert len(result.issues) == 2

    def test_amount_mismatch_halves_confidence(self):
        verifier = ReceiptVerifier()
        extraction = ReceiptExtraction(confidence=0.9, amount=Decimal("500"), date=datetime(2024, 5, 1))

        result = verifier.verify(extraction, Decimal("1000"))

        assert result.verified is False
        assert result.confidence == pytest.approx(0.45)
        assert result.issues[-1] == "Amount mismatch: expected 1000, found 500"

    def test_name_mismatch_is_a_single_tolerated_issue(self):
        verifier = ReceiptVerifier()
        extraction = ReceiptExtraction(
            confidence=0.9, amount=Decimal("1000"), sender_name="PEDRO SANCHEZ", date=datetime(2024, 5, 1),
        )

        result = verifier.verify(extraction, Decimal("1000"), "MARIA GARCIA")

        assert result.confidence == pytest.approx(0.9 * 1.2 * 0.8)
        assert result.verified is True
        assert len(result.issues) == 1

    def test_low_ocr_confidence_is_reported(self):
        verifier = ReceiptVerifier(min_confidence=0.9)
        extraction = ReceiptExtraction(confidence=0.5, amount=Decimal("1000"), date=datetime(2024, 5, 1))

        result = verifier.verify(extraction, Decimal("1000"))

        assert result.verified is False
        assert result.issues == ["Low OCR confidence: 50%"]

    @pytest.mark.asyncio
    async def test_extract_without_backend_has_zero_confidence(self):
        extraction = await ReceiptVerifier().extract("https://example.com/receipt.jpg")
        assert extraction.confidence == 0.0

    @pytest.mark.asyncio
    async def test_extract_delegates_to_backend(self):
        backend = MagicMock()
        backend.extract = AsyncMock(return_value=ReceiptExtraction(confidence=0.95))

        extraction = await ReceiptVerifier(backend).extract("https://example.com/receipt.jpg")

        assert extraction.confidence == 0.95
        backend.extract.assert_awaited_once_with("https://example.com/receipt.jpg")
