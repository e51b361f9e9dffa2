"""
Receipt Verifier
Scores an OCR extraction of a payment receipt against the order it claims
to pay. Text extraction itself is an external collaborator (ReceiptExtractor).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol

from services.payment_matching import DEFAULT_AMOUNT_TOLERANCE_PCT, amounts_match, names_match

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiptExtraction:
    """Fields read from a receipt image"""

    confidence: float
    amount: Optional[Decimal] = None
    sender_name: Optional[str] = None
    date: Optional[datetime] = None
    reference: Optional[str] = None
    raw_text: str = ""


@dataclass(frozen=True)
class ReceiptVerification:
    verified: bool
    confidence: float
    issues: List[str] = field(default_factory=list)


class ReceiptExtractor(Protocol):
    """OCR backend turning a receipt image URL into structured fields"""

    async def extract(self, image_url: str) -> ReceiptExtraction:
        ...


class ReceiptVerifier:
    """Confidence scoring for receipt extractions"""

    def __init__(self, extractor: Optional[ReceiptExtractor] = None, min_confidence: float = 0.7,
                 tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT):
        self.extractor = extractor
        self.min_confidence = min_confidence
        self.tolerance_pct = tolerance_pct

    async def extract(self, image_url: str) -> ReceiptExtraction:
        if self.extractor is None:
            logger.warning(f"⚠️ OCR_UNAVAILABLE: no extractor configured for {image_url}")
            return ReceiptExtraction(confidence=0.0)
        return await self.extractor.extract(image_url)

    def verify(
        self,
        result: ReceiptExtraction,
        expected_amount,
        expected_name: Optional[str] = None,
    ) -> ReceiptVerification:
        """
        Check an extraction against the expected amount and payer name

        Confidence starts at the OCR confidence and is scaled by each check:
        amount mismatch x0.5, amount match x1.2, missing amount x0.7,
        name mismatch x0.8, name match x1.1, missing date x0.9; capped at 1.0.
        Verified when the final confidence reaches min_confidence with at
        most one issue.
        """
        issues: List[str] = []
        confidence = float(result.confidence)

        if confidence < self.min_confidence:
            issues.append(f"Low OCR confidence: {confidence:.0%}")

        if result.amount is not None:
            if amounts_match(result.amount, expected_amount, self.tolerance_pct):
                confidence *= 1.2
            else:
                issues.append(f"Amount mismatch: expected {expected_amount}, found {result.amount}")
                confidence *= 0.5
        else:
            issues.append("Could not extract amount from receipt")
            confidence *= 0.7

        if expected_name and result.sender_name:
            if names_match(result.sender_name, expected_name):
                confidence *= 1.1
            else:
                issues.append(f"Name mismatch: expected '{expected_name}', found '{result.sender_name}'")
                confidence *= 0.8

        if result.date is None:
            issues.append("Could not extract date from receipt")
            confidence *= 0.9

        confidence = min(confidence, 1.0)
        verified = confidence >= self.min_confidence and len(issues) <= 1

        logger.info(
            f"🧾 RECEIPT_VERIFICATION: verified={verified}, confidence={confidence:.2f}, "
            f"expected={expected_amount}, found={result.amount}, issues={issues}"
        )
        return ReceiptVerification(verified=verified, confidence=confidence, issues=issues)
