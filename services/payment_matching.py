"""
Payment Matching
Amount tolerance and bank-sender / buyer name similarity used to link
bank payments to P2P orders.

Smart match: several open orders can share the same amount, so a payment is
only linked to the single best-scoring candidate above the name threshold.
That keeps a payment from oscillating between same-amount orders.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

from services.events import BankPaymentPayload, OrderSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

NAME_MATCH_THRESHOLD = 0.3
DEFAULT_AMOUNT_TOLERANCE_PCT = Decimal("1")

_SEPARATORS = re.compile(r"[,/.\-_|]")
_DISALLOWED = re.compile(r"[^a-z0-9áéíóúüñ\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, turn separators into spaces, keep alphanumerics and Spanish diacritics"""
    if not name:
        return ""
    lowered = name.lower()
    lowered = _SEPARATORS.sub(" ", lowered)
    lowered = _DISALLOWED.sub("", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def compare_names(name_a: Optional[str], name_b: Optional[str]) -> float:
    """
    Similarity score between two person names

    Returns:
        1.0 for identical names, 0.8 when one contains the other, otherwise the
        ratio of shared words (longer than 2 chars) to the larger word set.
        0.0 when either side is empty.
    """
    n1 = normalize_name(name_a)
    n2 = normalize_name(name_b)
    if not n1 or not n2:
        return 0.0

    if n1 == n2:
        return 1.0

    if n1 in n2 or n2 in n1:
        return 0.8

    words1 = {word for word in n1.split(" ") if len(word) > 2}
    words2 = {word for word in n2.split(" ") if len(word) > 2}
    total_words = max(len(words1), len(words2))
    if total_words == 0:
        return 0.0

    return len(words1 & words2) / total_words


def names_match(name_a: Optional[str], name_b: Optional[str]) -> bool:
    return compare_names(name_a, name_b) > NAME_MATCH_THRESHOLD


def amount_tolerance(expected, tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT) -> Decimal:
    return Decimal(str(expected)) * (Decimal(str(tolerance_pct)) / Decimal("100"))


def amounts_match(received, expected, tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT) -> bool:
    """True when |received - expected| <= expected * tolerance_pct%"""
    received_decimal = Decimal(str(received or 0))
    expected_decimal = Decimal(str(expected or 0))
    if expected_decimal <= 0:
        return False
    return abs(received_decimal - expected_decimal) <= amount_tolerance(expected_decimal, tolerance_pct)


@dataclass(frozen=True)
class ScoredCandidate(Generic[T]):
    item: T
    score: float


def rank_by_name(
    target_name: str,
    candidates: Iterable[T],
    name_of: Callable[[T], str],
) -> List[ScoredCandidate[T]]:
    """Score every candidate against target_name, best first (stable for ties)"""
    scored = [ScoredCandidate(item, compare_names(target_name, name_of(item))) for item in candidates]
    return sorted(scored, key=lambda candidate: candidate.score, reverse=True)


def select_best_match(
    target_name: str,
    candidates: Iterable[T],
    name_of: Callable[[T], str],
    threshold: float = NAME_MATCH_THRESHOLD,
) -> Optional[ScoredCandidate[T]]:
    """Highest-scoring candidate strictly above threshold, or None"""
    ranked = rank_by_name(target_name, candidates, name_of)
    if not ranked or ranked[0].score <= threshold:
        return None
    return ranked[0]


def select_best_order(
    payment: BankPaymentPayload,
    orders: Iterable[OrderSnapshot],
    tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT,
) -> Optional[ScoredCandidate[OrderSnapshot]]:
    """Smart match: payment -> the order whose buyer best matches the sender"""
    in_range = [order for order in orders if amounts_match(payment.amount, order.total_price, tolerance_pct)]
    best = select_best_match(payment.sender_name, in_range, lambda order: order.buyer_display_name)

    if best:
        logger.info(
            f"🎯 SMART_MATCH: payment {payment.transaction_id} -> order {best.item.order_number} "
            f"(score={best.score:.2f}, candidates={len(in_range)})"
        )
    elif in_range:
        logger.warning(
            f"⚠️ SMART_MATCH_NO_NAME: payment {payment.transaction_id} amount matches "
            f"{len(in_range)} order(s) but sender '{payment.sender_name}' matches no buyer"
        )
    return best


def select_best_payment(
    order: OrderSnapshot,
    payments: Iterable[BankPaymentPayload],
    tolerance_pct=DEFAULT_AMOUNT_TOLERANCE_PCT,
) -> Optional[ScoredCandidate[BankPaymentPayload]]:
    """Bidirectional search: order -> the unmatched payment whose sender best matches the buyer"""
    in_range = [payment for payment in payments if amounts_match(payment.amount, order.total_price, tolerance_pct)]
    return select_best_match(order.buyer_display_name, in_range, lambda payment: payment.sender_name)
