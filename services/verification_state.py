"""
Verification status ordering

Statuses form a fixed partial order. Sibling outcomes (verified / mismatch,
ready / manual review) share a rank. The recorded status of an order only
moves forward or sideways; every step is still appended to the timeline.
"""

from dataclasses import dataclass
from typing import Optional, Union

from models import VerificationStatus

STATUS_RANK = {
    VerificationStatus.AWAITING_PAYMENT: 0,
    VerificationStatus.BUYER_MARKED_PAID: 1,
    VerificationStatus.BANK_PAYMENT_RECEIVED: 2,
    VerificationStatus.PAYMENT_MATCHED: 3,
    VerificationStatus.AMOUNT_VERIFIED: 4,
    VerificationStatus.AMOUNT_MISMATCH: 4,
    VerificationStatus.NAME_VERIFIED: 5,
    VerificationStatus.NAME_MISMATCH: 5,
    VerificationStatus.READY_TO_RELEASE: 6,
    VerificationStatus.MANUAL_REVIEW: 6,
    VerificationStatus.RELEASED: 7,
}

STATUS_EMOJI = {
    VerificationStatus.AWAITING_PAYMENT: "⏳",
    VerificationStatus.BUYER_MARKED_PAID: "📝",
    VerificationStatus.BANK_PAYMENT_RECEIVED: "💰",
    VerificationStatus.PAYMENT_MATCHED: "🔗",
    VerificationStatus.AMOUNT_VERIFIED: "✅",
    VerificationStatus.AMOUNT_MISMATCH: "⚠️",
    VerificationStatus.NAME_VERIFIED: "✅",
    VerificationStatus.NAME_MISMATCH: "⚠️",
    VerificationStatus.READY_TO_RELEASE: "🚀",
    VerificationStatus.MANUAL_REVIEW: "👤",
    VerificationStatus.RELEASED: "✨",
}


def as_status(value: Union[str, VerificationStatus, None]) -> Optional[VerificationStatus]:
    if value is None or isinstance(value, VerificationStatus):
        return value
    return VerificationStatus(value)


def status_rank(status: Union[str, VerificationStatus]) -> int:
    return STATUS_RANK[as_status(status)]


@dataclass(frozen=True)
class StatusTransition:
    """Outcome of applying an incoming step to the recorded status"""

    recorded: VerificationStatus
    incoming: VerificationStatus
    advanced: bool


def advance_or_append(
    current: Union[str, VerificationStatus, None],
    incoming: Union[str, VerificationStatus],
) -> StatusTransition:
    """
    Decide the status to record after an incoming verification step

    A step whose rank is below the current one leaves the recorded status
    unchanged (append-only). Equal or higher ranks replace it.
    """
    incoming_status = as_status(incoming)
    current_status = as_status(current)

    if current_status is None or STATUS_RANK[incoming_status] >= STATUS_RANK[current_status]:
        return StatusTransition(recorded=incoming_status, incoming=incoming_status, advanced=True)

    return StatusTransition(recorded=current_status, incoming=incoming_status, advanced=False)


def recommendation_for(status: Union[str, VerificationStatus, None]) -> str:
    """RELEASE / MANUAL_REVIEW / WAIT for dashboards and operator tooling"""
    status = as_status(status)
    if status in (VerificationStatus.READY_TO_RELEASE, VerificationStatus.RELEASED):
        return "RELEASE"
    if status in (
        VerificationStatus.MANUAL_REVIEW,
        VerificationStatus.NAME_MISMATCH,
        VerificationStatus.AMOUNT_MISMATCH,
    ):
        return "MANUAL_REVIEW"
    return "WAIT"
