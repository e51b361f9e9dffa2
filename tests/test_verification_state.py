"""
Tests for verification status ordering
"""

from models import VerificationStatus
from services.verification_state import advance_or_append, recommendation_for, status_rank


class TestAdvanceOrAppend:
    """Recorded status only moves forward or sideways"""

    def test_first_step_is_recorded(self):
        transition = advance_or_append(None, VerificationStatus.BUYER_MARKED_PAID)
        assert transition.recorded == VerificationStatus.BUYER_MARKED_PAID
        assert transition.advanced is True

    def test_lower_rank_does_not_regress(self):
        transition = advance_or_append(VerificationStatus.READY_TO_RELEASE, VerificationStatus.NAME_MISMATCH)
        assert transition.recorded == VerificationStatus.READY_TO_RELEASE
        assert transition.incoming == VerificationStatus.NAME_MISMATCH
        assert transition.advanced is False

    def test_sibling_outcome_replaces(self):
        """Same rank: a later mismatch overrides an earlier verification"""
        transition = advance_or_append("NAME_VERIFIED", "NAME_MISMATCH")
        assert transition.recorded == VerificationStatus.NAME_MISMATCH
        assert transition.advanced is True

    def test_released_is_final_rank(self):
        transition = advance_or_append(VerificationStatus.MANUAL_REVIEW, VerificationStatus.RELEASED)
        assert transition.recorded == VerificationStatus.RELEASED
        assert advance_or_append(VerificationStatus.RELEASED, VerificationStatus.READY_TO_RELEASE).advanced is False

    def test_every_status_has_a_rank(self):
        for status in VerificationStatus:
            assert status_rank(status) >= 0


class TestRecommendation:
    """Operator recommendation derived from the recorded status"""

    def test_recommendations(self):
        assert recommendation_for(VerificationStatus.READY_TO_RELEASE) == "RELEASE"
        assert recommendation_for("NAME_MISMATCH") == "MANUAL_REVIEW"
        assert recommendation_for(VerificationStatus.PAYMENT_MATCHED) == "WAIT"
        assert recommendation_for(None) == "WAIT"
