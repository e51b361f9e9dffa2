"""
Buyer Risk Assessor
Gates auto-release on the counterparty's trading history.

Any statistic below its configured minimum fails the assessment, and an
unreachable stats endpoint is itself a failure: we never auto-release to a
counterparty we could not evaluate.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from config import BuyerRiskConfig
from services.exchange_client import CounterpartyStats, ExchangeClient

logger = logging.getLogger(__name__)

RECOMMEND_AUTO_RELEASE = "AUTO_RELEASE"
RECOMMEND_MANUAL = "MANUAL_VERIFICATION"


@dataclass
class BuyerRiskAssessment:
    is_trusted: bool
    order_number: str
    order_amount: Decimal
    stats: Optional[CounterpartyStats] = None
    failed_criteria: List[str] = field(default_factory=list)

    @property
    def recommendation(self) -> str:
        return RECOMMEND_AUTO_RELEASE if self.is_trusted else RECOMMEND_MANUAL

    def to_dict(self) -> dict:
        return {
            "is_trusted": self.is_trusted,
            "order_number": self.order_number,
            "order_amount": str(self.order_amount),
            "stats": self.stats.__dict__ if self.stats else None,
            "failed_criteria": list(self.failed_criteria),
            "recommendation": self.recommendation,
        }


class BuyerRiskAssessor:
    """Evaluates counterparties against BuyerRiskConfig minimums"""

    def __init__(self, exchange_client: ExchangeClient, config: Optional[BuyerRiskConfig] = None):
        self.exchange_client = exchange_client
        self.config = config or BuyerRiskConfig()

        logger.info(
            f"🛡️ RISK_ASSESSOR_INIT: min_orders={self.config.min_total_orders}, "
            f"min_30day={self.config.min_30day_orders}, min_days={self.config.min_register_days}, "
            f"min_positive={self.config.min_positive_rate:.0%}"
        )

    def evaluate(self, stats: CounterpartyStats) -> List[str]:
        """Return every criterion the stats fail"""
        failed = []
        if stats.total_orders < self.config.min_total_orders:
            failed.append(f"Total orders {stats.total_orders} < {self.config.min_total_orders} required")
        if stats.orders_30day < self.config.min_30day_orders:
            failed.append(f"30-day orders {stats.orders_30day} < {self.config.min_30day_orders} required")
        if stats.register_days < self.config.min_register_days:
            failed.append(f"Registered days {stats.register_days} < {self.config.min_register_days} required")
        if stats.positive_rate < self.config.min_positive_rate:
            failed.append(
                f"Positive rate {stats.positive_rate:.1%} < {self.config.min_positive_rate:.0%} required"
            )
        return failed

    async def assess_buyer_by_order(self, order_number: str, order_amount) -> BuyerRiskAssessment:
        """
        Assess the counterparty of an order

        Args:
            order_number: Exchange order number (stats are looked up through it)
            order_amount: Fiat amount of the order, carried for reporting

        Returns:
            BuyerRiskAssessment listing every failed criterion
        """
        amount = Decimal(str(order_amount))
        logger.info(f"🔍 RISK_ASSESSOR: Evaluating counterparty for order {order_number}, amount {amount}")

        stats: Optional[CounterpartyStats] = None
        try:
            stats = await self.exchange_client.get_counterparty_stats(order_number)
        except Exception as e:
            logger.warning(f"⚠️ RISK_ASSESSOR: Could not fetch counterparty stats for {order_number} - treating as risky: {e}")

        if stats is None:
            failed_criteria = ["Counterparty statistics unavailable"]
        else:
            logger.info(
                f"📊 RISK_ASSESSOR: order {order_number} stats total={stats.total_orders}, "
                f"30day={stats.orders_30day}, days={stats.register_days}, positive={stats.positive_rate:.1%}"
            )
            failed_criteria = self.evaluate(stats)

        assessment = BuyerRiskAssessment(
            is_trusted=not failed_criteria,
            order_number=order_number,
            order_amount=amount,
            stats=stats,
            failed_criteria=failed_criteria,
        )

        if assessment.is_trusted:
            logger.info(f"✅ RISK_ASSESSOR: Order {order_number} counterparty is TRUSTED")
        else:
            logger.warning(
                f"⚠️ RISK_ASSESSOR: Order {order_number} counterparty requires MANUAL verification: "
                f"{', '.join(failed_criteria)}"
            )
        return assessment
