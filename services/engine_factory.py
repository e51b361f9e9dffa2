"""
Release engine wiring
Builds the store, sources, verifiers and orchestrator from Config and the
external collaborators supplied by the host application.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from config import AutoReleaseConfig, BuyerRiskConfig, Config
from database import build_engine, build_session_factory, create_tables
from services.auto_release_orchestrator import AutoReleaseOrchestrator
from services.buyer_risk_assessor import BuyerRiskAssessor
from services.exchange_client import ExchangeClient, VerificationCodeProvider
from services.order_lifecycle import OrderLifecycleSource
from services.payment_ingestion import PaymentIngestionSource
from services.receipt_verifier import ReceiptExtractor, ReceiptVerifier
from services.reconciliation_store import ReconciliationStore
from services.totp_service import TOTPService
from utils.background_task_runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)


@dataclass
class ReleaseEngine:
    """Running set of components; start() begins order polling"""

    orchestrator: AutoReleaseOrchestrator
    order_source: OrderLifecycleSource
    payment_source: PaymentIngestionSource
    store: ReconciliationStore
    task_runner: BackgroundTaskRunner

    def start(self, poll_interval_seconds: Optional[float] = None) -> None:
        interval = poll_interval_seconds or Config.ORDER_POLL_INTERVAL_SECONDS
        self.task_runner.run(self.order_source.run(interval), name="order_polling")
        logger.info("🚀 RELEASE_ENGINE_STARTED")

    async def stop(self) -> None:
        await self.task_runner.cleanup()
        logger.info("🛑 RELEASE_ENGINE_STOPPED")


def build_release_engine(
    exchange_client: ExchangeClient,
    receipt_extractor: Optional[ReceiptExtractor] = None,
    chat_source=None,
    code_provider: Optional[VerificationCodeProvider] = None,
    config: Optional[AutoReleaseConfig] = None,
    risk_config: Optional[BuyerRiskConfig] = None,
    session_factory: Optional[sessionmaker] = None,
    database_url: Optional[str] = None,
) -> ReleaseEngine:
    """
    Assemble a release engine

    Args:
        exchange_client: Signed exchange API client
        receipt_extractor: OCR backend; without it receipts cannot be verified
        chat_source: Optional object with subscribe(listener) emitting ChatEvents
        code_provider: 2FA source; defaults to TOTPService(Config.TOTP_SECRET)
        config: Auto-release options; defaults to Config.auto_release_config()
        risk_config: Buyer risk minimums; defaults to Config.risk_config()
        session_factory: Existing session factory (tests); otherwise built from database_url

    Returns:
        ReleaseEngine with every component subscribed to its sources
    """
    config = config or Config.auto_release_config()
    risk_config = risk_config or Config.risk_config()

    if session_factory is None:
        engine = build_engine(database_url)
        create_tables(engine)
        session_factory = build_session_factory(engine)

    code_provider = code_provider or TOTPService(Config.TOTP_SECRET)
    validation = Config.validate_auto_release_configuration(
        config, code_provider_configured=getattr(code_provider, "is_configured", True)
    )
    if not validation["valid"]:
        logger.error(f"❌ RELEASE_ENGINE_CONFIG_INVALID: {validation['errors']}")

    store = ReconciliationStore(session_factory)
    task_runner = BackgroundTaskRunner()
    order_source = OrderLifecycleSource(exchange_client, store=store)
    payment_source = PaymentIngestionSource(webhook_secret=Config.BANK_WEBHOOK_SECRET)

    orchestrator = AutoReleaseOrchestrator(
        order_source=order_source,
        payment_source=payment_source,
        store=store,
        config=config,
        risk_assessor=BuyerRiskAssessor(exchange_client, risk_config),
        receipt_verifier=ReceiptVerifier(receipt_extractor, min_confidence=config.min_confidence,
                                         tolerance_pct=config.amount_tolerance_pct),
        code_provider=code_provider,
        task_runner=task_runner,
    )

    if chat_source is not None:
        chat_source.subscribe(orchestrator.handle_chat_event)

    Config.log_auto_release_config()
    return ReleaseEngine(
        orchestrator=orchestrator,
        order_source=order_source,
        payment_source=payment_source,
        store=store,
        task_runner=task_runner,
    )
