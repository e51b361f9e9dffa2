"""
Shared fixtures for the auto-release engine tests

Key Components:
1. In-memory SQLite reconciliation store (fresh schema per test)
2. Fake exchange client and 2FA code provider with call recording
3. Fully wired orchestrator plus a release event collector
"""

import logging
from typing import Optional

import pytest
import pytest_asyncio

from config import AutoReleaseConfig
from database import build_engine, build_session_factory, create_tables
from services.auto_release_orchestrator import AutoReleaseOrchestrator
from services.order_lifecycle import OrderLifecycleSource
from services.payment_ingestion import PaymentIngestionSource
from services.reconciliation_store import ReconciliationStore
from tests.release_test_foundation import EventCollector, FakeCodeProvider, FakeExchange
from utils.background_task_runner import BackgroundTaskRunner

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test"""
    engine = build_engine("sqlite://", echo=False)
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ReconciliationStore(session_factory)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def code_provider():
    return FakeCodeProvider()


@pytest.fixture
def release_config():
    return AutoReleaseConfig(
        enable_auto_release=True,
        require_ocr_verification=False,
        release_delay_ms=0,
        release_interval_seconds=0,
        check_throttle_seconds=0,
    )


@pytest_asyncio.fixture
async def build_orchestrator(store, exchange, code_provider, release_config):
    """Factory for a wired orchestrator; keyword overrides replace the defaults"""
    built = []

    def _build(config: Optional[AutoReleaseConfig] = None, **overrides) -> AutoReleaseOrchestrator:
        order_source = OrderLifecycleSource(exchange, store=store)
        payment_source = PaymentIngestionSource()
        kwargs = {
            "config": config or release_config,
            "code_provider": code_provider,
            "task_runner": BackgroundTaskRunner(),
        }
        kwargs.update(overrides)
        orchestrator = AutoReleaseOrchestrator(order_source, payment_source, store, **kwargs)
        orchestrator.events = EventCollector()
        orchestrator.subscribe(orchestrator.events)
        built.append(orchestrator)
        return orchestrator

    yield _build

    # Drains parked by a blocking sleep are cancelled here
    for orchestrator in built:
        await orchestrator.task_runner.cleanup()


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()
