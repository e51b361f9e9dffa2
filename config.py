"""Configuration management for the P2P auto-release engine"""

import os
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except Exception:
        logger.warning(f"⚠️ CONFIG_INVALID_DECIMAL: {name}={raw!r} - using default {default}")
        return Decimal(default)


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(str(raw).strip())
    except ValueError:
        logger.warning(f"⚠️ CONFIG_INVALID_INT: {name}={raw!r} - using default {default}")
        return int(default)


class AuthType:
    """Second-factor types accepted by the exchange release endpoint"""
    GOOGLE = "GOOGLE"
    SMS = "SMS"
    FIDO2 = "FIDO2"


@dataclass(frozen=True)
class AutoReleaseConfig:
    """Explicit configuration value handed to the orchestrator at construction"""

    enable_auto_release: bool = False
    require_bank_match: bool = False
    require_ocr_verification: bool = True
    enable_buyer_risk_check: bool = False
    skip_risk_check_threshold: Decimal = Decimal("800")
    auth_type: str = AuthType.GOOGLE
    min_confidence: float = 0.7
    release_delay_ms: int = 5000
    max_auto_release_amount: Decimal = Decimal("50000")

    # Engine tuning (not operator-facing)
    check_throttle_seconds: float = 5.0
    release_interval_seconds: float = 1.0
    max_release_attempts: int = 3
    amount_tolerance_pct: Decimal = Decimal("1")
    payment_lookback_minutes: int = 120

    def with_changes(self, **changes: Any) -> "AutoReleaseConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class BuyerRiskConfig:
    """Minimum counterparty statistics required for auto-release"""

    min_total_orders: int = 100
    min_30day_orders: int = 15
    min_register_days: int = 100
    min_positive_rate: float = 0.85


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./p2p_release.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")

    # Auto-release options
    ENABLE_AUTO_RELEASE = _env_bool("ENABLE_AUTO_RELEASE")
    REQUIRE_BANK_MATCH = _env_bool("REQUIRE_BANK_MATCH")
    # OCR is required unless explicitly disabled
    REQUIRE_OCR_VERIFICATION = os.getenv("REQUIRE_OCR_VERIFICATION", "true").lower().strip() != "false"
    ENABLE_BUYER_RISK_CHECK = _env_bool("ENABLE_BUYER_RISK_CHECK")
    SKIP_RISK_CHECK_THRESHOLD = _env_decimal("SKIP_RISK_CHECK_THRESHOLD", "800")
    RELEASE_AUTH_TYPE = os.getenv("RELEASE_AUTH_TYPE", AuthType.GOOGLE).upper().strip()
    OCR_MIN_CONFIDENCE = float(_env_decimal("OCR_MIN_CONFIDENCE", "0.7"))
    RELEASE_DELAY_MS = _env_int("RELEASE_DELAY_MS", "5000")
    MAX_AUTO_RELEASE_AMOUNT = _env_decimal("MAX_AUTO_RELEASE_AMOUNT", "50000")

    # Buyer risk thresholds
    MIN_BUYER_TOTAL_ORDERS = _env_int("MIN_BUYER_TOTAL_ORDERS", "100")
    MIN_BUYER_30DAY_ORDERS = _env_int("MIN_BUYER_30DAY_ORDERS", "15")
    MIN_BUYER_REGISTER_DAYS = _env_int("MIN_BUYER_REGISTER_DAYS", "100")
    MIN_BUYER_POSITIVE_RATE = float(_env_decimal("MIN_BUYER_POSITIVE_RATE", "0.85"))

    # 2FA
    TOTP_SECRET = os.getenv("TOTP_SECRET", "")

    # Sources
    BANK_WEBHOOK_SECRET = os.getenv("BANK_WEBHOOK_SECRET", "")
    ORDER_POLL_INTERVAL_SECONDS = float(_env_decimal("ORDER_POLL_INTERVAL_SECONDS", "5"))

    @staticmethod
    def auto_release_config() -> AutoReleaseConfig:
        """Build the immutable engine configuration from the environment"""
        return AutoReleaseConfig(
            enable_auto_release=Config.ENABLE_AUTO_RELEASE,
            require_bank_match=Config.REQUIRE_BANK_MATCH,
            require_ocr_verification=Config.REQUIRE_OCR_VERIFICATION,
            enable_buyer_risk_check=Config.ENABLE_BUYER_RISK_CHECK,
            skip_risk_check_threshold=Config.SKIP_RISK_CHECK_THRESHOLD,
            auth_type=Config.RELEASE_AUTH_TYPE,
            min_confidence=Config.OCR_MIN_CONFIDENCE,
            release_delay_ms=Config.RELEASE_DELAY_MS,
            max_auto_release_amount=Config.MAX_AUTO_RELEASE_AMOUNT,
        )

    @staticmethod
    def risk_config() -> BuyerRiskConfig:
        return BuyerRiskConfig(
            min_total_orders=Config.MIN_BUYER_TOTAL_ORDERS,
            min_30day_orders=Config.MIN_BUYER_30DAY_ORDERS,
            min_register_days=Config.MIN_BUYER_REGISTER_DAYS,
            min_positive_rate=Config.MIN_BUYER_POSITIVE_RATE,
        )

    @staticmethod
    def validate_auto_release_configuration(
        config: Optional[AutoReleaseConfig] = None,
        code_provider_configured: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Validate auto-release related settings

        Args:
            config: Value the engine runs with; defaults to the environment
            code_provider_configured: Whether a 2FA source exists; defaults to TOTP_SECRET being set

        Returns:
            Dict with 'valid' flag plus lists of errors and warnings
        """
        config = config or Config.auto_release_config()
        if code_provider_configured is None:
            code_provider_configured = bool(Config.TOTP_SECRET)

        errors: List[str] = []
        warnings: List[str] = []

        if config.auth_type not in (AuthType.GOOGLE, AuthType.SMS, AuthType.FIDO2):
            errors.append(f"RELEASE_AUTH_TYPE '{config.auth_type}' is not supported")

        if config.max_auto_release_amount <= 0:
            errors.append("MAX_AUTO_RELEASE_AMOUNT must be positive")

        if not 0 <= config.min_confidence <= 1:
            errors.append("OCR_MIN_CONFIDENCE must be between 0 and 1")

        if config.enable_auto_release and not code_provider_configured:
            warnings.append("Auto-release enabled but TOTP_SECRET is empty - releases will fail")

        if config.skip_risk_check_threshold > config.max_auto_release_amount:
            warnings.append("SKIP_RISK_CHECK_THRESHOLD exceeds MAX_AUTO_RELEASE_AMOUNT - risk check never runs")

        for error in errors:
            logger.error(f"❌ CONFIG_ERROR: {error}")
        for warning in warnings:
            logger.warning(f"⚠️ CONFIG_WARNING: {warning}")

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    @staticmethod
    def log_auto_release_config() -> None:
        """Log current auto-release configuration for debugging"""
        logger.info("🔧 Auto-Release Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Auto-release enabled: {Config.ENABLE_AUTO_RELEASE}")
        logger.info(f"   Max auto-release amount: {Config.MAX_AUTO_RELEASE_AMOUNT}")
        logger.info(f"   Buyer risk check: {Config.ENABLE_BUYER_RISK_CHECK} (skip <= {Config.SKIP_RISK_CHECK_THRESHOLD})")
        logger.info(f"   OCR required: {Config.REQUIRE_OCR_VERIFICATION} (min confidence {Config.OCR_MIN_CONFIDENCE})")
        logger.info(f"   2FA configured: {bool(Config.TOTP_SECRET)}")
