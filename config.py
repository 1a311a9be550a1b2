"""Configuration management for the HashPay reconciliation engine"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _int_list(raw: str) -> List[int]:
    """Parse a comma separated list of integers, ignoring blanks and junk"""
    values = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(int(part))
        except ValueError:
            logger.warning(f"⚠️ CONFIG: Ignoring non-numeric id '{part}'")
    return values


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    # PostgreSQL in production, a local SQLite file is good enough for development
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hashpay.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Telegram alerts (internal notifications to admins and groups)
    PRODUCTION_BOT_TOKEN = os.getenv("PRODUCTION_BOT_TOKEN")
    DEVELOPMENT_BOT_TOKEN = os.getenv("DEVELOPMENT_BOT_TOKEN", os.getenv("DEV_BOT_TOKEN"))
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN")

    if IS_PRODUCTION:
        BOT_TOKEN = PRODUCTION_BOT_TOKEN or GENERIC_BOT_TOKEN
    else:
        BOT_TOKEN = DEVELOPMENT_BOT_TOKEN or GENERIC_BOT_TOKEN

    ADMIN_IDS = _int_list(os.getenv("ADMIN_IDS", ""))

    # Order lifecycle
    ORDER_TIMEOUT_SECONDS = int(os.getenv("ORDER_TIMEOUT_SECONDS", "1800"))
    ORDER_ID_PREFIX = os.getenv("ORDER_ID_PREFIX", "PAY")
    PAY_AMOUNT_DECIMALS = int(os.getenv("PAY_AMOUNT_DECIMALS", "8"))

    # Reconciliation scheduler
    POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))
    LOOKBACK_WINDOW_SECONDS = int(os.getenv("LOOKBACK_WINDOW_SECONDS", str(24 * 3600)))
    MATCH_TOLERANCE_PERCENT = Decimal(os.getenv("MATCH_TOLERANCE_PERCENT", "1"))
    # "first" keeps the first order within tolerance, "closest" picks the smallest deviation
    MATCH_POLICY = os.getenv("MATCH_POLICY", "first").lower().strip()

    # External I/O
    EXTERNAL_API_TIMEOUT = int(os.getenv("EXTERNAL_API_TIMEOUT", "10"))

    # Exchange rates
    RATE_CACHE_TTL = int(os.getenv("RATE_CACHE_TTL", "300"))
    RATE_FALLBACK_VALUE = Decimal("1")
    RATE_SOURCES = [
        s.strip().lower()
        for s in os.getenv("RATE_SOURCES", "binance,coingecko").split(",")
        if s.strip()
    ]
    COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY", "")

    # Notification delivery
    NOTIFICATION_MAX_RETRIES = int(os.getenv("NOTIFICATION_MAX_RETRIES", "5"))
    NOTIFICATION_RETRY_BASE_DELAY = int(os.getenv("NOTIFICATION_RETRY_BASE_DELAY", "300"))
    NOTIFICATION_BATCH_SIZE = int(os.getenv("NOTIFICATION_BATCH_SIZE", "50"))
    NOTIFICATION_PROCESS_INTERVAL_SECONDS = int(
        os.getenv("NOTIFICATION_PROCESS_INTERVAL_SECONDS", "60")
    )
    CALLBACK_API_KEY_HEADER = os.getenv("CALLBACK_API_KEY_HEADER", "X-Api-Key")

    # Expiry sweep
    EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))

    # Default explorer endpoints, used when a source_configs row leaves endpoint empty
    TRONGRID_ENDPOINT = os.getenv("TRONGRID_ENDPOINT", "https://api.trongrid.io")
    ETHERSCAN_ENDPOINT = os.getenv("ETHERSCAN_ENDPOINT", "https://api.etherscan.io")
    BSCSCAN_ENDPOINT = os.getenv("BSCSCAN_ENDPOINT", "https://api.bscscan.com")
    POLYGONSCAN_ENDPOINT = os.getenv("POLYGONSCAN_ENDPOINT", "https://api.polygonscan.com")
    SOLANA_RPC_ENDPOINT = os.getenv("SOLANA_RPC_ENDPOINT", "https://api.mainnet-beta.solana.com")
    TONCENTER_ENDPOINT = os.getenv("TONCENTER_ENDPOINT", "https://toncenter.com/api/v2")
    OKX_ENDPOINT = os.getenv("OKX_ENDPOINT", "https://www.okx.com")
    BINANCE_ENDPOINT = os.getenv("BINANCE_ENDPOINT", "https://api.binance.com")

    @staticmethod
    def log_configuration():
        """Log current engine configuration for debugging (no secrets)"""
        logger.info("🔧 HashPay Engine Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        db_kind = Config.DATABASE_URL.split(":", 1)[0]
        logger.info(f"   Database driver: {db_kind}")
        logger.info(f"   Order timeout: {Config.ORDER_TIMEOUT_SECONDS}s")
        logger.info(
            f"   Poll interval: {Config.POLL_INTERVAL_SECONDS}s, "
            f"lookback: {Config.LOOKBACK_WINDOW_SECONDS}s"
        )
        logger.info(
            f"   Match tolerance: {Config.MATCH_TOLERANCE_PERCENT}% ({Config.MATCH_POLICY})"
        )
        logger.info(f"   Rate sources: {', '.join(Config.RATE_SOURCES) or 'none'}")
        logger.info(
            f"   Notifications: max_retries={Config.NOTIFICATION_MAX_RETRIES}, "
            f"base_delay={Config.NOTIFICATION_RETRY_BASE_DELAY}s"
        )
        if not Config.BOT_TOKEN:
            logger.warning("   ⚠️ BOT_TOKEN not configured - admin alerts will be dead-lettered")
