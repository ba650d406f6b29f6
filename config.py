"""Configuration management for the editor marketplace escrow core"""

import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from dotenv import load_dotenv

from utils.decimal_precision import to_minor_units

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")
    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Platform currency (amounts below are in major units of this currency)
    PLATFORM_CURRENCY = os.getenv("PLATFORM_CURRENCY", "INR").upper()

    @staticmethod
    def _validate_percentage(env_var: str, default: str, min_val: str = "0", max_val: str = "100") -> Decimal:
        """Validate a percentage with bounds checking"""
        value_str = os.getenv(env_var, default)
        try:
            value = Decimal(value_str)
        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{value_str}': {e}. Using default {default}%")
            return Decimal(default)

        if value < Decimal(min_val) or value > Decimal(max_val):
            logger.error(f"❌ {env_var}={value}% outside [{min_val}, {max_val}]. Using default {default}%")
            return Decimal(default)

        return value

    # Marketplace rules
    MAX_ACTIVE_JOBS = int(os.getenv("MAX_ACTIVE_JOBS", "2"))
    MAX_REVISIONS = int(os.getenv("MAX_REVISIONS", "2"))
    PLATFORM_FEE_PERCENTAGE = _validate_percentage("PLATFORM_FEE_PERCENTAGE", "10")
    GHOST_REFUND_PERCENTAGE = _validate_percentage("GHOST_REFUND_PERCENTAGE", "50")

    # Editor deposits (major units)
    EDITOR_DEPOSIT_AMOUNT = Decimal(os.getenv("EDITOR_DEPOSIT_AMOUNT", "500"))
    DEPOSIT_SLASH_AMOUNT = Decimal(os.getenv("DEPOSIT_SLASH_AMOUNT", "500"))
    DEPOSIT_TIER_BASIC = Decimal(os.getenv("DEPOSIT_TIER_BASIC", "199"))
    DEPOSIT_TIER_PROFESSIONAL = Decimal(os.getenv("DEPOSIT_TIER_PROFESSIONAL", "499"))
    DEPOSIT_TIER_PREMIUM = Decimal(os.getenv("DEPOSIT_TIER_PREMIUM", "1499"))

    # Wallet limits (major units)
    MIN_WITHDRAWAL_AMOUNT = Decimal(os.getenv("MIN_WITHDRAWAL_AMOUNT", "500"))
    MAX_TOPUP_AMOUNT = Decimal(os.getenv("MAX_TOPUP_AMOUNT", "10000"))

    # Reconciliation timeouts
    DEPOSIT_TIMEOUT_HOURS = int(os.getenv("DEPOSIT_TIMEOUT_HOURS", "24"))
    ORDER_ASSIGN_TIMEOUT_HOURS = int(os.getenv("ORDER_ASSIGN_TIMEOUT_HOURS", "72"))
    NOT_STARTED_TIMEOUT_HOURS = int(os.getenv("NOT_STARTED_TIMEOUT_HOURS", "24"))
    GHOST_EDITOR_DAYS = int(os.getenv("GHOST_EDITOR_DAYS", "7"))
    COMMUNICATION_GAP_DAYS = int(os.getenv("COMMUNICATION_GAP_DAYS", "2"))
    FILE_CLEANUP_DAYS = int(os.getenv("FILE_CLEANUP_DAYS", "14"))

    # Reconciliation scheduler
    RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "100"))
    FULL_SWEEP_INTERVAL_MINUTES = int(os.getenv("FULL_SWEEP_INTERVAL_MINUTES", "60"))
    FILE_CLEANUP_INTERVAL_HOURS = int(os.getenv("FILE_CLEANUP_INTERVAL_HOURS", "6"))
    COMMUNICATION_CHECK_INTERVAL_HOURS = int(os.getenv("COMMUNICATION_CHECK_INTERVAL_HOURS", "12"))
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Marketplace Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   Currency: {Config.PLATFORM_CURRENCY}")
        logger.info(
            f"   Limits: active_jobs={Config.MAX_ACTIVE_JOBS} revisions={Config.MAX_REVISIONS} "
            f"fee={Config.PLATFORM_FEE_PERCENTAGE}%"
        )
        if not Config.SCHEDULER_ENABLED:
            logger.warning("⚠️ Reconciliation scheduler disabled via SCHEDULER_ENABLED")


@dataclass(frozen=True)
class MarketplaceRules:
    """
    Business constants shared by every marketplace service.

    Money values are integer minor units of ``currency``. Build from the
    environment with ``MarketplaceRules.from_config()`` or construct directly
    in tests.
    """

    currency: str = "INR"
    max_active_jobs: int = 2
    max_revisions: int = 2
    platform_fee_percentage: Decimal = Decimal("10")
    ghost_refund_percentage: Decimal = Decimal("50")
    default_deposit_amount: int = 50000
    deposit_slash_amount: int = 50000
    tier_deposit_amounts: Dict[str, int] = field(
        default_factory=lambda: {"basic": 19900, "professional": 49900, "premium": 149900}
    )
    min_withdrawal_amount: int = 50000
    max_topup_amount: int = 1000000
    deposit_timeout_hours: int = 24
    unassigned_timeout_hours: int = 72
    not_started_timeout_hours: int = 24
    ghost_editor_days: int = 7
    communication_gap_days: int = 2
    file_cleanup_days: int = 14

    @classmethod
    def from_config(cls, config=Config) -> "MarketplaceRules":
        currency = config.PLATFORM_CURRENCY
        return cls(
            currency=currency,
            max_active_jobs=config.MAX_ACTIVE_JOBS,
            max_revisions=config.MAX_REVISIONS,
            platform_fee_percentage=config.PLATFORM_FEE_PERCENTAGE,
            ghost_refund_percentage=config.GHOST_REFUND_PERCENTAGE,
            default_deposit_amount=to_minor_units(config.EDITOR_DEPOSIT_AMOUNT, currency),
            deposit_slash_amount=to_minor_units(config.DEPOSIT_SLASH_AMOUNT, currency),
            tier_deposit_amounts={
                "basic": to_minor_units(config.DEPOSIT_TIER_BASIC, currency),
                "professional": to_minor_units(config.DEPOSIT_TIER_PROFESSIONAL, currency),
                "premium": to_minor_units(config.DEPOSIT_TIER_PREMIUM, currency),
            },
            min_withdrawal_amount=to_minor_units(config.MIN_WITHDRAWAL_AMOUNT, currency),
            max_topup_amount=to_minor_units(config.MAX_TOPUP_AMOUNT, currency),
            deposit_timeout_hours=config.DEPOSIT_TIMEOUT_HOURS,
            unassigned_timeout_hours=config.ORDER_ASSIGN_TIMEOUT_HOURS,
            not_started_timeout_hours=config.NOT_STARTED_TIMEOUT_HOURS,
            ghost_editor_days=config.GHOST_EDITOR_DAYS,
            communication_gap_days=config.COMMUNICATION_GAP_DAYS,
            file_cleanup_days=config.FILE_CLEANUP_DAYS,
        )

    def deposit_for_tier(self, tier: Optional[str]) -> int:
        """Deposit an editor must hold to apply for an order of the given tier"""
        if tier and tier.lower() in self.tier_deposit_amounts:
            return self.tier_deposit_amounts[tier.lower()]
        return self.default_deposit_amount
