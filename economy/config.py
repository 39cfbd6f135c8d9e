import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./economy.db"
    admin_secret: str = ""
    log_level: str = "INFO"

    # Moderation
    reports_for_suspension: int = 3
    report_window_days: int = 7
    report_cooldown_hours: int = 24

    # Referrals
    referral_reward_referrer: int = 500
    referral_reward_referred: int = 500
    purchase_bonus_referrer: int = 250
    purchase_bonus_referred: int = 100
    subscription_bonus_referrer: int = 1000
    subscription_bonus_referred: int = 500
    vesting_days_required: int = 30
    vesting_chats_required: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./economy.db"),
            admin_secret=os.getenv("ADMIN_SECRET", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            reports_for_suspension=_env_int("REPORTS_FOR_SUSPENSION", 3),
            report_window_days=_env_int("REPORT_WINDOW_DAYS", 7),
            report_cooldown_hours=_env_int("REPORT_COOLDOWN_HOURS", 24),
            referral_reward_referrer=_env_int("REFERRAL_REWARD_REFERRER", 500),
            referral_reward_referred=_env_int("REFERRAL_REWARD_REFERRED", 500),
            purchase_bonus_referrer=_env_int("PURCHASE_BONUS_REFERRER", 250),
            purchase_bonus_referred=_env_int("PURCHASE_BONUS_REFERRED", 100),
            subscription_bonus_referrer=_env_int("SUBSCRIPTION_BONUS_REFERRER", 1000),
            subscription_bonus_referred=_env_int("SUBSCRIPTION_BONUS_REFERRED", 500),
            vesting_days_required=_env_int("VESTING_DAYS_REQUIRED", 30),
            vesting_chats_required=_env_int("VESTING_CHATS_REQUIRED", 5),
        )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
