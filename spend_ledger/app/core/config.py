from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class QuotaPolicy:
    cache_ttl_seconds: int = 300
    warning_threshold: float = 0.80
    danger_threshold: float = 0.95


@dataclass(frozen=True)
class BalancePolicy:
    low_threshold: int = 50_000
    critical_threshold: int = 10_000
    integrity_tolerance: int = 0


class Settings(BaseSettings):
    app_name: str = "Spend Ledger API"
    database_url: str = "sqlite:///spend_ledger.db"
    log_level: str = "INFO"

    # "memory" or "redis"
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    quota_cache_ttl_seconds: int = 300
    quota_warning_threshold: float = 0.80
    quota_danger_threshold: float = 0.95

    balance_low_threshold: int = 50_000
    balance_critical_threshold: int = 10_000
    integrity_tolerance: int = 0

    default_plan_name: str = "free"
    default_daily_limit: int = 1_000
    default_monthly_limit: int = 20_000
    default_unit_prices: dict[str, int] = {
        "marketing": 500,
        "utility": 300,
        "authentication": 250,
        "service": 150,
    }

    history_page_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SPEND_LEDGER_",
        extra="ignore",
    )

    def quota_policy(self) -> QuotaPolicy:
        return QuotaPolicy(
            cache_ttl_seconds=self.quota_cache_ttl_seconds,
            warning_threshold=self.quota_warning_threshold,
            danger_threshold=self.quota_danger_threshold,
        )

    def balance_policy(self) -> BalancePolicy:
        return BalancePolicy(
            low_threshold=self.balance_low_threshold,
            critical_threshold=self.balance_critical_threshold,
            integrity_tolerance=self.integrity_tolerance,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
