# runtime settings, read once from the environment
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache


def _env(name: str, default: str) -> str:
    return os.getenv(f"FULFILLMENT_{name}", default)


@dataclass(frozen=True)
class Settings:
    """
    Business rules and tuning knobs for the fulfillment engine.

    Every field can be overridden with a ``FULFILLMENT_<FIELD_NAME>``
    environment variable (upper case).
    """

    free_shipping_threshold: Decimal = Decimal("1000")
    shipping_flat_fee: Decimal = Decimal("50")
    tax_rate: Decimal = Decimal("0")

    low_stock_threshold: int = 10
    ship_after_hours: int = 2
    deliver_after_days: int = 3
    expiry_reminder_days: int = 15

    tx_max_attempts: int = 5
    tx_backoff_base: float = 0.05
    busy_timeout: float = 5.0

    progression_interval_seconds: float = 3600.0
    reconcile_interval_seconds: float = 3600.0
    low_stock_interval_seconds: float = 604800.0
    reminder_interval_seconds: float = 86400.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            free_shipping_threshold=Decimal(_env("FREE_SHIPPING_THRESHOLD", "1000")),
            shipping_flat_fee=Decimal(_env("SHIPPING_FLAT_FEE", "50")),
            tax_rate=Decimal(_env("TAX_RATE", "0")),
            low_stock_threshold=int(_env("LOW_STOCK_THRESHOLD", "10")),
            ship_after_hours=int(_env("SHIP_AFTER_HOURS", "2")),
            deliver_after_days=int(_env("DELIVER_AFTER_DAYS", "3")),
            expiry_reminder_days=int(_env("EXPIRY_REMINDER_DAYS", "15")),
            tx_max_attempts=max(int(_env("TX_MAX_ATTEMPTS", "5")), 1),
            tx_backoff_base=float(_env("TX_BACKOFF_BASE", "0.05")),
            busy_timeout=float(_env("BUSY_TIMEOUT", "5.0")),
            progression_interval_seconds=float(
                _env("PROGRESSION_INTERVAL_SECONDS", "3600")
            ),
            reconcile_interval_seconds=float(_env("RECONCILE_INTERVAL_SECONDS", "3600")),
            low_stock_interval_seconds=float(
                _env("LOW_STOCK_INTERVAL_SECONDS", "604800")
            ),
            reminder_interval_seconds=float(_env("REMINDER_INTERVAL_SECONDS", "86400")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
