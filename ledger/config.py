import os
from decimal import Decimal

from pydantic import BaseModel


class EngineSettings(BaseModel):
    default_currency: str = "USD"
    platform_fee_rate: Decimal = Decimal("0.025")
    card_fee_rate: Decimal = Decimal("0.029")
    bank_fee_flat: Decimal = Decimal("0.50")
    tax_rate: Decimal = Decimal("0.05")
    grace_period_days: int = 30
    renewal_window_days: int = 60
    default_coverage_percentage: Decimal = Decimal("80")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            default_currency=os.getenv("LEDGER_DEFAULT_CURRENCY", "USD"),
            platform_fee_rate=Decimal(os.getenv("LEDGER_PLATFORM_FEE_RATE", "0.025")),
            card_fee_rate=Decimal(os.getenv("LEDGER_CARD_FEE_RATE", "0.029")),
            bank_fee_flat=Decimal(os.getenv("LEDGER_BANK_FEE_FLAT", "0.50")),
            tax_rate=Decimal(os.getenv("LEDGER_TAX_RATE", "0.05")),
            grace_period_days=int(os.getenv("BENEFITS_GRACE_PERIOD_DAYS", "30")),
            renewal_window_days=int(os.getenv("BENEFITS_RENEWAL_WINDOW_DAYS", "60")),
            default_coverage_percentage=Decimal(os.getenv("BENEFITS_DEFAULT_COVERAGE_PERCENTAGE", "80")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
