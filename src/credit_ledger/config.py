"""
Ledger Configuration

Values are read from the environment once at startup. Defaults match the
production pricing: $2.00 initial grant, $2.00 per 10 minutes of call time.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional


@dataclass
class LedgerConfig:
    """Configuration for the credit ledger."""
    database_url: str = "sqlite:///credit_ledger.db"
    initial_grant: Decimal = Decimal("2.00")
    unit_seconds: int = 600
    rate_per_unit: Decimal = Decimal("2.00")
    webhook_secret: Optional[str] = None
    api_key: str = "dev-key-change-in-production"
    pending_event_grace_seconds: int = 300  # Sweep only events older than this
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Build configuration from environment variables."""
        defaults = cls()
        return cls(
            database_url=os.environ.get("DATABASE_URL", defaults.database_url),
            initial_grant=Decimal(os.environ.get("INITIAL_GRANT", str(defaults.initial_grant))),
            unit_seconds=int(os.environ.get("USAGE_UNIT_SECONDS", defaults.unit_seconds)),
            rate_per_unit=Decimal(os.environ.get("USAGE_RATE_PER_UNIT", str(defaults.rate_per_unit))),
            webhook_secret=os.environ.get("PAYMENT_WEBHOOK_SECRET") or None,
            api_key=os.environ.get("API_KEY", defaults.api_key),
            pending_event_grace_seconds=int(
                os.environ.get("PENDING_EVENT_GRACE_SECONDS", defaults.pending_event_grace_seconds)
            ),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        )
