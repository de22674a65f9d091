"""Runtime configuration for orderledger.

Every setting can be overridden through an ORDERLEDGER_* environment variable.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

_default_data_dir = Path(__file__).parent.parent.parent / "data"

# British Columbia GST and PST, as charged by the storefront
DEFAULT_GST_RATE = Decimal("0.05")
DEFAULT_PST_RATE = Decimal("0.07")
DEFAULT_CERTIFICATE_VALIDITY_DAYS = 365
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_SETTLEMENT_RETRIES = 5


@dataclass(frozen=True)
class Settings:
    """Ledger configuration."""

    data_dir: Path = _default_data_dir
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    settlement_retries: int = DEFAULT_SETTLEMENT_RETRIES
    gst_rate: Decimal = DEFAULT_GST_RATE
    pst_rate: Decimal = DEFAULT_PST_RATE
    certificate_validity_days: int = DEFAULT_CERTIFICATE_VALIDITY_DAYS
    log_level: str = "INFO"
    log_format: str = "console"

    @property
    def tax_rate(self) -> Decimal:
        return self.gst_rate + self.pst_rate

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        env = os.environ
        return cls(
            data_dir=Path(env.get("ORDERLEDGER_DATA_DIR", _default_data_dir)),
            lock_timeout=float(env.get("ORDERLEDGER_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT)),
            settlement_retries=int(
                env.get("ORDERLEDGER_SETTLEMENT_RETRIES", DEFAULT_SETTLEMENT_RETRIES)
            ),
            gst_rate=Decimal(env.get("ORDERLEDGER_GST_RATE", str(DEFAULT_GST_RATE))),
            pst_rate=Decimal(env.get("ORDERLEDGER_PST_RATE", str(DEFAULT_PST_RATE))),
            certificate_validity_days=int(
                env.get(
                    "ORDERLEDGER_CERTIFICATE_VALIDITY_DAYS",
                    DEFAULT_CERTIFICATE_VALIDITY_DAYS,
                )
            ),
            log_level=env.get("ORDERLEDGER_LOG_LEVEL", "INFO").upper(),
            log_format=env.get("ORDERLEDGER_LOG_FORMAT", "console").lower(),
        )
