"""
Marketplace configuration parameters for bidledger.

Defines bidding windows, locking policy, sweeper cadence and paths.
Values can be overridden through BIDLEDGER_* environment variables,
optionally loaded from a .env file.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "BIDLEDGER_"


@dataclass
class MarketConfig:
    """Marketplace-wide configuration parameters"""

    # Bidding parameters
    bid_window_minutes: int = 30  # Offers accepted for this long after broadcast
    default_radius_km: float = 50.0  # Seller search radius around the order

    # Locking parameters
    lock_timeout: float = 5.0  # Bounded wait for a row lock, in seconds
    max_retries: int = 3  # Attempts for lock timeouts / deadlocks
    backoff_base: float = 0.1  # First retry delay, doubled each attempt

    # Sweeper parameters
    sweep_interval: float = 120.0  # Seconds between timeout sweeps
    sweep_batch_size: int = 50  # Expired orders processed per sweep

    # Reconciliation
    drift_epsilon: float = 0.01  # Tolerated rounding between fold and stored balance

    # Paths
    db_path: Path = Path("data/bidledger.db")
    log_dir: Path = Path("logs")

    def __post_init__(self):
        """Coerce path fields and create the database directory"""
        self.db_path = Path(self.db_path)
        self.log_dir = Path(self.log_dir)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)


def load_config(env_file: Optional[str] = None) -> MarketConfig:
    """
    Load configuration from the environment.

    Every field of MarketConfig can be set as BIDLEDGER_<FIELD_NAME>,
    e.g. BIDLEDGER_LOCK_TIMEOUT=2.5.

    Args:
        env_file: Optional path to a .env file loaded before reading

    Returns:
        MarketConfig instance
    """
    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    overrides = {}
    for f in fields(MarketConfig):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        if f.type in (int, "int"):
            overrides[f.name] = int(raw)
        elif f.type in (float, "float"):
            overrides[f.name] = float(raw)
        else:
            overrides[f.name] = Path(raw)

    return MarketConfig(**overrides)
