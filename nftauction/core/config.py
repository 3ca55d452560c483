"""
Marketplace configuration parameters.

Defines the signing domain, economic parameters and settlement timings.
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from nftauction.crypto import TypedDataDomain, is_valid_address, ZERO_ADDRESS


ENV_PREFIX = "NFTA_"


@dataclass
class MarketConfig:
    """Marketplace-wide configuration parameters"""

    # EIP-712 signing domain (must match the bidding front-end)
    domain_name: str = "NFTMarketplaceAuction"
    domain_version: str = "1"
    chain_id: int = 11155111  # Sepolia
    verifying_contract: str = ZERO_ADDRESS

    # Economics
    platform_fee_bps: int = 250  # 2.5% of the winning amount
    platform_address: str = ZERO_ADDRESS

    # Settlement timings (seconds)
    settlement_timeout: int = 600  # processing longer than this is stuck
    settlement_interval: int = 30  # expiry sweep period
    watchdog_interval: int = 300  # stuck-settlement check period
    error_retention: int = 30 * 24 * 3600  # failed-settlement errors kept this long
    settle_batch_size: int = 10  # auctions settled per sweep

    # Paths
    data_dir: Path = Path("data")
    db_name: str = "auctions.db"
    log_dir: Path = Path("logs")

    def __post_init__(self):
        """Coerce and validate values"""
        self.data_dir = Path(self.data_dir)
        self.log_dir = Path(self.log_dir)

        if not 0 <= self.platform_fee_bps <= 10_000:
            raise ValueError(f"platform_fee_bps must be within [0, 10000], got {self.platform_fee_bps}")
        if self.chain_id <= 0:
            raise ValueError("chain_id must be positive")
        for name in ("verifying_contract", "platform_address"):
            if not is_valid_address(getattr(self, name)):
                raise ValueError(f"{name} is not a valid address: {getattr(self, name)!r}")
        if self.settlement_timeout <= 0:
            raise ValueError("settlement_timeout must be positive")

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def domain(self) -> TypedDataDomain:
        """Signing domain shared with bidders"""
        return TypedDataDomain(
            name=self.domain_name,
            version=self.domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.verifying_contract.lower(),
        )


def _coerce(raw: str, current):
    """Convert an environment string to the type of the default value."""
    if isinstance(current, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, Path):
        return Path(raw)
    return raw


def load_config(config_path: Optional[str] = None, env_file: Optional[str] = None) -> MarketConfig:
    """
    Load configuration from file and environment.

    Precedence (lowest to highest): defaults, JSON file, NFTA_* variables.

    Args:
        config_path: Optional path to a JSON config file
        env_file: Optional .env file (defaults to ./.env when present)

    Returns:
        MarketConfig instance
    """
    load_dotenv(dotenv_path=env_file)

    values = {}
    if config_path:
        values.update(json.loads(Path(config_path).read_text()))

    defaults = MarketConfig()
    for f in fields(MarketConfig):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is not None:
            values[f.name] = _coerce(raw, getattr(defaults, f.name))

    unknown = set(values) - {f.name for f in fields(MarketConfig)}
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")

    return MarketConfig(**values)
