"""Configuration for zeromiles settlement.

Defaults target ETH collateral paid out as USDC on Osmosis. Every value can
be overridden with ``ZEROMILES_*`` environment variables via ``from_env``.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

COSMOS = "cosmos"
EVM = "evm"


@dataclass(frozen=True)
class ChainConfig:
    """How to reach and interpret one foreign chain."""

    name: str
    family: str  # "cosmos" or "evm"
    endpoint: str  # LCD REST base URL (cosmos) or JSON-RPC URL (evm)
    usdc_denom: str  # bank denom (cosmos) or token contract address (evm)
    usdc_decimals: int = 6
    address_prefix: Optional[str] = None  # bech32 HRP, cosmos only
    chain_id: Optional[str] = None
    min_confirmations: int = 1
    explorer: Optional[str] = None

    def __post_init__(self):
        if self.family not in (COSMOS, EVM):
            raise ValueError(f"Unknown chain family: {self.family}")
        if self.family == COSMOS and not self.address_prefix:
            raise ValueError(f"Cosmos chain {self.name} needs an address_prefix")


DEFAULT_CHAINS: Dict[str, ChainConfig] = {
    "osmosis": ChainConfig(
        name="osmosis",
        family=COSMOS,
        endpoint="https://lcd.osmosis.zone",
        # Noble USDC over IBC
        usdc_denom="ibc/498A0751C798A0D9A389AA3691123DADA57DAA4FE165D5C75894505B876BA6E4",
        address_prefix="osmo",
        chain_id="osmosis-1",
        explorer="https://www.mintscan.io/osmosis",
    ),
    "osmosis_testnet": ChainConfig(
        name="osmosis_testnet",
        family=COSMOS,
        endpoint="https://lcd.osmotest5.osmosis.zone",
        usdc_denom="ibc/DE6792CF9E521F6AD6E9A4BDF6225C9571A3B74ACC0A529F92BC5122A39D2E58",
        address_prefix="osmo",
        chain_id="osmo-test-5",
    ),
    "base": ChainConfig(
        name="base",
        family=EVM,
        endpoint="https://mainnet.base.org",
        usdc_denom="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        chain_id="8453",
        explorer="https://basescan.org",
    ),
    "base_sepolia": ChainConfig(
        name="base_sepolia",
        family=EVM,
        endpoint="https://sepolia.base.org",
        usdc_denom="0x036CbD53842c5426634e7929541eC2318f3dCF7e",  # Circle's testnet USDC
        chain_id="84532",
        explorer="https://sepolia.basescan.org",
    ),
    "ethereum": ChainConfig(
        name="ethereum",
        family=EVM,
        endpoint="https://eth.llamarpc.com",
        usdc_denom="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        chain_id="1",
        explorer="https://etherscan.io",
    ),
}


def get_zeromiles_home() -> Path:
    """Directory for local state (SQLite database)."""
    return Path(os.environ.get("ZEROMILES_HOME", Path.home() / ".zeromiles"))


@dataclass(frozen=True)
class LoanConfig:
    """Settlement policy and chain table."""

    collateral_denom: str = "eth"
    target_denom: str = "usdc"
    default_chain: str = "osmosis"
    chains: Dict[str, ChainConfig] = field(default_factory=lambda: dict(DEFAULT_CHAINS))

    # Polling
    poll_interval: float = 10.0  # seconds between verifier queries
    backoff_multiplier: float = 1.0  # 1.0 = fixed delay
    max_poll_interval: float = 300.0
    max_verification_attempts: Optional[int] = None  # None = poll until resolved
    max_claim_age: timedelta = timedelta(hours=1)  # staleness alarm threshold

    verify_timeout: float = 30.0  # per foreign-chain HTTP call

    def __post_init__(self):
        if self.poll_interval < 0:
            raise ValueError("poll_interval cannot be negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.max_verification_attempts is not None and self.max_verification_attempts < 1:
            raise ValueError("max_verification_attempts must be positive")
        if self.default_chain not in self.chains:
            raise ValueError(f"default_chain '{self.default_chain}' is not configured")

    def get_chain(self, name: Optional[str] = None) -> ChainConfig:
        """Look up a chain, falling back to the default chain."""
        key = name or self.default_chain
        if key not in self.chains:
            raise KeyError(key)
        return self.chains[key]

    def next_poll_delay(self, attempt: int) -> float:
        """Delay before poll number ``attempt + 1`` (attempts start at 1)."""
        delay = self.poll_interval * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, max(self.max_poll_interval, self.poll_interval))

    @classmethod
    def from_env(cls, **overrides) -> "LoanConfig":
        """Build config from ``ZEROMILES_*`` environment variables."""
        env = os.environ
        values = {}
        if "ZEROMILES_COLLATERAL_DENOM" in env:
            values["collateral_denom"] = env["ZEROMILES_COLLATERAL_DENOM"]
        if "ZEROMILES_TARGET_DENOM" in env:
            values["target_denom"] = env["ZEROMILES_TARGET_DENOM"]
        if "ZEROMILES_DEFAULT_CHAIN" in env:
            values["default_chain"] = env["ZEROMILES_DEFAULT_CHAIN"]
        if "ZEROMILES_POLL_INTERVAL" in env:
            values["poll_interval"] = float(env["ZEROMILES_POLL_INTERVAL"])
        if "ZEROMILES_BACKOFF_MULTIPLIER" in env:
            values["backoff_multiplier"] = float(env["ZEROMILES_BACKOFF_MULTIPLIER"])
        if "ZEROMILES_MAX_POLL_INTERVAL" in env:
            values["max_poll_interval"] = float(env["ZEROMILES_MAX_POLL_INTERVAL"])
        if env.get("ZEROMILES_MAX_VERIFICATION_ATTEMPTS"):
            values["max_verification_attempts"] = int(env["ZEROMILES_MAX_VERIFICATION_ATTEMPTS"])
        if "ZEROMILES_MAX_CLAIM_AGE_MINUTES" in env:
            values["max_claim_age"] = timedelta(
                minutes=float(env["ZEROMILES_MAX_CLAIM_AGE_MINUTES"])
            )

        chains = dict(DEFAULT_CHAINS)
        # Endpoint overrides, e.g. ZEROMILES_OSMOSIS_ENDPOINT=http://localhost:1317
        for name, chain in DEFAULT_CHAINS.items():
            endpoint = env.get(f"ZEROMILES_{name.upper()}_ENDPOINT")
            if endpoint:
                logger.debug(f"Using endpoint override for {name}: {endpoint}")
                chains[name] = replace(chain, endpoint=endpoint)
        values["chains"] = chains

        values.update(overrides)
        return cls(**values)
