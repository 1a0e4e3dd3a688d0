"""
Configuration for Content Rail

Defaults mirror the public testnet deployment. Every value can be
overridden from the environment.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

# Stablecoin amounts are integers in the smallest unit (6 decimals).
TOKEN_DECIMALS = 6
ONE_TOKEN = 10 ** TOKEN_DECIMALS

TOKENS: Dict[str, str] = {
    "pathUsd": "0x20c0000000000000000000000000000000000000",
    "alphaUsd": "0x20c0000000000000000000000000000000000001",
    "betaUsd": "0x20c0000000000000000000000000000000000002",
}
DEFAULT_TOKEN = TOKENS["alphaUsd"]
DEFAULT_CURRENCY = "AlphaUSD"

LICENSE_DURATION = timedelta(days=30)
SPENDING_WINDOW = timedelta(hours=24)
PROOF_MAX_SKEW_SECONDS = 300

# Tracking tags: LIC:<fingerprint prefix>:<ms timestamp hex>:<index hex>
TRACKING_TAG_PREFIX = "LIC"
TRACKING_FINGERPRINT_HEX = 12


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass
class AgentConfig:
    """Spending policy and settlement preferences for one paying agent."""
    max_price_per_item: int = 10 * ONE_TOKEN  # $10
    daily_spending_limit: int = 100 * ONE_TOKEN  # $100
    use_fee_sponsorship: bool = True
    enable_batching: bool = True
    enable_parallel: bool = True
    max_batch_size: int = 50
    token: str = DEFAULT_TOKEN

    def __post_init__(self):
        if self.max_price_per_item <= 0 or self.daily_spending_limit <= 0:
            raise ValueError("spending limits must be positive")
        if self.max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")

    @classmethod
    def from_env(cls) -> "AgentConfig":
        return cls(
            max_price_per_item=_env_int("AGENT_MAX_PRICE_PER_ITEM", 10 * ONE_TOKEN),
            daily_spending_limit=_env_int("AGENT_DAILY_SPENDING_LIMIT", 100 * ONE_TOKEN),
            use_fee_sponsorship=_env_bool("AGENT_FEE_SPONSORSHIP", True),
            enable_batching=_env_bool("AGENT_ENABLE_BATCHING", True),
            enable_parallel=_env_bool("AGENT_ENABLE_PARALLEL", True),
            max_batch_size=_env_int("AGENT_MAX_BATCH_SIZE", 50),
            token=os.environ.get("AGENT_TOKEN", DEFAULT_TOKEN),
        )


@dataclass
class ServerSettings:
    """Settings for the HTTP API and for clients talking to it."""
    backend_url: str = "http://localhost:3001"
    api_key: str = "dev-key-change-in-production"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    port: int = 3001
    token: str = DEFAULT_TOKEN
    currency: str = DEFAULT_CURRENCY
    contract_address: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            backend_url=os.environ.get("BACKEND_URL", "http://localhost:3001"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            cors_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
            port=_env_int("PORT", 3001),
            token=os.environ.get("PAYMENT_TOKEN", DEFAULT_TOKEN),
            contract_address=os.environ.get("CONTRACT_ADDRESS"),
        )
