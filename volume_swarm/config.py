"""
Configuration Management Module

Runtime settings come from the environment, optionally layered on top of a
YAML file. Swap settings derived from them are frozen and shared read-only by
every cycle.
"""

import os
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Mapping, Optional

import yaml
from web3 import Web3

from .retry import RetryPolicy
from .utils import ConfigError, mask_sensitive, validate_private_key


# Native asset placeholder understood by the 0x API
NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


class CommitmentLevel(Enum):
    """How deep a swap transaction must be before it counts as confirmed."""
    PROCESSED = "processed"   # receipt seen
    CONFIRMED = "confirmed"   # one block on top of the receipt
    FINALIZED = "finalized"   # covered by the chain's finalized tag


@dataclass(frozen=True)
class PriorityRouting:
    """Private relay submission (bundle-style routing with a tip)."""
    endpoint: Optional[str] = None
    tip_gwei: float = 0.0001


@dataclass(frozen=True)
class SwapOptions:
    """Execution options passed to the swap venue on every execute()."""
    skip_preflight: bool = True
    confirmation_retries: int = 30
    confirmation_retry_timeout_ms: int = 1000
    resend_interval_ms: int = 1000
    commitment_level: CommitmentLevel = CommitmentLevel.PROCESSED
    priority_routing: Optional[PriorityRouting] = None

    def retry_policy(self) -> RetryPolicy:
        """Receipt polling policy: fixed interval, bounded attempts."""
        return RetryPolicy.fixed(
            attempts=max(1, self.confirmation_retries),
            interval_seconds=self.confirmation_retry_timeout_ms / 1000,
            retry_on=(LookupError, TimeoutError, ConnectionError),
        )

    @property
    def confirmation_window_seconds(self) -> float:
        """Total time the receipt polling may take; also bounds approval waits."""
        return max(1.0, self.confirmation_retries * self.confirmation_retry_timeout_ms / 1000)


@dataclass(frozen=True)
class SwapConfig:
    """Read-only swap parameters shared by all cycles."""
    amount: int                              # buy size in wei
    token_address: str
    slippage_percent: float = 10.0
    priority_fee_gwei: float = 0.0
    options: SwapOptions = field(default_factory=SwapOptions)


@dataclass
class Config:
    """Bot configuration settings."""

    # Network
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453

    # Target token
    token_address: str = ""

    # Trading settings
    amount_eth: float = 0.001              # buy size per cycle
    slippage_percent: float = 10.0
    priority_fee_gwei: float = 0.0
    sell_delay_ms: int = 5000              # wait between buy and sell
    cycle_delay_ms: int = 1000             # wait after a worker releases its wallet
    threads: int = field(default_factory=lambda: os.cpu_count() or 1)
    use_priority_routing: bool = False
    private_relay_url: Optional[str] = None

    # Swarm settings
    number_wallets: int = 50
    fund_amount_eth: float = 0.005         # per worker wallet
    funder_private_key: Optional[str] = None
    reclaim_on_exit: bool = True
    key_export_file: Optional[str] = None  # worker keys as JSON, for runs without reclaim

    # 0x API
    zerox_api_key: Optional[str] = None
    zerox_api_base: str = "https://api.0x.org"

    # Operation
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./volume-swarm.log"
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    receipt_timeout_seconds: int = 120

    SECRET_FIELDS = ("funder_private_key", "zerox_api_key")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with secrets masked."""
        data = asdict(self)
        for name in self.SECRET_FIELDS:
            if data.get(name):
                data[name] = mask_sensitive(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary, ignoring unknown keys."""
        valid_fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a Config from environment variables only."""
        return cls.from_dict(read_env(environ))

    @property
    def amount_wei(self) -> int:
        return Web3.to_wei(self.amount_eth, "ether")

    @property
    def fund_amount_wei(self) -> int:
        return Web3.to_wei(self.fund_amount_eth, "ether")

    def validate(self, require_funder: bool = True):
        """Raise ConfigError on the first unusable setting."""
        if not self.rpc_url:
            raise ConfigError("RPC_URL is required")
        if not self.token_address or not Web3.is_address(self.token_address):
            raise ConfigError(f"TOKEN_ADDRESS is missing or invalid: {self.token_address!r}")
        if self.amount_eth <= 0:
            raise ConfigError("AMOUNT must be positive")
        if self.fund_amount_eth <= 0:
            raise ConfigError("FUND_AMOUNT must be positive")
        if self.number_wallets < 1:
            raise ConfigError("NUMBER_WALLETS must be at least 1")
        if self.threads < 1:
            raise ConfigError("THREADS must be at least 1")
        if not 0 < self.slippage_percent < 100:
            raise ConfigError("SLIPPAGE must be between 0 and 100")
        if self.sell_delay_ms < 0 or self.cycle_delay_ms < 0:
            raise ConfigError("DELAY and SELL_DELAY cannot be negative")
        if require_funder and not validate_private_key(self.funder_private_key or ""):
            raise ConfigError("FUNDER_PRIVATE_KEY is missing or malformed")
        if not self.reclaim_on_exit and not self.key_export_file:
            raise ConfigError(
                "RECLAIM_ON_EXIT=false needs KEY_EXPORT_FILE, "
                "otherwise worker balances are unrecoverable after exit"
            )

    def retry_policy(self) -> RetryPolicy:
        """Policy for ledger reads (balances, fees, nonces)."""
        return RetryPolicy(
            max_attempts=self.max_retries,
            backoff_seconds=self.retry_delay_seconds,
            max_backoff_seconds=max(self.retry_delay_seconds, 10.0),
        )

    def swap_options(self) -> SwapOptions:
        routing = None
        if self.use_priority_routing:
            routing = PriorityRouting(endpoint=self.private_relay_url)
        return SwapOptions(priority_routing=routing)

    def swap_config(self) -> SwapConfig:
        return SwapConfig(
            amount=self.amount_wei,
            token_address=Web3.to_checksum_address(self.token_address),
            slippage_percent=self.slippage_percent,
            priority_fee_gwei=self.priority_fee_gwei,
            options=self.swap_options(),
        )


# Environment variable -> (field, parser)
def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


ENV_FIELDS = {
    "RPC_URL": ("rpc_url", str),
    "CHAIN_ID": ("chain_id", int),
    "TOKEN_ADDRESS": ("token_address", str),
    "AMOUNT": ("amount_eth", float),
    "SLIPPAGE": ("slippage_percent", float),
    "PRIORITY_FEE": ("priority_fee_gwei", float),
    "SELL_DELAY": ("sell_delay_ms", int),
    "DELAY": ("cycle_delay_ms", int),
    "THREADS": ("threads", int),
    "JITO": ("use_priority_routing", _parse_bool),
    "PRIORITY_ROUTING": ("use_priority_routing", _parse_bool),
    "PRIVATE_RELAY_URL": ("private_relay_url", str),
    "NUMBER_WALLETS": ("number_wallets", int),
    "FUND_AMOUNT": ("fund_amount_eth", float),
    "FUNDER_PRIVATE_KEY": ("funder_private_key", str),
    "RECLAIM_ON_EXIT": ("reclaim_on_exit", _parse_bool),
    "KEY_EXPORT_FILE": ("key_export_file", str),
    "ZEROX_API_KEY": ("zerox_api_key", str),
    "ZEROX_API_BASE": ("zerox_api_base", str),
    "DRY_RUN": ("dry_run", _parse_bool),
    "LOG_LEVEL": ("log_level", str),
    "LOG_FILE": ("log_file", str),
    "MAX_RETRIES": ("max_retries", int),
}


def read_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect recognised environment variables into config field values."""
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    for name, (field_name, parser) in ENV_FIELDS.items():
        raw = environ.get(name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = parser(raw.strip())
        except ValueError:
            raise ConfigError(f"Invalid value for {name}: {raw!r}")
        if parser is _parse_bool and field_name in values:
            # Aliased toggles (JITO, PRIORITY_ROUTING): either one turns it on
            value = values[field_name] or value
        values[field_name] = value
    return values


class ConfigManager:
    """Loads configuration from an optional YAML file plus the environment."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else None

    def read_raw_config(self) -> Dict[str, Any]:
        if self.config_path is None:
            return {}
        if not self.config_path.exists():
            raise ConfigError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {self.config_path}")
        return data

    def load_config(self, environ: Optional[Mapping[str, str]] = None) -> Config:
        """File values first, environment variables override them."""
        data = self.read_raw_config()
        data.update(read_env(environ))
        return Config.from_dict(data)


DEFAULT_CONFIG = """
# Volume Swarm configuration. Environment variables override these values.
# Keep FUNDER_PRIVATE_KEY in the environment, not in this file.

rpc_url: https://mainnet.base.org
chain_id: 8453
token_address: ""

amount_eth: 0.001
slippage_percent: 10.0
priority_fee_gwei: 0.0
sell_delay_ms: 5000
cycle_delay_ms: 1000
use_priority_routing: false

number_wallets: 50
fund_amount_eth: 0.005
reclaim_on_exit: true
# Required when reclaim_on_exit is false: worker keys are written here (mode 600)
# key_export_file: ./worker-keys.json

dry_run: false
log_level: INFO
log_file: ./volume-swarm.log
""".strip()
