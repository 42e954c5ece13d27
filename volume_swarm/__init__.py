"""
Volume Swarm

Multi-wallet volume bot: a pool of ephemeral worker wallets, batch funding
from one funder wallet, and concurrent buy/sell cycles.

Usage:
    from volume_swarm import Config, VolumeBot

    bot = VolumeBot(Config.from_env())
    asyncio.run(bot.start())
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .config import Config, ConfigManager, SwapConfig, SwapOptions, CommitmentLevel, PriorityRouting
from .retry import RetryPolicy
from .ledger import LedgerClient, Web3LedgerClient
from .venue import SwapVenue, SwapPlan, ZeroExSwapVenue, DryRunSwapVenue
from .wallet_pool import WalletPool, WorkerAccount, AccountState, SelectionMode
from .batch_transfer import (
    BatchTransferOrchestrator,
    TransferRequest,
    TransferResult,
    BatchSummary,
    required_balance,
)
from .swap_cycle import SwapCycleScheduler, CycleOutcome, CycleStatus, CycleStats
from .bot import VolumeBot
from .utils import (
    logger,
    setup_logging,
    format_wei,
    VolumeSwarmError,
    ConfigError,
    WalletGenerationError,
    InsufficientFundsError,
    TransferError,
    SwapError,
    LedgerUnavailableError,
    PoolInvariantError,
)

__all__ = [
    "Config",
    "ConfigManager",
    "SwapConfig",
    "SwapOptions",
    "CommitmentLevel",
    "PriorityRouting",
    "RetryPolicy",
    "LedgerClient",
    "Web3LedgerClient",
    "SwapVenue",
    "SwapPlan",
    "ZeroExSwapVenue",
    "DryRunSwapVenue",
    "WalletPool",
    "WorkerAccount",
    "AccountState",
    "SelectionMode",
    "BatchTransferOrchestrator",
    "TransferRequest",
    "TransferResult",
    "BatchSummary",
    "required_balance",
    "SwapCycleScheduler",
    "CycleOutcome",
    "CycleStatus",
    "CycleStats",
    "VolumeBot",
    "logger",
    "setup_logging",
    "format_wei",
    "VolumeSwarmError",
    "ConfigError",
    "WalletGenerationError",
    "InsufficientFundsError",
    "TransferError",
    "SwapError",
    "LedgerUnavailableError",
    "PoolInvariantError",
]
