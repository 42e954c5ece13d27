"""
Swap Cycle Module - Multi-Wallet Volume Scheduler
=================================================

Drives worker wallets through buy -> wait -> sell cycles with a fixed number
of concurrent workers.

Per cycle:
    IDLE -> BUYING -> WAITING -> SELLING -> DONE
                  \\-> DONE (buy failed, the sell is skipped)

A sell only ever follows a confirmed buy from the same cycle. Nothing is
retried within a cycle. The wallet goes back to the pool on every exit path.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from rich import box
from rich.table import Table

from .config import NATIVE_TOKEN, SwapConfig
from .venue import AUTO, SwapVenue
from .wallet_pool import WalletPool, WorkerAccount
from .utils import console, format_address, format_tx_hash, logger


class CycleStatus(Enum):
    COMPLETED = "completed"
    BUY_FAILED = "buy_failed"
    SELL_FAILED = "sell_failed"


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one buy/sell cycle for one wallet."""
    status: CycleStatus
    wallet_index: int
    wallet_address: str
    buy_ref: Optional[str] = None
    sell_ref: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def completed(cls, account: WorkerAccount, buy_ref: str, sell_ref: str) -> "CycleOutcome":
        return cls(CycleStatus.COMPLETED, account.index, account.address, buy_ref=buy_ref, sell_ref=sell_ref)

    @classmethod
    def buy_failed(cls, account: WorkerAccount, error: str) -> "CycleOutcome":
        return cls(CycleStatus.BUY_FAILED, account.index, account.address, error=error)

    @classmethod
    def sell_failed(cls, account: WorkerAccount, buy_ref: str, error: str) -> "CycleOutcome":
        return cls(CycleStatus.SELL_FAILED, account.index, account.address, buy_ref=buy_ref, error=error)

    @property
    def success(self) -> bool:
        return self.status is CycleStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'wallet_index': self.wallet_index,
            'wallet_address': self.wallet_address,
            'buy_ref': self.buy_ref,
            'sell_ref': self.sell_ref,
            'error': self.error,
            'timestamp': self.timestamp
        }


@dataclass
class CycleStats:
    """Aggregated statistics for one run_all()."""
    cycles: int = 0
    completed: int = 0
    buy_failed: int = 0
    sell_failed: int = 0
    parallelism: int = 0
    per_account: Dict[int, Dict[str, int]] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.cycles == 0:
            return 0.0
        return (self.completed / self.cycles) * 100

    def record(self, outcome: CycleOutcome):
        self.cycles += 1
        if outcome.status is CycleStatus.COMPLETED:
            self.completed += 1
        elif outcome.status is CycleStatus.BUY_FAILED:
            self.buy_failed += 1
        else:
            self.sell_failed += 1

        per_wallet = self.per_account.setdefault(
            outcome.wallet_index, {'cycles': 0, 'completed': 0, 'failed': 0}
        )
        per_wallet['cycles'] += 1
        if outcome.success:
            per_wallet['completed'] += 1
        else:
            per_wallet['failed'] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycles': self.cycles,
            'completed': self.completed,
            'buy_failed': self.buy_failed,
            'sell_failed': self.sell_failed,
            'success_rate': self.success_rate,
            'parallelism': self.parallelism,
            'per_account': self.per_account
        }

    def get_stats_table(self) -> Table:
        """Rich table with the run statistics."""
        table = Table(title="Swarm Trading Statistics", box=box.ROUNDED)

        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Workers", str(self.parallelism))
        table.add_row("Cycles", str(self.cycles))
        table.add_row("Completed", str(self.completed))
        table.add_row("Buy Failed", str(self.buy_failed))
        table.add_row("Sell Failed", str(self.sell_failed))
        table.add_row("Success Rate", f"{self.success_rate:.1f}%")

        return table


class SwapCycleScheduler:
    """
    Runs buy/sell cycles across the pool with bounded parallelism.

    Args:
        pool: Wallet pool to check wallets out of
        venue: Swap venue adapter
        swap_config: Shared, read-only swap parameters
        sell_delay: Seconds between a confirmed buy and the sell
        cycle_delay: Seconds a worker pauses after releasing its wallet
        stop_event: Optional externally owned stop signal
    """

    def __init__(
        self,
        pool: WalletPool,
        venue: SwapVenue,
        swap_config: SwapConfig,
        sell_delay: float = 0.0,
        cycle_delay: float = 0.0,
        stop_event: Optional[asyncio.Event] = None
    ):
        self.pool = pool
        self.venue = venue
        self.swap_config = swap_config
        self.sell_delay = sell_delay
        self.cycle_delay = cycle_delay
        self._stop_event = stop_event
        self.stats = CycleStats()
        self._cycles_started = 0

    @property
    def stop_event(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def stop(self):
        """Ask every worker to finish its current cycle and exit."""
        if not self.stopping:
            logger.info("Stop requested, workers will exit after their current cycle")
        self.stop_event.set()

    @staticmethod
    def effective_parallelism(configured: int, pool_size: int) -> int:
        """Workers actually started: never more than there are wallets."""
        if configured < 1:
            raise ValueError("Parallelism must be at least 1")
        return min(configured, pool_size)

    async def _pause(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when the stop signal cut it short."""
        if seconds <= 0:
            return self.stopping
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _swap(self, account: WorkerAccount, is_buy: bool) -> str:
        label = "[BUYING]" if is_buy else "[SELLING]"
        logger.info(f"{label} [{account.address}] Initiating swap")

        cfg = self.swap_config
        if is_buy:
            from_token, to_token, amount = NATIVE_TOKEN, cfg.token_address, cfg.amount
        else:
            from_token, to_token, amount = cfg.token_address, NATIVE_TOKEN, AUTO

        plan = await self.venue.quote_and_build(
            from_token,
            to_token,
            amount,
            cfg.slippage_percent,
            account,
            cfg.priority_fee_gwei
        )
        tx_hash = await self.venue.execute(plan, cfg.options)

        logger.info(f"{'[BOUGHT]' if is_buy else '[SOLD]'} [{format_tx_hash(tx_hash)}]")
        return tx_hash

    async def run_cycle(self, account: WorkerAccount) -> CycleOutcome:
        """
        Buy, wait, sell with a checked-out wallet, then release it.

        Never raises for venue failures; they become BUY_FAILED or SELL_FAILED.
        """
        try:
            try:
                buy_ref = await self._swap(account, is_buy=True)
            except Exception as e:
                logger.error(f"Error performing buy with wallet {account.index}: {e}")
                return CycleOutcome.buy_failed(account, str(e) or type(e).__name__)

            # A stop during the wait only shortens it: the position is still closed
            if await self._pause(self.sell_delay):
                logger.info(f"Wallet {account.index}: stop received while waiting, selling now")

            try:
                sell_ref = await self._swap(account, is_buy=False)
            except Exception as e:
                logger.error(f"Error performing sell with wallet {account.index}: {e}")
                return CycleOutcome.sell_failed(account, buy_ref, str(e) or type(e).__name__)

            return CycleOutcome.completed(account, buy_ref, sell_ref)
        finally:
            self.pool.release(account)

    def _take_cycle_budget(self, max_cycles: Optional[int]) -> bool:
        if max_cycles is not None and self._cycles_started >= max_cycles:
            return False
        self._cycles_started += 1
        return True

    async def _worker(self, worker_id: int, max_cycles: Optional[int]):
        logger.debug(f"Worker {worker_id} started")
        while not self.stopping:
            if not self._take_cycle_budget(max_cycles):
                break

            account = await self.pool.checkout()
            outcome = await self.run_cycle(account)

            self.stats.record(outcome)
            if not outcome.success:
                logger.warning(
                    f"Cycle {outcome.status.value} for wallet {outcome.wallet_index} "
                    f"({format_address(outcome.wallet_address)}): {outcome.error}"
                )

            await self._pause(self.cycle_delay)
        logger.debug(f"Worker {worker_id} exiting")

    async def run_all(self, parallelism: int, max_cycles: Optional[int] = None) -> CycleStats:
        """
        Run workers until stop() is called or ``max_cycles`` cycles have started.

        Args:
            parallelism: Requested worker count, capped at the pool size
            max_cycles: Optional total number of cycles across all workers

        Returns:
            CycleStats for this run
        """
        workers = self.effective_parallelism(parallelism, len(self.pool))
        self.stats.parallelism = workers
        self._cycles_started = 0

        logger.info(f"Available threads: {workers}")

        tasks = [asyncio.create_task(self._worker(i, max_cycles)) for i in range(workers)]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for worker_id, result in enumerate(results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Worker {worker_id} crashed: {result!r}")

        logger.info(
            f"Trading stopped: {self.stats.cycles} cycles, "
            f"{self.stats.completed} completed, success rate {self.stats.success_rate:.1f}%"
        )
        return self.stats

    def print_summary(self):
        console.print(self.stats.get_stats_table())
