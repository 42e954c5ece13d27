"""
Volume Bot - Swarm Bootstrap
============================

Wires the pool, the orchestrator and the scheduler together:

    generate wallets -> fund them in one batch -> run swap cycles
    -> (optional) reclaim native balances to the funder

SIGINT/SIGTERM handlers are in place before funding starts. A stop during
funding skips trading; a stop while trading lets every in-flight cycle sell
and release its wallet. Either way the worker balances are reclaimed on the
way out, also when an exception or interrupt ends the run early.
"""

import asyncio
import signal
from typing import Optional

from eth_account import Account
from rich import box
from rich.panel import Panel
from rich.table import Table
from web3 import Web3

from .batch_transfer import BatchSummary, BatchTransferOrchestrator
from .config import Config
from .ledger import LedgerClient, Web3LedgerClient
from .swap_cycle import CycleStats, SwapCycleScheduler
from .venue import DryRunSwapVenue, SwapVenue, ZeroExSwapVenue
from .wallet_pool import SelectionMode, WalletPool
from .utils import (
    ConfigError,
    InsufficientFundsError,
    LedgerUnavailableError,
    TransferError,
    console,
    format_address,
    format_wei,
    logger,
)


class VolumeBot:
    """
    One run of the volume swarm.

    ``ledger`` and ``venue`` default to the web3 / 0x adapters built from the
    config; pass your own to run against other backends.
    """

    def __init__(
        self,
        config: Config,
        ledger: Optional[LedgerClient] = None,
        venue: Optional[SwapVenue] = None,
        selection_mode: SelectionMode = SelectionMode.RANDOM
    ):
        self.config = config
        self.ledger = ledger
        self.venue = venue
        self.w3: Optional[Web3] = None

        self.pool = WalletPool(selection_mode=selection_mode)
        self.funder = None
        self.orchestrator: Optional[BatchTransferOrchestrator] = None
        self.scheduler: Optional[SwapCycleScheduler] = None

        self.funding_summary: Optional[BatchSummary] = None
        self.reclaim_summary: Optional[BatchSummary] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._funding_refused = False

    def connect(self):
        """Build the default adapters. Raises LedgerUnavailableError if the RPC is down."""
        if self.ledger is not None and self.venue is not None:
            return

        console.print("\n[bold cyan]Connecting to RPC...[/bold cyan]")
        self.w3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        if not self.w3.is_connected():
            raise LedgerUnavailableError(f"Failed to connect to {self.config.rpc_url}")

        if self.ledger is None:
            self.ledger = Web3LedgerClient(
                self.w3,
                self.config.chain_id,
                retry_policy=self.config.retry_policy(),
                receipt_timeout=self.config.receipt_timeout_seconds
            )
        if self.venue is None:
            if self.config.dry_run:
                self.venue = DryRunSwapVenue()
            else:
                self.venue = ZeroExSwapVenue(
                    self.w3,
                    self.config.chain_id,
                    api_key=self.config.zerox_api_key,
                    api_base=self.config.zerox_api_base
                )
        console.print("[green]Connected[/green]")

    def _load_funder(self):
        try:
            self.funder = Account.from_key(self.config.funder_private_key)
        except Exception as e:
            raise ConfigError(f"Invalid funder private key: {e}") from e
        logger.info(f"Funder wallet: {self.funder.address}")

    async def fund(self) -> BatchSummary:
        """
        Fund every pool wallet with ``fund_amount_eth`` from the funder.

        Raises:
            InsufficientFundsError: the funder cannot cover the batch
            TransferError: not a single wallet could be funded
        """
        amount = self.config.fund_amount_wei
        logger.info(f"Funding {len(self.pool)} wallets with {format_wei(amount)} ETH each")

        try:
            summary = await self.orchestrator.fund_accounts(self.funder, self.pool.accounts, amount)
        except InsufficientFundsError:
            # Refused before any transfer was sent
            self._funding_refused = True
            raise
        self.funding_summary = summary

        if not summary.successes:
            raise TransferError("Funding failed for every wallet")
        if summary.failures:
            logger.warning(f"{len(summary.failures)} wallets were not funded; their cycles will fail")
        return summary

    async def reclaim(self) -> BatchSummary:
        """Send whatever native balance the workers hold back to the funder."""
        summary = await self.orchestrator.sweep(self.pool.accounts, self.funder.address)
        self.reclaim_summary = summary
        logger.info(f"Reclaimed {format_wei(summary.total_transferred)} ETH to {format_address(self.funder.address)}")
        return summary

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> bool:
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.stop)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or no loop signal support on this platform
            return False
        return True

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def stop(self):
        """Ask the run to wind down. A stop during funding skips trading."""
        if self.scheduler is not None:
            self.scheduler.stop()
        elif self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Stop requested, trading will be skipped")
            self._stop_event.set()

    def _may_hold_funds(self) -> bool:
        if not len(self.pool) or self._funding_refused:
            return False
        # No summary means funding was cut off mid-batch
        if self.funding_summary is None:
            return True
        return bool(self.funding_summary.successes)

    async def start(self, max_cycles: Optional[int] = None) -> CycleStats:
        """
        Run the whole lifecycle. Startup failures propagate; trading failures
        are counted in the returned stats.

        Once funding has begun, worker balances are reclaimed on every exit
        path when ``reclaim_on_exit`` is set, interrupts included.
        """
        self._load_funder()
        self.connect()

        self.orchestrator = BatchTransferOrchestrator(self.ledger, dry_run=self.config.dry_run)
        self.pool.initialize(self.config.number_wallets)
        if self.config.key_export_file:
            self.pool.export_keys(self.config.key_export_file)

        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        handlers = self._install_signal_handlers(loop)
        console.print("[dim]Press Ctrl+C to stop\n[/dim]")

        stats = None
        try:
            await self.fund()

            self.scheduler = SwapCycleScheduler(
                self.pool,
                self.venue,
                self.config.swap_config(),
                sell_delay=self.config.sell_delay_ms / 1000,
                cycle_delay=self.config.cycle_delay_ms / 1000,
                stop_event=self._stop_event
            )
            self.print_banner()

            if self._stop_event.is_set():
                logger.warning("Stopped during funding, skipping trading")
                stats = self.scheduler.stats
            else:
                stats = await self.scheduler.run_all(self.config.threads, max_cycles=max_cycles)
        finally:
            if handlers:
                self._remove_signal_handlers(loop)
            if self.config.reclaim_on_exit and self._may_hold_funds():
                await self.reclaim()
            self.print_summary()

        return stats

    def print_banner(self):
        cfg = self.config
        console.print(Panel.fit(
            f"[bold cyan]Volume Swarm | {format_address(cfg.token_address)}[/bold cyan]\n"
            f"Wallets: {len(self.pool)}  Threads: {SwapCycleScheduler.effective_parallelism(cfg.threads, len(self.pool))}\n"
            f"Buy: {cfg.amount_eth} ETH  Sell delay: {cfg.sell_delay_ms}ms  Delay: {cfg.cycle_delay_ms}ms\n"
            f"Slippage: {cfg.slippage_percent}%  Mode: {'DRY RUN' if cfg.dry_run else 'LIVE'}",
            box=box.DOUBLE
        ))

    def _transfer_table(self, title: str, summary: BatchSummary) -> Table:
        table = Table(title=title, box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Transfers", str(len(summary)))
        table.add_row("Successful", str(len(summary.successes)))
        table.add_row("Failed", str(len(summary.failures)))
        table.add_row("Total ETH", format_wei(summary.total_transferred))
        return table

    def print_summary(self):
        if self.funding_summary is not None:
            console.print(self._transfer_table("Funding Summary", self.funding_summary))
        if self.scheduler is not None:
            self.scheduler.print_summary()
        if self.reclaim_summary is not None:
            console.print(self._transfer_table("Reclaim Summary", self.reclaim_summary))
