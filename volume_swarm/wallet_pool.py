"""
Wallet Pool Module - Exclusive-Use Worker Wallets
=================================================

Generates the swarm of ephemeral worker wallets and arbitrates which
concurrent worker may use which wallet.

Each wallet is either IDLE or ACTIVE. ``checkout()`` flips one IDLE wallet
to ACTIVE and hands it out; ``release()`` flips it back. The check and the
flip happen with no ``await`` in between while holding the pool's
``asyncio.Condition``, so two workers can never hold the same wallet.

Selection among idle wallets is non-deterministic in the default RANDOM mode.

Keys live in memory only, unless ``export_keys()`` writes them to an
owner-only JSON file.
"""

import asyncio
import json
import os
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .utils import (
    PoolInvariantError,
    WalletGenerationError,
    format_address,
    logger,
)


class AccountState(Enum):
    IDLE = "idle"
    ACTIVE = "active"


class SelectionMode(Enum):
    """Which idle wallet checkout() hands out."""
    RANDOM = "random"                    # Uniformly random idle wallet
    FIRST_AVAILABLE = "first_available"  # Lowest index idle wallet
    LEAST_USED = "least_used"            # Idle wallet with fewest checkouts


@dataclass(eq=False)
class WorkerAccount:
    """Individual worker wallet. Only the owning pool writes ``state``."""
    index: int
    signer: LocalAccount = field(repr=False)
    state: AccountState = AccountState.IDLE
    checkout_count: int = 0
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_used: Optional[str] = None

    @property
    def address(self) -> str:
        return self.signer.address

    @property
    def private_key(self) -> str:
        return "0x" + bytes(self.signer.key).hex()

    @property
    def is_active(self) -> bool:
        return self.state is AccountState.ACTIVE

    def sign_transaction(self, tx: Dict):
        return self.signer.sign_transaction(tx)

    def to_dict(self) -> Dict:
        """Public view of the wallet (no key material)."""
        return {
            "index": self.index,
            "address": self.address,
            "state": self.state.value,
            "checkout_count": self.checkout_count,
            "created_at": self.created_at,
            "last_used": self.last_used,
        }


def generate_signer() -> LocalAccount:
    """Fresh random key. Any failure here is fatal for startup."""
    try:
        private_key = "0x" + secrets.token_bytes(32).hex()
        return Account.from_key(private_key)
    except Exception as e:
        raise WalletGenerationError(f"Could not generate worker wallet: {e}") from e


class WalletPool:
    """
    Owns the worker wallets and their IDLE/ACTIVE state.

    Args:
        selection_mode: Policy for picking among idle wallets
        strict: Raise PoolInvariantError on double/foreign release instead of
            logging and ignoring it
    """

    def __init__(self, selection_mode: SelectionMode = SelectionMode.RANDOM, strict: bool = False):
        self.selection_mode = selection_mode
        self.strict = strict
        self._accounts: List[WorkerAccount] = []
        self._condition: Optional[asyncio.Condition] = None
        self._wakeups: Set[asyncio.Task] = set()

    @classmethod
    def from_private_keys(cls, keys: Iterable[str], **kwargs) -> "WalletPool":
        """Build a pool from existing keys instead of generating new ones."""
        pool = cls(**kwargs)
        for key in keys:
            try:
                signer = Account.from_key(key)
            except Exception as e:
                raise WalletGenerationError(f"Invalid worker key: {e}") from e
            pool._accounts.append(WorkerAccount(index=len(pool._accounts), signer=signer))
        return pool

    @property
    def _cond(self) -> asyncio.Condition:
        # Created lazily so the pool binds to the loop that actually uses it
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    def __len__(self) -> int:
        return len(self._accounts)

    @property
    def accounts(self) -> Tuple[WorkerAccount, ...]:
        return tuple(self._accounts)

    @property
    def idle_count(self) -> int:
        return sum(1 for a in self._accounts if a.state is AccountState.IDLE)

    @property
    def active_count(self) -> int:
        return sum(1 for a in self._accounts if a.state is AccountState.ACTIVE)

    def active_addresses(self) -> List[str]:
        return [a.address for a in self._accounts if a.state is AccountState.ACTIVE]

    def initialize(self, n: int) -> List[WorkerAccount]:
        """
        Generate ``n`` fresh worker wallets, all IDLE.

        Raises:
            ValueError: n < 1 or the pool already holds wallets
            WalletGenerationError: key generation failed
        """
        if n < 1:
            raise ValueError("Pool size must be at least 1")
        if self._accounts:
            raise ValueError(f"Pool already initialized with {len(self._accounts)} wallets")

        logger.info(f"Creating swarm of {n} wallets...")

        created = [WorkerAccount(index=i, signer=generate_signer()) for i in range(n)]
        self._accounts = created

        for account in created:
            logger.info(f"Created wallet {account.index}: {account.address}")

        logger.info(f"Swarm creation complete. {n} wallets created.")
        return list(created)

    def create_account(self) -> WorkerAccount:
        """Add one freshly generated IDLE wallet and wake waiting workers."""
        account = WorkerAccount(index=len(self._accounts), signer=generate_signer())
        self._accounts.append(account)
        logger.info(f"Created wallet {account.index}: {account.address}")
        self._notify_soon()
        return account

    def _notify_soon(self):
        # Waiters exist only inside a running loop
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._notify_waiters())
        self._wakeups.add(task)
        task.add_done_callback(self._wakeups.discard)

    async def _notify_waiters(self):
        async with self._cond:
            self._cond.notify_all()

    def _select(self, idle: List[WorkerAccount]) -> WorkerAccount:
        if self.selection_mode is SelectionMode.FIRST_AVAILABLE:
            return idle[0]
        if self.selection_mode is SelectionMode.LEAST_USED:
            return min(idle, key=lambda a: (a.checkout_count, a.index))
        return idle[secrets.randbelow(len(idle))]

    async def checkout(self) -> WorkerAccount:
        """
        Hand out one IDLE wallet, marking it ACTIVE.

        Suspends while every wallet is busy or the pool is still empty, until
        a wallet is released or created.
        """
        async with self._cond:
            while True:
                idle = [a for a in self._accounts if a.state is AccountState.IDLE]
                if idle:
                    account = self._select(idle)
                    account.state = AccountState.ACTIVE
                    account.checkout_count += 1
                    account.last_used = datetime.now().isoformat()
                    return account
                await self._cond.wait()

    def release(self, account: WorkerAccount):
        """
        Return a wallet to IDLE.

        Double release or release of a wallet this pool does not own is a
        programming error: logged and ignored, or raised when strict.
        """
        if not any(a is account for a in self._accounts):
            self._invariant_violation(f"Release of foreign wallet {format_address(account.address)}")
            return
        if account.state is not AccountState.ACTIVE:
            self._invariant_violation(f"Double release of wallet {account.index}")
            return

        account.state = AccountState.IDLE
        self._notify_soon()

    def _invariant_violation(self, message: str):
        if self.strict:
            raise PoolInvariantError(message)
        logger.error(f"{message} ignored")

    @asynccontextmanager
    async def borrow(self):
        """``async with pool.borrow() as account:`` with guaranteed release."""
        account = await self.checkout()
        try:
            yield account
        finally:
            self.release(account)

    def get_status(self) -> Dict:
        return {
            "total_wallets": len(self._accounts),
            "idle_wallets": self.idle_count,
            "active_wallets": self.active_count,
            "selection_mode": self.selection_mode.value,
            "wallets": [a.to_dict() for a in self._accounts],
        }

    def export_keys(self, path) -> Path:
        """
        Write every worker key to ``path`` as JSON, readable by the owner only.

        Needed when the run does not reclaim: without the keys, whatever the
        workers still hold cannot be moved again.
        """
        key_file = Path(path)
        data = {
            "exported_at": datetime.now().isoformat(),
            "wallets": [
                {"index": a.index, "address": a.address, "private_key": a.private_key}
                for a in self._accounts
            ],
        }

        try:
            key_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            # Restrictive permissions also when the file already existed
            os.chmod(key_file, 0o600)
        except OSError as e:
            logger.error(f"Failed to export worker keys: {e}")
            raise

        logger.warning(f"Exported {len(self._accounts)} worker keys to {key_file}")
        return key_file
