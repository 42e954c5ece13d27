"""
Shared fixtures: in-memory ledger and swap venue doubles.
"""

import asyncio
import itertools
from typing import Callable, Dict, List, Optional, Set

import pytest
from eth_account import Account

from volume_swarm.config import NATIVE_TOKEN, SwapConfig
from volume_swarm.ledger import LedgerClient
from volume_swarm.venue import SwapPlan, SwapVenue
from volume_swarm.utils import LedgerUnavailableError, SwapError, TransferError


TOKEN = "0x696381f39F17cAD67032f5f52A4924ce84e51BA3"


def make_key(i: int) -> str:
    return "0x" + f"{i + 1:064x}"


class FakeLedger(LedgerClient):
    """Balances in a dict; transfers move them and return sequential hashes."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, fee: int = 10):
        self.balances: Dict[str, int] = dict(balances or {})
        self.fee = fee
        self.fail_recipients: Set[str] = set()
        self.unavailable_after: Optional[int] = None  # submits allowed before going down
        self.fee_unavailable = False
        self.before_submit: Optional[Callable[[int], None]] = None  # called with the submit count
        self.submitted: List[tuple] = []
        self._counter = itertools.count(1)

    async def get_balance(self, address: str) -> int:
        if self.fee_unavailable:
            raise LedgerUnavailableError("node down")
        return self.balances.get(address, 0)

    async def get_fee_estimate(self) -> int:
        if self.fee_unavailable:
            raise LedgerUnavailableError("node down")
        return self.fee

    async def submit_transfer(self, source, recipient: str, amount: int) -> str:
        if self.before_submit is not None:
            self.before_submit(len(self.submitted))
        if self.unavailable_after is not None and len(self.submitted) >= self.unavailable_after:
            raise LedgerUnavailableError("node down")

        self.submitted.append((source.address, recipient, amount))
        if recipient in self.fail_recipients:
            raise TransferError(f"rejected {recipient}")

        self.balances[source.address] = self.balances.get(source.address, 0) - amount - self.fee
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        return f"0x{next(self._counter):064x}"


class FakeVenue(SwapVenue):
    """
    Records every call and checks no wallet is used by two cycles at once.

    ``fail_buy`` / ``fail_sell`` hold wallet addresses whose swaps raise.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[tuple] = []
        self.fail_buy: Set[str] = set()
        self.fail_sell: Set[str] = set()
        self.raise_on_buy: Optional[BaseException] = None
        self.in_use: Set[str] = set()
        self.overlaps = 0
        self.max_concurrent = 0
        self._counter = itertools.count(1)

    async def quote_and_build(self, from_asset, to_asset, amount, slippage_percent, account, priority_fee_gwei):
        is_buy = from_asset == NATIVE_TOKEN
        self.calls.append(("buy" if is_buy else "sell", account.address, amount))

        if is_buy:
            if account.address in self.in_use:
                self.overlaps += 1
            self.in_use.add(account.address)
            self.max_concurrent = max(self.max_concurrent, len(self.in_use))

        return SwapPlan(
            from_asset=from_asset,
            to_asset=to_asset,
            sell_amount=0 if amount == "auto" else amount,
            buy_amount=0,
            min_buy_amount=0,
            account=account,
            transaction={},
            priority_fee_gwei=priority_fee_gwei,
        )

    async def execute(self, plan: SwapPlan, options) -> str:
        address = plan.account.address
        if self.delay:
            await asyncio.sleep(self.delay)

        try:
            if plan.is_buy:
                if self.raise_on_buy is not None:
                    raise self.raise_on_buy
                if address in self.fail_buy:
                    raise SwapError("no route")
            elif address in self.fail_sell:
                raise SwapError("sell reverted")
        except BaseException:
            self.in_use.discard(address)
            raise

        if not plan.is_buy:
            self.in_use.discard(address)
        return f"0x{next(self._counter):064x}"


@pytest.fixture
def keys():
    return [make_key(i) for i in range(10)]


@pytest.fixture
def funder():
    return Account.from_key(make_key(100))


@pytest.fixture
def swap_config():
    return SwapConfig(amount=10 ** 15, token_address=TOKEN)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def venue():
    return FakeVenue()
