"""
Tests for batch funding and reclaim.
"""

import asyncio

import pytest
from eth_account import Account

from volume_swarm.batch_transfer import (
    DRY_RUN_REFERENCE,
    DUST,
    UNAVAILABLE,
    BatchTransferOrchestrator,
    TransferRequest,
    TransferResult,
    required_balance,
)
from volume_swarm.wallet_pool import WalletPool
from volume_swarm.utils import InsufficientFundsError

from conftest import FakeLedger, make_key


RECIPIENTS = [Account.from_key(make_key(i)).address for i in range(3)]


def requests_of(amount, count=3):
    return [TransferRequest(recipient=r, amount=amount) for r in RECIPIENTS[:count]]


class TestTransferRequest:

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            TransferRequest(recipient=RECIPIENTS[0], amount=-1)

    def test_fractional_or_bool_amount_rejected(self):
        for amount in (300.0, 0.5, True):
            with pytest.raises(ValueError):
                TransferRequest(recipient=RECIPIENTS[0], amount=amount)

    def test_empty_recipient_rejected(self):
        with pytest.raises(ValueError):
            TransferRequest(recipient="", amount=1)

    def test_required_balance_charges_fee_per_transfer(self):
        assert required_balance(requests_of(300), 10) == 930
        assert required_balance([], 10) == 0


class TestSufficiency:

    def test_exact_balance_is_sufficient(self, funder):
        ledger = FakeLedger({funder.address: 930}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger)
        assert asyncio.run(orchestrator.check_sufficiency(funder, requests_of(300), 10))

    def test_one_short_is_insufficient(self, funder):
        ledger = FakeLedger({funder.address: 929}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger)
        assert not asyncio.run(orchestrator.check_sufficiency(funder, requests_of(300), 10))


class TestExecuteBatch:
    """Per-recipient isolation and accounting."""

    def test_partial_failure_is_isolated(self, funder):
        """1000 balance, 3 x 300 with fee 10, second recipient rejects."""
        ledger = FakeLedger({funder.address: 1000}, fee=10)
        ledger.fail_recipients.add(RECIPIENTS[1])
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

        assert len(summary) == 3
        assert [r.recipient for r in summary.results] == RECIPIENTS
        assert [r.success for r in summary.results] == [True, False, True]
        assert len(summary.successes) == 2
        assert len(summary.failures) == 1
        assert summary.total_transferred == 600
        assert "rejected" in summary.failures[0].reason
        # All three were attempted, in order
        assert [s[1] for s in ledger.submitted] == RECIPIENTS

    def test_insufficient_funds_sends_nothing(self, funder):
        ledger = FakeLedger({funder.address: 500}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger)

        with pytest.raises(InsufficientFundsError) as exc_info:
            asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

        assert exc_info.value.required == 930
        assert exc_info.value.available == 500
        assert ledger.submitted == []

    def test_empty_batch(self, funder, ledger):
        summary = asyncio.run(BatchTransferOrchestrator(ledger).execute_batch(funder, []))
        assert len(summary) == 0
        assert ledger.submitted == []

    def test_unavailable_midway_marks_remaining(self, funder):
        ledger = FakeLedger({funder.address: 10 ** 6}, fee=10)
        ledger.unavailable_after = 1
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

        assert len(summary) == 3
        assert summary.results[0].success
        assert [r.reason for r in summary.results[1:]] == [UNAVAILABLE, UNAVAILABLE]
        assert len(ledger.submitted) == 1

    def test_unavailable_before_start(self, funder):
        ledger = FakeLedger({funder.address: 10 ** 6})
        ledger.fee_unavailable = True
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

        assert len(summary) == 3
        assert all(r.reason == UNAVAILABLE for r in summary.results)
        assert ledger.submitted == []

    def test_dry_run_checks_but_does_not_send(self, funder):
        ledger = FakeLedger({funder.address: 1000}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger, dry_run=True)

        summary = asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

        assert all(r.reference == DRY_RUN_REFERENCE for r in summary.results)
        assert ledger.submitted == []

        ledger.balances[funder.address] = 10
        with pytest.raises(InsufficientFundsError):
            asyncio.run(orchestrator.execute_batch(funder, requests_of(300)))

    def test_fund_accounts(self, funder, keys):
        pool = WalletPool.from_private_keys(keys[:4])
        ledger = FakeLedger({funder.address: 10 ** 6}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.fund_accounts(funder, pool.accounts, 1000))

        assert len(summary.successes) == 4
        for account in pool.accounts:
            assert ledger.balances[account.address] == 1000
        assert ledger.balances[funder.address] == 10 ** 6 - 4 * 1010

    def test_summary_to_dict(self, funder):
        ledger = FakeLedger({funder.address: 1000}, fee=10)
        summary = asyncio.run(BatchTransferOrchestrator(ledger).execute_batch(funder, requests_of(300, 1)))
        data = summary.to_dict()
        assert data["total"] == 1
        assert data["successful"] == 1
        assert data["results"][0]["recipient"] == RECIPIENTS[0]


class TestSweep:
    """Reclaiming worker balances to the funder."""

    def test_sweep_returns_balance_minus_fee(self, funder, keys):
        pool = WalletPool.from_private_keys(keys[:3])
        a, b, c = pool.accounts
        ledger = FakeLedger({a.address: 1000, b.address: 5, c.address: 500}, fee=10)
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.sweep(pool.accounts, funder.address))

        assert len(summary) == 3
        assert [r.success for r in summary.results] == [True, False, True]
        assert summary.results[1].reason == DUST
        assert summary.total_transferred == 990 + 490
        assert ledger.balances[funder.address] == 1480

    def test_sweep_stops_sending_when_unavailable(self, funder, keys):
        pool = WalletPool.from_private_keys(keys[:3])
        ledger = FakeLedger({a.address: 1000 for a in pool.accounts}, fee=10)
        ledger.unavailable_after = 0
        orchestrator = BatchTransferOrchestrator(ledger)

        summary = asyncio.run(orchestrator.sweep(pool.accounts, funder.address))

        assert len(summary) == 3
        assert all(r.reason == UNAVAILABLE for r in summary.results)
        assert ledger.submitted == []


class TestTransferResult:

    def test_constructors(self):
        request = TransferRequest(recipient=RECIPIENTS[0], amount=5)
        ok = TransferResult.ok(request, "0xabc")
        failed = TransferResult.failed(request, "nope")
        assert ok.success and ok.reference == "0xabc" and ok.reason is None
        assert not failed.success and failed.reason == "nope" and failed.reference is None
