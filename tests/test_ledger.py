"""
Tests for the web3 ledger client, against a mocked node.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from web3.exceptions import TimeExhausted

from volume_swarm.ledger import NATIVE_TRANSFER_GAS, Web3LedgerClient
from volume_swarm.retry import RetryPolicy
from volume_swarm.utils import LedgerUnavailableError, TransferError

from conftest import make_key


TX_HASH = bytes.fromhex("ab" * 32)
RECIPIENT = Account.from_key(make_key(1)).address


@pytest.fixture
def web3():
    w3 = MagicMock()
    w3.eth.gas_price = 1_000_000_000
    w3.eth.get_balance.return_value = 5 * 10 ** 18
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = {'status': 1, 'blockNumber': 100}
    return w3


@pytest.fixture
def client(web3):
    return Web3LedgerClient(web3, chain_id=8453, retry_policy=RetryPolicy.fixed(attempts=2, interval_seconds=0))


@pytest.fixture
def source():
    return Account.from_key(make_key(0))


class TestReads:

    def test_get_balance(self, client, web3):
        assert asyncio.run(client.get_balance(RECIPIENT)) == 5 * 10 ** 18
        web3.eth.get_balance.assert_called_once_with(RECIPIENT)

    def test_fee_estimate_includes_buffer(self, client):
        fee = asyncio.run(client.get_fee_estimate())
        assert fee == int(NATIVE_TRANSFER_GAS * 1_000_000_000 * 1.2)

    def test_balance_retried_then_unavailable(self, client, web3):
        web3.eth.get_balance.side_effect = ConnectionError("refused")
        with pytest.raises(LedgerUnavailableError):
            asyncio.run(client.get_balance(RECIPIENT))
        assert web3.eth.get_balance.call_count == 2

    def test_transient_read_error_recovers(self, client, web3):
        web3.eth.get_balance.side_effect = [ConnectionError("refused"), 42]
        assert asyncio.run(client.get_balance(RECIPIENT)) == 42


class TestSubmitTransfer:

    def test_success(self, client, web3, source):
        reference = asyncio.run(client.submit_transfer(source, RECIPIENT, 1000))

        assert reference == "0x" + "ab" * 32
        web3.eth.get_transaction_count.assert_called_once_with(source.address, 'pending')
        web3.eth.send_raw_transaction.assert_called_once()
        web3.eth.wait_for_transaction_receipt.assert_called_once_with(TX_HASH, timeout=120)

    def test_reverted(self, client, web3, source):
        web3.eth.wait_for_transaction_receipt.return_value = {'status': 0}
        with pytest.raises(TransferError):
            asyncio.run(client.submit_transfer(source, RECIPIENT, 1000))

    def test_rejected(self, client, web3, source):
        web3.eth.send_raw_transaction.side_effect = ValueError("insufficient funds for gas")
        with pytest.raises(TransferError):
            asyncio.run(client.submit_transfer(source, RECIPIENT, 1000))

    def test_send_not_retried(self, client, web3, source):
        web3.eth.send_raw_transaction.side_effect = ConnectionError("reset")
        with pytest.raises(LedgerUnavailableError):
            asyncio.run(client.submit_transfer(source, RECIPIENT, 1000))
        assert web3.eth.send_raw_transaction.call_count == 1

    def test_receipt_timeout(self, client, web3, source):
        web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        with pytest.raises(TransferError):
            asyncio.run(client.submit_transfer(source, RECIPIENT, 1000))
