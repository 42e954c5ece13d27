"""
Ledger Client Module
====================

Balance, fee and native-transfer access to the chain.

``LedgerClient`` is the boundary the orchestrator talks to. ``Web3LedgerClient``
implements it with a synchronous ``Web3`` instance; every blocking call runs in
a worker thread so the event loop keeps scheduling the swarm.

Signers are duck-typed: anything with ``address`` and ``sign_transaction(tx)``
(an ``eth_account`` local account or a pool ``WorkerAccount``).
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from web3 import Web3
from web3.exceptions import TimeExhausted

from .retry import NETWORK_ERRORS, RetryPolicy
from .utils import LedgerUnavailableError, TransferError, logger, format_address, format_tx_hash


NATIVE_TRANSFER_GAS = 21000


class LedgerClient(ABC):
    """Ledger operations consumed by the batch transfer orchestrator."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in the smallest unit."""

    @abstractmethod
    async def get_fee_estimate(self) -> int:
        """Expected fee of one native transfer in the smallest unit."""

    @abstractmethod
    async def submit_transfer(self, source: Any, recipient: str, amount: int) -> str:
        """
        Send ``amount`` from ``source`` to ``recipient`` and wait for confirmation.

        Returns:
            Transaction reference (hash)

        Raises:
            TransferError: The transfer was rejected or reverted
            LedgerUnavailableError: The node could not be reached
        """


class Web3LedgerClient(LedgerClient):
    """LedgerClient backed by a JSON-RPC node through web3.py."""

    def __init__(
        self,
        web3: Web3,
        chain_id: int,
        retry_policy: Optional[RetryPolicy] = None,
        receipt_timeout: int = 120,
        fee_buffer: float = 1.2
    ):
        self.web3 = web3
        self.chain_id = chain_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.receipt_timeout = receipt_timeout
        self.fee_buffer = fee_buffer

    def _read(self, func, *args):
        """Run a read-only RPC under the retry policy."""
        try:
            return self.retry_policy.call(func, *args)
        except NETWORK_ERRORS as e:
            raise LedgerUnavailableError(f"RPC unreachable: {e}") from e

    async def get_balance(self, address: str) -> int:
        checksum = Web3.to_checksum_address(address)
        return int(await asyncio.to_thread(self._read, self.web3.eth.get_balance, checksum))

    async def get_fee_estimate(self) -> int:
        gas_price = await asyncio.to_thread(self._read, lambda: self.web3.eth.gas_price)
        return int(NATIVE_TRANSFER_GAS * gas_price * self.fee_buffer)

    async def submit_transfer(self, source: Any, recipient: str, amount: int) -> str:
        return await asyncio.to_thread(self._submit_transfer, source, recipient, amount)

    def _submit_transfer(self, source: Any, recipient: str, amount: int) -> str:
        to_address = Web3.to_checksum_address(recipient)

        nonce = self._read(self.web3.eth.get_transaction_count, source.address, 'pending')
        gas_price = self._read(lambda: self.web3.eth.gas_price)

        tx = {
            'to': to_address,
            'value': amount,
            'gas': NATIVE_TRANSFER_GAS,
            'gasPrice': gas_price,
            'nonce': nonce,
            'chainId': self.chain_id
        }

        signed_tx = source.sign_transaction(tx)

        # Sends are never retried: a timeout here may still have broadcast.
        try:
            tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except NETWORK_ERRORS as e:
            raise LedgerUnavailableError(f"RPC unreachable: {e}") from e
        except Exception as e:
            raise TransferError(f"Transfer to {format_address(to_address)} rejected: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.debug(f"Transfer {format_address(source.address)} -> {format_address(to_address)}: {format_tx_hash(tx_hex)}")

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise TransferError(f"Transfer {format_tx_hash(tx_hex)} not confirmed within {self.receipt_timeout}s") from e
        except NETWORK_ERRORS as e:
            raise LedgerUnavailableError(f"RPC unreachable: {e}") from e

        if receipt['status'] != 1:
            raise TransferError(f"Transfer {format_tx_hash(tx_hex)} reverted")

        return tx_hex
