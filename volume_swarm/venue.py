"""
Swap Venue Module
=================

Quote-and-build plus execute for one directional swap.

``SwapVenue`` is the boundary the cycle scheduler talks to.
``ZeroExSwapVenue`` implements it with the 0x Swap API v2 (AllowanceHolder
flow) for routing and web3.py for signing, sending and confirming.

API Docs: https://0x.org/docs/0x-swap-api/introduction
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import requests
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .config import NATIVE_TOKEN, CommitmentLevel, SwapOptions
from .retry import NETWORK_ERRORS
from .utils import SwapError, format_address, format_tx_hash, logger


AUTO = "auto"
MAX_UINT256 = 2 ** 256 - 1
DEFAULT_SWAP_GAS = 300000

ERC20_ABI = [
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}], "name": "balanceOf", "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}, {"name": "_spender", "type": "address"}], "name": "allowance", "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
    {"constant": False, "inputs": [{"name": "_spender", "type": "address"}, {"name": "_value", "type": "uint256"}], "name": "approve", "outputs": [{"name": "", "type": "bool"}], "type": "function"},
]


@dataclass
class SwapPlan:
    """A quoted swap, ready to be signed by ``account``."""
    from_asset: str
    to_asset: str
    sell_amount: int
    buy_amount: int
    min_buy_amount: int
    account: Any
    transaction: Dict[str, Any]
    priority_fee_gwei: float = 0.0
    allowance_target: Optional[str] = None
    quote: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_buy(self) -> bool:
        return self.from_asset.lower() == NATIVE_TOKEN.lower()


class SwapVenue(ABC):
    """Swap operations consumed by the cycle scheduler."""

    @abstractmethod
    async def quote_and_build(
        self,
        from_asset: str,
        to_asset: str,
        amount: Union[int, str],
        slippage_percent: float,
        account: Any,
        priority_fee_gwei: float
    ) -> SwapPlan:
        """
        Quote a swap of ``amount`` (smallest unit, or ``"auto"`` for the whole
        balance of ``from_asset``).

        Raises:
            SwapError: No route, no balance, or the venue refused to quote
        """

    @abstractmethod
    async def execute(self, plan: SwapPlan, options: SwapOptions) -> str:
        """
        Sign, send and confirm ``plan``.

        Returns:
            Transaction reference (hash)

        Raises:
            SwapError: The swap was rejected, reverted or never confirmed
        """


class _Pending(LookupError):
    """Receipt (or required depth) not there yet."""


class ZeroExSwapVenue(SwapVenue):
    """0x aggregator v2 swaps on an EVM chain."""

    def __init__(
        self,
        web3: Web3,
        chain_id: int,
        api_key: Optional[str] = None,
        api_base: str = "https://api.0x.org",
        http_timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        self.web3 = web3
        self.chain_id = chain_id
        self.api_base = api_base.rstrip("/")
        self.http_timeout = http_timeout
        self.session = session or requests.Session()

        # v2 API requires version header
        self.headers = {
            "Accept": "application/json",
            "0x-version": "v2"
        }
        if api_key:
            self.headers["0x-api-key"] = api_key

        self._relays: Dict[str, Web3] = {}

    # Quote

    async def quote_and_build(self, from_asset, to_asset, amount, slippage_percent, account, priority_fee_gwei):
        return await asyncio.to_thread(
            self._quote_and_build, from_asset, to_asset, amount, slippage_percent, account, priority_fee_gwei
        )

    def _token_balance(self, token: str, owner: str) -> int:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        return int(contract.functions.balanceOf(Web3.to_checksum_address(owner)).call())

    def _get_quote(self, sell_token: str, buy_token: str, sell_amount: int,
                   slippage_percent: float, taker: str) -> Dict[str, Any]:
        params = {
            "chainId": self.chain_id,
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "slippageBps": str(int(slippage_percent * 100)),  # v2 uses basis points
            "taker": taker,
        }

        try:
            response = self.session.get(
                f"{self.api_base}/swap/allowance-holder/quote",
                params=params,
                headers=self.headers,
                timeout=self.http_timeout
            )
        except requests.exceptions.RequestException as e:
            raise SwapError(f"0x API request failed: {e}") from e

        if response.status_code != 200:
            error_text = response.text[:300] if response.text else "Unknown error"
            raise SwapError(f"0x API error: {response.status_code} - {error_text}")

        quote = response.json()
        if not quote.get("liquidityAvailable", True):
            raise SwapError("No liquidity available for this pair")
        if not quote.get("transaction"):
            raise SwapError("No transaction data in quote")
        return quote

    def _quote_and_build(self, from_asset, to_asset, amount, slippage_percent, account, priority_fee_gwei) -> SwapPlan:
        if amount == AUTO:
            if from_asset.lower() == NATIVE_TOKEN.lower():
                raise SwapError("'auto' amount is only supported when selling a token")
            try:
                amount = self._token_balance(from_asset, account.address)
            except NETWORK_ERRORS as e:
                raise SwapError(f"Could not read token balance: {e}") from e

        amount = int(amount)
        if amount <= 0:
            raise SwapError(f"Nothing to swap for {format_address(account.address)}")

        quote = self._get_quote(from_asset, to_asset, amount, slippage_percent, account.address)

        allowance_target = None
        allowance_issue = (quote.get("issues") or {}).get("allowance")
        if allowance_issue:
            allowance_target = allowance_issue.get("spender")

        logger.debug(f"0x route: sell {amount}, expected {quote.get('buyAmount')}, min {quote.get('minBuyAmount')}")

        return SwapPlan(
            from_asset=from_asset,
            to_asset=to_asset,
            sell_amount=amount,
            buy_amount=int(quote.get("buyAmount", 0)),
            min_buy_amount=int(quote.get("minBuyAmount", 0)),
            account=account,
            transaction=quote["transaction"],
            priority_fee_gwei=priority_fee_gwei,
            allowance_target=allowance_target,
            quote=quote,
        )

    # Execute

    async def execute(self, plan: SwapPlan, options: SwapOptions) -> str:
        return await asyncio.to_thread(self._execute, plan, options)

    def _relay(self, options: SwapOptions) -> Web3:
        """Web3 used for broadcasting: a private relay when routing asks for one."""
        routing = options.priority_routing
        if routing is None or not routing.endpoint:
            return self.web3
        if routing.endpoint not in self._relays:
            self._relays[routing.endpoint] = Web3(Web3.HTTPProvider(routing.endpoint))
        return self._relays[routing.endpoint]

    def _fee_fields(self, plan: SwapPlan, options: SwapOptions) -> Dict[str, int]:
        """EIP-1559 fees when the chain has a base fee, legacy gas price otherwise."""
        tip_gwei = plan.priority_fee_gwei
        if options.priority_routing is not None:
            tip_gwei += options.priority_routing.tip_gwei

        latest_block = self.web3.eth.get_block('latest')
        if 'baseFeePerGas' in latest_block:
            priority_fee = Web3.to_wei(tip_gwei, 'gwei')
            return {
                'maxPriorityFeePerGas': priority_fee,
                'maxFeePerGas': latest_block['baseFeePerGas'] * 2 + priority_fee,
            }

        gas_price = int(plan.transaction.get("gasPrice") or self.web3.eth.gas_price)
        return {'gasPrice': gas_price + Web3.to_wei(tip_gwei, 'gwei')}

    def _send_signed(self, plan: SwapPlan, tx: Dict[str, Any], options: SwapOptions):
        signed = plan.account.sign_transaction(tx)
        tx_hash = self._relay(options).eth.send_raw_transaction(signed.raw_transaction)
        return signed, tx_hash

    def _ensure_allowance(self, plan: SwapPlan, options: SwapOptions):
        if plan.is_buy or not plan.allowance_target:
            return

        owner = Web3.to_checksum_address(plan.account.address)
        spender = Web3.to_checksum_address(plan.allowance_target)
        token = self.web3.eth.contract(address=Web3.to_checksum_address(plan.from_asset), abi=ERC20_ABI)

        if token.functions.allowance(owner, spender).call() >= plan.sell_amount:
            return

        logger.info(f"Approving {format_address(spender)} for {format_address(owner)}")
        tx = token.functions.approve(spender, MAX_UINT256).build_transaction({
            'from': owner,
            'nonce': self.web3.eth.get_transaction_count(owner, 'pending'),
            'chainId': self.chain_id,
            **self._fee_fields(plan, options),
        })
        _, tx_hash = self._send_signed(plan, tx, options)
        receipt = self.web3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=options.confirmation_window_seconds
        )
        if receipt['status'] != 1:
            raise SwapError(f"Approval {format_tx_hash(Web3.to_hex(tx_hash))} reverted")

    def _build_tx(self, plan: SwapPlan, options: SwapOptions) -> Dict[str, Any]:
        quoted = plan.transaction
        owner = Web3.to_checksum_address(plan.account.address)

        tx = {
            'from': owner,
            'to': Web3.to_checksum_address(quoted["to"]),
            'data': quoted["data"],
            'value': int(quoted.get("value", 0)),
            'nonce': self.web3.eth.get_transaction_count(owner, 'pending'),
            'chainId': self.chain_id,
            **self._fee_fields(plan, options),
        }

        if options.skip_preflight:
            tx['gas'] = int(quoted.get("gas") or DEFAULT_SWAP_GAS)
        else:
            try:
                tx['gas'] = int(self.web3.eth.estimate_gas(tx) * 1.2)
            except Exception as e:
                raise SwapError(f"Preflight simulation failed: {e}") from e
        return tx

    def _confirm(self, tx_hash, raw_tx: bytes, options: SwapOptions) -> Dict[str, Any]:
        """Poll for the receipt under the options' retry policy, rebroadcasting as configured."""
        resend_every = options.resend_interval_ms / 1000
        last_send = time.monotonic()
        relay = self._relay(options)

        def poll():
            nonlocal last_send
            try:
                receipt = self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                if resend_every > 0 and time.monotonic() - last_send >= resend_every:
                    last_send = time.monotonic()
                    try:
                        relay.eth.send_raw_transaction(raw_tx)
                    except Exception as e:
                        # "already known" and "nonce too low" are expected here
                        logger.debug(f"Rebroadcast skipped: {e}")
                raise _Pending("receipt not found")
            if receipt is None:
                raise _Pending("receipt not found")
            return receipt

        policy = options.retry_policy()
        try:
            receipt = policy.call(poll)
        except _Pending:
            raise SwapError(f"Not confirmed after {policy.max_attempts} attempts")

        if receipt['status'] != 1:
            raise SwapError(f"Swap {format_tx_hash(Web3.to_hex(tx_hash))} reverted")

        self._await_commitment(receipt['blockNumber'], options)
        return receipt

    def _await_commitment(self, block_number: int, options: SwapOptions):
        if options.commitment_level is CommitmentLevel.PROCESSED:
            return

        def deep_enough():
            if options.commitment_level is CommitmentLevel.FINALIZED:
                head = self.web3.eth.get_block('finalized')['number']
                if head < block_number:
                    raise _Pending("not finalized")
            elif self.web3.eth.block_number < block_number + 1:
                raise _Pending("not confirmed")

        try:
            options.retry_policy().call(deep_enough)
        except _Pending:
            raise SwapError(f"Block {block_number} did not reach {options.commitment_level.value}")

    def _execute(self, plan: SwapPlan, options: SwapOptions) -> str:
        try:
            self._ensure_allowance(plan, options)
            tx = self._build_tx(plan, options)
            signed, tx_hash = self._send_signed(plan, tx, options)
        except SwapError:
            raise
        except Exception as e:
            raise SwapError(f"Swap submission failed: {e}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.debug(f"Swap sent: {format_tx_hash(tx_hex)}")

        try:
            self._confirm(tx_hash, signed.raw_transaction, options)
        except SwapError:
            raise
        except Exception as e:
            raise SwapError(f"Swap {format_tx_hash(tx_hex)} confirmation failed: {e}") from e

        return tx_hex


class DryRunSwapVenue(SwapVenue):
    """Logs what would be swapped and returns placeholder references."""

    REFERENCE = "DRY-RUN"

    async def quote_and_build(self, from_asset, to_asset, amount, slippage_percent, account, priority_fee_gwei):
        logger.info(
            f"[DRY RUN] Would swap {amount} of {format_address(from_asset)} -> "
            f"{format_address(to_asset)} for {format_address(account.address)}"
        )
        sell_amount = 0 if amount == AUTO else int(amount)
        return SwapPlan(
            from_asset=from_asset,
            to_asset=to_asset,
            sell_amount=sell_amount,
            buy_amount=0,
            min_buy_amount=0,
            account=account,
            transaction={},
            priority_fee_gwei=priority_fee_gwei,
        )

    async def execute(self, plan: SwapPlan, options: SwapOptions) -> str:
        return self.REFERENCE
