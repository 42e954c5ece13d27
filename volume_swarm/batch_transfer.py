"""
Batch Transfer Module - Funding and Reclaiming the Swarm
========================================================

Moves native funds between the funder wallet and the worker wallets.

SAFETY:
- The funder balance is checked against the whole batch BEFORE anything is
  sent: sum(amounts) + fee_estimate * len(requests). Fees are charged once per
  transfer because every transfer is its own transaction.
- Each recipient is processed independently, in input order, exactly once.
  One failure never skips the recipients after it.
- The summary always has one result per request.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .ledger import LedgerClient
from .utils import (
    InsufficientFundsError,
    LedgerUnavailableError,
    format_address,
    format_tx_hash,
    format_wei,
    logger,
)


UNAVAILABLE = "unavailable"
DUST = "dust"
DRY_RUN_REFERENCE = "DRY-RUN"


@dataclass(frozen=True)
class TransferRequest:
    """One recipient and the amount (wei) it should receive."""
    recipient: str
    amount: int

    def __post_init__(self):
        if not self.recipient:
            raise ValueError("Transfer recipient is required")
        if not isinstance(self.amount, int) or isinstance(self.amount, bool) or self.amount < 0:
            raise ValueError(f"Transfer amount must be a non-negative integer, got {self.amount!r}")


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one TransferRequest: a reference on success, a reason on failure."""
    recipient: str
    amount: int
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def ok(cls, request: TransferRequest, reference: str) -> "TransferResult":
        return cls(recipient=request.recipient, amount=request.amount, success=True, reference=reference)

    @classmethod
    def failed(cls, request: TransferRequest, reason: str) -> "TransferResult":
        return cls(recipient=request.recipient, amount=request.amount, success=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recipient': self.recipient,
            'amount': self.amount,
            'success': self.success,
            'reference': self.reference,
            'reason': self.reason,
            'timestamp': self.timestamp
        }


@dataclass(frozen=True)
class BatchSummary:
    """All results of one batch run, built once when the run ends."""
    results: Tuple[TransferResult, ...]

    @property
    def successes(self) -> List[TransferResult]:
        return [r for r in self.results if r.success]

    @property
    def failures(self) -> List[TransferResult]:
        return [r for r in self.results if not r.success]

    @property
    def total_transferred(self) -> int:
        return sum(r.amount for r in self.results if r.success)

    def __len__(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': len(self.results),
            'successful': len(self.successes),
            'failed': len(self.failures),
            'total_transferred': self.total_transferred,
            'results': [r.to_dict() for r in self.results]
        }


def required_balance(requests: Sequence[TransferRequest], fee_estimate: int) -> int:
    """Balance the source needs to cover every request and its fee."""
    return sum(r.amount for r in requests) + fee_estimate * len(requests)


class BatchTransferOrchestrator:
    """
    Funds worker wallets from one source and sweeps them back.

    The ledger adapter does submission and confirmation; this class owns the
    sufficiency precondition and the per-recipient bookkeeping.
    """

    def __init__(self, ledger: LedgerClient, dry_run: bool = False):
        self.ledger = ledger
        self.dry_run = dry_run

    async def check_sufficiency(self, source: Any, requests: Sequence[TransferRequest], fee_estimate: int) -> bool:
        """True iff the source balance covers every request plus one fee each."""
        balance, required = await self._project(source, requests, fee_estimate)
        return balance >= required

    async def _project(self, source: Any, requests: Sequence[TransferRequest], fee_estimate: int) -> Tuple[int, int]:
        required = required_balance(requests, fee_estimate)
        balance = await self.ledger.get_balance(source.address)

        logger.info(
            f"Balance: {format_wei(balance)}, required: {format_wei(required)} "
            f"({len(requests)} transfers, fee estimate {format_wei(fee_estimate)} each)"
        )
        return balance, required

    async def execute_batch(self, source: Any, requests: Sequence[TransferRequest]) -> BatchSummary:
        """
        Send every request from ``source``.

        Raises:
            InsufficientFundsError: the precondition failed; nothing was sent

        Returns:
            BatchSummary with exactly one result per request, in input order
        """
        requests = list(requests)
        if not requests:
            return BatchSummary(results=())

        logger.info(f"Batch transfer from {format_address(source.address)}: {len(requests)} recipients")

        try:
            fee_estimate = await self.ledger.get_fee_estimate()
            balance, required = await self._project(source, requests, fee_estimate)
        except LedgerUnavailableError as e:
            logger.error(f"Ledger unavailable before batch start: {e}")
            return self._summarize([TransferResult.failed(r, UNAVAILABLE) for r in requests])

        if balance < required:
            raise InsufficientFundsError(required, balance)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would send {len(requests)} transfers")
            return self._summarize([TransferResult.ok(r, DRY_RUN_REFERENCE) for r in requests])

        results = await self._send_all([(source, r) for r in requests])
        return self._summarize(results)

    async def fund_accounts(self, source: Any, recipients: Iterable[Any], amount: int) -> BatchSummary:
        """Send the same amount to every recipient wallet."""
        requests = [TransferRequest(recipient=r.address, amount=amount) for r in recipients]
        return await self.execute_batch(source, requests)

    async def sweep(self, sources: Iterable[Any], destination: str) -> BatchSummary:
        """
        Return each source's native balance, minus one fee, to ``destination``.

        Sources that cannot cover the fee are recorded as ``dust`` failures.
        """
        sources = list(sources)
        if not sources:
            return BatchSummary(results=())

        logger.info(f"Reclaiming funds from {len(sources)} wallets to {format_address(destination)}")

        try:
            fee_estimate = await self.ledger.get_fee_estimate()
        except LedgerUnavailableError as e:
            logger.error(f"Ledger unavailable before sweep start: {e}")
            return self._summarize([
                TransferResult.failed(TransferRequest(recipient=destination, amount=0), UNAVAILABLE)
                for _ in sources
            ])

        results: List[TransferResult] = []
        unavailable = False

        for source in sources:
            if unavailable:
                results.append(TransferResult.failed(TransferRequest(destination, 0), UNAVAILABLE))
                continue
            try:
                balance = await self.ledger.get_balance(source.address)
            except LedgerUnavailableError as e:
                logger.error(f"Ledger unavailable during sweep: {e}")
                unavailable = True
                results.append(TransferResult.failed(TransferRequest(destination, 0), UNAVAILABLE))
                continue

            request = TransferRequest(recipient=destination, amount=max(0, balance - fee_estimate))
            if request.amount == 0:
                logger.warning(f"Wallet {format_address(source.address)}: balance {format_wei(balance)} does not cover fee")
                results.append(TransferResult.failed(request, DUST))
                continue

            if self.dry_run:
                logger.info(f"[DRY RUN] Would reclaim {format_wei(request.amount)} from {format_address(source.address)}")
                results.append(TransferResult.ok(request, DRY_RUN_REFERENCE))
                continue

            sent = await self._send_all([(source, request)])
            unavailable = sent[0].reason == UNAVAILABLE
            results.extend(sent)

        return self._summarize(results)

    async def _send_all(self, transfers: Sequence[Tuple[Any, TransferRequest]]) -> List[TransferResult]:
        """Submit in order. After the ledger goes unavailable, the rest are not attempted."""
        results: List[TransferResult] = []
        unavailable = False

        for source, request in transfers:
            if unavailable:
                results.append(TransferResult.failed(request, UNAVAILABLE))
                continue

            try:
                reference = await self.ledger.submit_transfer(source, request.recipient, request.amount)
            except LedgerUnavailableError as e:
                logger.error(f"Ledger unavailable, skipping remaining transfers: {e}")
                unavailable = True
                results.append(TransferResult.failed(request, UNAVAILABLE))
                continue
            except Exception as e:
                logger.error(f"Transfer to {format_address(request.recipient)} failed: {e}")
                results.append(TransferResult.failed(request, str(e) or type(e).__name__))
                continue

            logger.info(
                f"Transfer successful: {format_wei(request.amount)} -> "
                f"{format_address(request.recipient)} [{format_tx_hash(reference)}]"
            )
            results.append(TransferResult.ok(request, reference))

        return results

    def _summarize(self, results: List[TransferResult]) -> BatchSummary:
        summary = BatchSummary(results=tuple(results))
        logger.info(
            f"Batch transfer summary: {len(summary.successes)} successful, "
            f"{len(summary.failures)} failed."
        )
        return summary
