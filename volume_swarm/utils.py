"""
Utility Module

Logging, error taxonomy and formatting helpers shared by the swarm.

- Rich console logging plus a plain file log
- Secure logger that redacts private keys and API keys from every message
- Exception hierarchy used by the pool, orchestrator and scheduler
"""

import os
import re
import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for Rich output
console = Console()

LOGGER_NAME = "volume_swarm"


class VolumeSwarmError(Exception):
    """Base class for all volume swarm errors."""
    pass


class ConfigError(VolumeSwarmError):
    """Invalid or missing configuration."""
    pass


class WalletGenerationError(VolumeSwarmError):
    """Worker key generation failed. Fatal at startup."""
    pass


class InsufficientFundsError(VolumeSwarmError):
    """Funding account cannot cover a batch. Raised before any transfer."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: batch needs {required} wei, source has {available} wei"
        )


class TransferError(VolumeSwarmError):
    """A single transfer failed. Recorded per recipient, never aborts a batch."""
    pass


class SwapError(VolumeSwarmError):
    """A buy or sell failed at the venue."""
    pass


class LedgerUnavailableError(VolumeSwarmError):
    """The ledger adapter cannot reach its node."""
    pass


class PoolInvariantError(VolumeSwarmError):
    """Double release or release of a foreign account."""
    pass


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    Worker keys are generated in-process and must never reach the console
    or the log file.
    """

    SENSITIVE_PATTERNS = [
        (r'0x[a-fA-F0-9]{64}', '[PRIVATE_KEY_REDACTED]'),
        (r'\b[a-fA-F0-9]{64}\b', '[PRIVATE_KEY_REDACTED]'),
        (r'password["\']?\s*[:=]\s*["\'][^"\']+["\']', 'password=[REDACTED]'),
        (r'api[_-]?key["\']?\s*[:=]\s*["\']?[^"\'\s,}]+["\']?', 'api_key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _sanitize(self, msg) -> str:
        """Remove sensitive data from log message."""
        if not isinstance(msg, str):
            msg = str(msg)

        sanitized = msg
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = "./volume-swarm.log") -> SecureLogger:
    """
    Setup logging with Rich console output and an optional file log.

    Safe to call again: existing handlers are replaced, and the module-level
    ``logger`` keeps working because it wraps the same named logger.
    """
    base = logging.getLogger(LOGGER_NAME)
    level = getattr(logging, log_level.upper(), logging.INFO)
    base.setLevel(level)
    base.propagate = False

    for handler in list(base.handlers):
        base.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(level)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    base.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        base.addHandler(file_handler)

    return SecureLogger(base)


# Console only until the CLI configures a file
logger = setup_logging(log_file=None)


# Formatting utilities

def format_wei(wei_amount: int, decimals: int = 18) -> str:
    """Format wei amount to human-readable string."""
    if wei_amount == 0:
        return "0"

    value = wei_amount / (10 ** decimals)

    if value < 0.0001:
        return f"{value:.8f}"
    elif value < 1:
        return f"{value:.6f}"
    elif value < 1000:
        return f"{value:.4f}"
    else:
        return f"{value:,.2f}"


def format_address(address: str, length: int = 6) -> str:
    """Format address with ellipsis."""
    if len(address) <= length * 2 + 2:
        return address
    return f"{address[:length + 2]}...{address[-length:]}"


def format_tx_hash(tx_hash: str, length: int = 8) -> str:
    """Format transaction hash with ellipsis."""
    if len(tx_hash) <= length * 2:
        return tx_hash
    return f"{tx_hash[:length]}...{tx_hash[-length:]}"


def mask_sensitive(value: Optional[str], visible_chars: int = 4) -> str:
    """Mask sensitive data, showing only first and last few characters."""
    if not value:
        return ""
    if len(value) <= visible_chars * 2:
        return "*" * len(value)

    return value[:visible_chars] + "***" + value[-visible_chars:]


def validate_private_key(key: str) -> bool:
    """Validate private key format."""
    if not key:
        return False

    key_clean = key[2:] if key.startswith("0x") else key

    if len(key_clean) != 64:
        return False

    try:
        int(key_clean, 16)
        return True
    except ValueError:
        return False
