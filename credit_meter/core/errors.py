"""
Error types raised by the metering core.

Budget and generation failures are caller-visible. Cache and telemetry
failures never surface as exceptions; they are logged where they happen.
"""


class MeterError(Exception):
    """Base class for all credit meter errors."""


class InsufficientCreditsError(MeterError):
    """Raised when an operation's cost exceeds the remaining allowance."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available


class GenerationError(MeterError):
    """Raised when the external generator fails. Nothing is billed."""


class GenerationTimeoutError(GenerationError):
    """Raised when the generator exceeds its deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Generation did not finish within {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class LedgerWriteError(MeterError):
    """Raised when a usage record could not be appended to the ledger."""
