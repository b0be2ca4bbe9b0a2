"""
Error taxonomy for crosslock.

Every failure raised by the coordinator is one of these. The category decides
what the swap does next:

- ValidationError: rejected input, never retried
- ChainCallError: transient, retried with backoff until the stage deadline
- ChainStateMismatch: fatal, swap halts for operator review
- TimeoutExceeded: forward path abandoned, cancellation path takes over
- CounterpartyFault: other party misbehaved, recover own funds via timelock
"""

from typing import Any, Optional


class CrossLockError(Exception):
    """Base class for all crosslock errors."""


class ValidationError(CrossLockError, ValueError):
    """Malformed or inconsistent input."""


class ConfigurationError(CrossLockError):
    """Missing or invalid deployment configuration."""


class ChainCallError(CrossLockError):
    """
    An adapter call failed.

    If tx_hash is set the transaction was broadcast and its outcome is
    unknown, so it must be observed rather than sent again.
    """

    def __init__(
        self,
        message: str,
        chain: str = "",
        tx_hash: Optional[str] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.chain = chain
        self.tx_hash = tx_hash
        self.retryable = retryable
        self.next_retry_at: Optional[float] = None


class ChainStateMismatch(CrossLockError):
    """Observed on-chain state contradicts local expectation."""

    def __init__(self, message: str, expected: Any = None, observed: Any = None):
        super().__init__(message)
        self.expected = expected
        self.observed = observed


class TimeoutExceeded(CrossLockError):
    """A step cannot complete before its timelock boundary."""

    def __init__(self, message: str, deadline: Optional[float] = None):
        super().__init__(message)
        self.deadline = deadline


class CounterpartyFault(CrossLockError):
    """The counterparty did not act or acted invalidly."""


class SwapAborted(CrossLockError):
    """Operator aborted the swap while a retry was pending."""
