"""
Bounded retries for chain calls.

Every retry loop runs against a deadline taken from the swap's timelocks
(minus the safety margin). A retry that could not finish before the deadline
is not attempted: the caller gets TimeoutExceeded and the swap moves to its
cancellation path instead of racing the timelock.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..errors import ChainCallError, TimeoutExceeded, SwapAborted

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff settings."""
    initial_delay: float = 2.0      # seconds
    multiplier: float = 2.0
    max_delay: float = 60.0
    max_attempts: int = 8
    observe_interval: float = 5.0   # polling a broadcast tx


def call_with_retry(
    fn: Callable[[], T],
    description: str,
    deadline: Optional[float] = None,
    policy: Optional[RetryPolicy] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
    abort: Optional[threading.Event] = None,
    observe: Optional[Callable[[str], Optional[T]]] = None,
    on_retry: Optional[Callable[[float, Exception], None]] = None,
) -> T:
    """
    Call fn until it succeeds, retrying ChainCallError with backoff.

    A ChainCallError that carries a tx hash means the transaction left this
    process; it is never re-sent. Instead `observe(tx_hash)` is polled until
    it returns a result. Abort requests are honored only before a broadcast.
    """
    policy = policy or RetryPolicy()
    delay = policy.initial_delay
    attempt = 0

    while True:
        if deadline is not None and clock() >= deadline:
            raise TimeoutExceeded(f"{description}: deadline passed before attempt {attempt + 1}", deadline)

        attempt += 1
        try:
            return fn()
        except ChainCallError as e:
            if not e.retryable:
                raise
            if e.tx_hash and observe is not None:
                return _observe(e.tx_hash, observe, description, deadline, policy, clock, sleep)
            if attempt >= policy.max_attempts:
                raise TimeoutExceeded(f"{description}: gave up after {attempt} attempts ({e})", deadline) from e

            next_at = clock() + delay
            if deadline is not None and next_at >= deadline:
                raise TimeoutExceeded(
                    f"{description}: next retry at {next_at:.0f} would pass deadline {deadline:.0f} ({e})",
                    deadline,
                ) from e

            e.next_retry_at = next_at
            log.warning(f"{description} failed (attempt {attempt}): {e}; retrying in {delay:.1f}s")
            if on_retry:
                on_retry(next_at, e)

            if abort is not None and abort.is_set():
                raise SwapAborted(f"{description}: aborted by operator") from e
            sleep(delay)
            if abort is not None and abort.is_set():
                raise SwapAborted(f"{description}: aborted by operator") from e

            delay = min(delay * policy.multiplier, policy.max_delay)


def _observe(tx_hash, observe, description, deadline, policy, clock, sleep):
    log.info(f"{description}: tx {tx_hash} broadcast, observing outcome")
    while True:
        result = observe(tx_hash)
        if result is not None:
            if getattr(result, "success", True) is False:
                raise ChainCallError(f"{description}: tx {tx_hash} failed", tx_hash=tx_hash, retryable=False)
            return result
        if deadline is not None and clock() + policy.observe_interval >= deadline:
            raise TimeoutExceeded(f"{description}: tx {tx_hash} unconfirmed at deadline", deadline)
        sleep(policy.observe_interval)
