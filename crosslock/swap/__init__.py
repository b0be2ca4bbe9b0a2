"""
Swap coordination for crosslock.

Drives cross-chain escrow swaps from order fill to settlement.
"""

from .executor import SwapCoordinator, SwapConfig, SwapRequest, EscrowTerms, Swap
from .watcher import SwapWatcher, WatcherConfig
from .store import SwapStore
from .retry import RetryPolicy, call_with_retry
from .accounting import CallRole, required_native_value

__all__ = [
    "SwapCoordinator",
    "SwapConfig",
    "SwapRequest",
    "EscrowTerms",
    "Swap",
    "SwapWatcher",
    "WatcherConfig",
    "SwapStore",
    "RetryPolicy",
    "call_with_retry",
    "CallRole",
    "required_native_value",
]
