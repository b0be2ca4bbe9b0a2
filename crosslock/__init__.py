"""
crosslock - Cross-Chain Atomic Swap Resolver

Moves value between chains with hash-time-locked escrows deployed at
deterministic CREATE2 addresses. A signed limit order funds the source
escrow, the resolver funds the destination escrow, and one secret
settles both.

Usage:
    from crosslock import SwapCoordinator, SwapRequest, EscrowTerms, Timelocks
    from crosslock.chains.evm import EVMChainAdapter, EVMConfig

    source = EVMChainAdapter(EVMConfig(...))
    destination = EVMChainAdapter(EVMConfig(...))
    coordinator = SwapCoordinator(source, destination, config)

    swap = coordinator.create(request)
    coordinator.submit_fill(swap.order_hash)
    coordinator.fund_destination(swap.order_hash)
    coordinator.reveal_secret(swap.order_hash, secret)
"""

from .core import (
    ChainKind,
    ChainAddress,
    Immutables,
    EscrowStatus,
    EscrowRecord,
    SwapState,
    Side,
    keccak,
)
from .errors import (
    CrossLockError,
    ValidationError,
    ConfigurationError,
    ChainCallError,
    ChainStateMismatch,
    TimeoutExceeded,
    CounterpartyFault,
    SwapAborted,
)
from .timelocks import Timelocks, Stage

from .htlc.hashlock import generate_secrets, hash_secret, build_hashlock, verify_secret
from .htlc.escrow import compute_address, EscrowAddressResolver

from .orders import Order, SignedOrder, OrderDomain, MakerTraits, OrderBuilder, sign_order

from .swap.executor import SwapCoordinator, SwapConfig, SwapRequest, EscrowTerms, Swap
from .swap.watcher import SwapWatcher, WatcherConfig
from .swap.store import SwapStore

__version__ = "0.1.0"
__all__ = [
    # Core types
    "ChainKind",
    "ChainAddress",
    "Immutables",
    "EscrowStatus",
    "EscrowRecord",
    "SwapState",
    "Side",
    "keccak",
    # Errors
    "CrossLockError",
    "ValidationError",
    "ConfigurationError",
    "ChainCallError",
    "ChainStateMismatch",
    "TimeoutExceeded",
    "CounterpartyFault",
    "SwapAborted",
    # Timelocks
    "Timelocks",
    "Stage",
    # HTLC
    "generate_secrets",
    "hash_secret",
    "build_hashlock",
    "verify_secret",
    "compute_address",
    "EscrowAddressResolver",
    # Orders
    "Order",
    "SignedOrder",
    "OrderDomain",
    "MakerTraits",
    "OrderBuilder",
    "sign_order",
    # Swap
    "SwapCoordinator",
    "SwapConfig",
    "SwapRequest",
    "EscrowTerms",
    "Swap",
    "SwapWatcher",
    "WatcherConfig",
    "SwapStore",
]
