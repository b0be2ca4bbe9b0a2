"""
Chain adapters.

Concrete adapters live in chains.evm (web3) and chains.tron (tronpy) and are
imported explicitly so the core does not pull in chain clients.
"""

from .base import (
    OrderMatcher,
    ChainAdapter,
    SourceChainAdapter,
    DestinationChainAdapter,
    FillArgs,
    FillReceipt,
    TxReceipt,
    EscrowEvent,
    EscrowEventKind,
)

__all__ = [
    "OrderMatcher",
    "ChainAdapter",
    "SourceChainAdapter",
    "DestinationChainAdapter",
    "FillArgs",
    "FillReceipt",
    "TxReceipt",
    "EscrowEvent",
    "EscrowEventKind",
]
