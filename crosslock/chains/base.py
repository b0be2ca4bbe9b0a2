"""
Chain adapter interfaces.

Adapters submit transactions and report what they observe; they never decide
swap state. The coordinator owns every transition.
"""

from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass
from typing import Optional, List, Tuple, Any

from ..core import ChainAddress, ChainKind, Immutables


@dataclass
class FillReceipt:
    """Result of an order fill on the source chain."""
    order_hash: str
    filled_amount: int
    tx_hash: str
    escrow_address: Optional[ChainAddress] = None
    immutables: Optional[Immutables] = None    # as deployed, deployed_at set
    block_number: Optional[int] = None


@dataclass
class TxReceipt:
    """A confirmed transaction."""
    tx_hash: str
    chain: ChainKind
    success: bool = True
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    escrow_address: Optional[ChainAddress] = None
    immutables: Optional[Immutables] = None


@dataclass
class FillArgs:
    """Everything the resolver needs to fill a signed order."""
    signed_order: Any                  # orders.SignedOrder
    fill_amount: int
    taker_traits: int = 0
    args: bytes = b""


class EscrowEventKind(Enum):
    CREATED = "created"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


@dataclass
class EscrowEvent:
    """An escrow fact observed on a chain."""
    kind: EscrowEventKind
    chain: ChainKind
    escrow_address: Optional[ChainAddress]
    tx_hash: str
    order_hash: Optional[str] = None
    secret: Optional[bytes] = None         # set on WITHDRAWN
    immutables: Optional[Immutables] = None
    hashlock: Optional[bytes] = None       # set on CREATED
    block_number: int = 0
    timestamp: Optional[int] = None        # block time


class OrderMatcher(ABC):
    """The source chain's order-matching protocol."""

    @abstractmethod
    def fill_order(self, signed_order, fill_amount: int, callback_args: bytes = b"") -> FillReceipt:
        ...

    @abstractmethod
    def bit_invalidator_for_order(self, maker: str, slot: int) -> int:
        ...

    @abstractmethod
    def remaining_invalidator_for_order(self, maker: str, order_hash: bytes) -> int:
        ...

    @abstractmethod
    def epoch(self, maker: str, series: int) -> int:
        ...


class ChainAdapter(ABC):
    """Operations common to both sides."""

    chain_kind: ChainKind = ChainKind.EVM

    @abstractmethod
    def withdraw(self, escrow: ChainAddress, secret: bytes, immutables: Immutables) -> TxReceipt:
        ...

    @abstractmethod
    def cancel(self, escrow: ChainAddress, immutables: Immutables) -> TxReceipt:
        ...

    @abstractmethod
    def poll_events(self, cursor: Optional[int]) -> Tuple[List[EscrowEvent], Optional[int]]:
        """Events after `cursor`, plus the cursor to pass next time."""
        ...

    @abstractmethod
    def transaction_status(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt of a broadcast transaction, or None while pending."""
        ...

    @abstractmethod
    def current_timestamp(self) -> int:
        ...

    @abstractmethod
    def current_block(self) -> int:
        """Latest block number, for counting confirmations."""
        ...

    def watch_escrow(self, escrow: ChainAddress, order_hash: str):
        """Start reporting withdraw/cancel events for an escrow."""


class SourceChainAdapter(ChainAdapter):

    @abstractmethod
    def compute_escrow_address(self, immutables: Immutables) -> ChainAddress:
        ...

    @abstractmethod
    def deploy_source_escrow(self, immutables: Immutables, fill_args: FillArgs, value: int) -> TxReceipt:
        ...


class DestinationChainAdapter(ChainAdapter):

    @abstractmethod
    def deploy_destination_escrow(
        self,
        immutables: Immutables,
        src_cancellation_timestamp: int,
        value: int,
    ) -> TxReceipt:
        ...
