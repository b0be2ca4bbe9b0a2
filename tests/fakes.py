"""
In-memory chains for coordinator tests.

The fakes deploy escrows at their real CREATE2 addresses, stamp deployed_at
from a shared FakeClock and record every call, so tests can assert on exactly
what was sent to each chain.
"""

import sys
import os
import itertools
from typing import Dict, List, Optional, Tuple

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crosslock.core import ChainAddress, ChainKind, Immutables
from crosslock.orders import MakerTraits, Order, SignedOrder
from crosslock.timelocks import Timelocks
from crosslock.htlc.escrow import compute_address, proxy_code_hash
from crosslock.htlc.hashlock import generate_secrets, hash_secret
from crosslock.chains.base import (
    SourceChainAdapter, DestinationChainAdapter, TxReceipt, EscrowEvent, FillArgs,
)
from crosslock.swap.executor import SwapConfig, SwapRequest, EscrowTerms
from crosslock.swap.retry import RetryPolicy

START_TIME = 1_700_000_000

SRC_FACTORY = ChainAddress.evm("0x" + "11" * 20)
DST_FACTORY = ChainAddress.evm("0x" + "33" * 20)
SRC_CODE_HASH = proxy_code_hash(ChainAddress.evm("0x" + "22" * 20))
DST_CODE_HASH = proxy_code_hash(ChainAddress.evm("0x" + "44" * 20))

MAKER = ChainAddress.evm("0x" + "aa" * 20)
RESOLVER = ChainAddress.evm("0x" + "bb" * 20)
NATIVE = ChainAddress.zero(ChainKind.EVM)

AMOUNT = 10**18
SAFETY_DEPOSIT = 10**17


class FakeClock:
    """Callable clock; sleeping advances it."""

    def __init__(self, now: float = START_TIME):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float):
        self.now += seconds


class _FakeChain:
    chain_kind = ChainKind.EVM

    def __init__(self, clock: FakeClock, factory: ChainAddress, code_hash: bytes, name: str):
        self.clock = clock
        self.factory = factory
        self.code_hash = code_hash
        self.name = name
        self.calls: List[Tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.receipts: Dict[str, TxReceipt] = {}
        self.events: List[EscrowEvent] = []
        self.watched: Dict[str, str] = {}
        self.block = 100
        self.report_escrow = True         # False: deploy receipts name no escrow
        self._tx_ids = itertools.count(1)

    def fail(self, method: str, *errors: Exception):
        """Raise these errors, in order, on the next calls to `method`."""
        self.failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> List[Tuple]:
        return [c for c in self.calls if c[0] == method]

    def _maybe_fail(self, method: str):
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _tx(self) -> str:
        return f"0x{self.name}{next(self._tx_ids):04d}"

    def _receipt(self, **kwargs) -> TxReceipt:
        receipt = TxReceipt(tx_hash=self._tx(), chain=self.chain_kind, block_number=self.block,
                            timestamp=int(self.clock()), **kwargs)
        self.receipts[receipt.tx_hash] = receipt
        return receipt

    def _deploy(self, immutables: Immutables) -> TxReceipt:
        deployed = immutables.with_deployed_at(int(self.clock()))
        if not self.report_escrow:
            return self._receipt()
        address = compute_address(deployed, self.factory, self.code_hash, self.chain_kind)
        return self._receipt(escrow_address=address, immutables=deployed)

    def compute_escrow_address(self, immutables: Immutables) -> ChainAddress:
        return compute_address(immutables, self.factory, self.code_hash, self.chain_kind)

    def withdraw(self, escrow: ChainAddress, secret: bytes, immutables: Immutables) -> TxReceipt:
        self.calls.append(("withdraw", escrow, secret, immutables))
        self._maybe_fail("withdraw")
        return self._receipt(escrow_address=escrow)

    def cancel(self, escrow: ChainAddress, immutables: Immutables) -> TxReceipt:
        self.calls.append(("cancel", escrow, immutables))
        self._maybe_fail("cancel")
        return self._receipt(escrow_address=escrow)

    def poll_events(self, cursor: Optional[int]):
        start = cursor or 0
        return self.events[start:], len(self.events)

    def transaction_status(self, tx_hash: str) -> Optional[TxReceipt]:
        return self.receipts.get(tx_hash)

    def current_timestamp(self) -> int:
        return int(self.clock())

    def current_block(self) -> int:
        return self.block

    def watch_escrow(self, escrow: ChainAddress, order_hash: str):
        self.watched[escrow.value] = order_hash


class FakeSourceChain(_FakeChain, SourceChainAdapter):

    def __init__(self, clock: FakeClock, factory: ChainAddress = SRC_FACTORY, code_hash: bytes = SRC_CODE_HASH):
        super().__init__(clock, factory, code_hash, "a")

    def deploy_source_escrow(self, immutables: Immutables, fill_args: FillArgs, value: int) -> TxReceipt:
        self.calls.append(("deploy_source_escrow", immutables, fill_args, value))
        self._maybe_fail("deploy_source_escrow")
        return self._deploy(immutables)


class FakeDestinationChain(_FakeChain, DestinationChainAdapter):

    def __init__(self, clock: FakeClock, factory: ChainAddress = DST_FACTORY, code_hash: bytes = DST_CODE_HASH):
        super().__init__(clock, factory, code_hash, "b")

    def deploy_destination_escrow(self, immutables: Immutables, src_cancellation_timestamp: int, value: int) -> TxReceipt:
        self.calls.append(("deploy_destination_escrow", immutables, src_cancellation_timestamp, value))
        self._maybe_fail("deploy_destination_escrow")
        return self._deploy(immutables)


def swap_config(**overrides) -> SwapConfig:
    params = dict(
        src_factory=SRC_FACTORY,
        src_code_hash=SRC_CODE_HASH,
        dst_factory=DST_FACTORY,
        dst_code_hash=DST_CODE_HASH,
        src_confirmations=0,
        retry=RetryPolicy(initial_delay=1.0, max_attempts=3, observe_interval=1.0),
    )
    params.update(overrides)
    return SwapConfig(**params)


def scenario_timelocks() -> Timelocks:
    return Timelocks.build(
        src_withdrawal=600,
        src_cancellation=3600,
        dst_withdrawal=300,
        dst_cancellation=3300,
    )


def signed_order(order_hash: bytes = b"\x01" * 32) -> SignedOrder:
    """A filled-in order; the fake chains never check its signature."""
    order = Order(
        salt=1,
        maker=MAKER.value,
        receiver="0x" + "00" * 20,
        maker_asset="0x" + "c0" * 20,
        taker_asset="0x" + "e0" * 20,
        making_amount=AMOUNT,
        taking_amount=AMOUNT,
        maker_traits=MakerTraits().encode(),
    )
    return SignedOrder(order=order, order_hash=order_hash, signature=b"\x11" * 64 + b"\x1b")


def make_request(secret: Optional[bytes] = None, order_hash: bytes = b"\x01" * 32, **overrides):
    """Scenario swap: 1e18 native each way, 1e17 safety deposit. Returns (request, secret)."""
    secret = secret or generate_secrets(1)[0]
    params = dict(
        order_hash=order_hash,
        hashlock=hash_secret(secret),
        src=EscrowTerms(maker=MAKER, taker=RESOLVER, token=NATIVE, amount=AMOUNT, safety_deposit=SAFETY_DEPOSIT),
        dst=EscrowTerms(maker=MAKER, taker=RESOLVER, token=NATIVE, amount=AMOUNT, safety_deposit=SAFETY_DEPOSIT),
        timelocks=scenario_timelocks(),
    )
    params.update(overrides)
    return SwapRequest(**params), secret
