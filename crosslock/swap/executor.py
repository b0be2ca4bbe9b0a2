"""
Swap coordinator for crosslock.

Owns every swap and drives it through the cross-chain state machine:

    CREATED -> SRC_FILLED -> DST_FUNDED -> SECRET_REVEALED -> COMPLETED

with CANCELLED_SRC / CANCELLED_DST / REFUNDED on timeout and MANUAL_REVIEW
when a chain contradicts us. Adapters only report facts; transitions happen
here, under a per-swap lock, and are persisted before returning.

Safety rules:
- the destination escrow is never funded once
  now > srcCancellation - safety_margin
- every deployment is checked against its CREATE2 address
- a secret seen on either chain is replayed on the other
- no retry loop runs past the timelock boundary it races
"""

import time
import logging
import threading
from typing import Optional, Dict, List, Callable, Any
from dataclasses import dataclass, field

from ..core import (
    ChainAddress, ChainKind, Immutables, EscrowRecord, EscrowStatus,
    SwapState, Side, TERMINAL_STATES, to_bytes32, to_hex, ZERO_HASH,
)
from ..errors import (
    ValidationError, ChainCallError, ChainStateMismatch, TimeoutExceeded,
    CounterpartyFault, SwapAborted,
)
from ..timelocks import Timelocks, Stage, DEFAULT_SAFETY_MARGIN
from ..orders import SignedOrder
from ..htlc.escrow import EscrowAddressResolver
from ..htlc.hashlock import (
    hash_secret, merkle_leaves, merkle_root, merkle_proof, verify_secret,
)
from ..chains.base import (
    SourceChainAdapter, DestinationChainAdapter, FillArgs, FillReceipt, TxReceipt,
)
from .accounting import CallRole, required_native_value
from .retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

# Source confirmations before the destination escrow is funded
FINALITY_BLOCKS = {
    ChainKind.EVM: 20,
    ChainKind.TRON: 12,
}


@dataclass
class SwapConfig:
    """Coordinator configuration."""
    # Escrow factories (CREATE2 deployers) per side
    src_factory: Optional[ChainAddress] = None
    src_code_hash: Optional[bytes] = None
    dst_factory: Optional[ChainAddress] = None
    dst_code_hash: Optional[bytes] = None

    src_chain: ChainKind = ChainKind.EVM
    dst_chain: ChainKind = ChainKind.EVM

    # Clock skew tolerance (seconds)
    safety_margin: int = DEFAULT_SAFETY_MARGIN

    # Source deploy confirmations required before funding; None = FINALITY_BLOCKS
    src_confirmations: Optional[int] = None

    # Terminal swaps leave the live set this long after their last update
    archive_after: int = 3600              # seconds

    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class EscrowTerms:
    """One side's economic terms."""
    maker: ChainAddress
    taker: ChainAddress
    token: ChainAddress          # zero address = native currency
    amount: int
    safety_deposit: int


@dataclass
class SwapRequest:
    """What the initiator agreed to off-chain."""
    order_hash: bytes
    hashlock: bytes                                   # H(secret) or Merkle root
    src: EscrowTerms
    dst: EscrowTerms
    timelocks: Timelocks
    secret_hashes: List[bytes] = field(default_factory=list)  # multi-fill only
    secret_index: Optional[int] = None                # which secret this fill uses
    signed_order: Optional[SignedOrder] = None
    fill_amount: Optional[int] = None


@dataclass
class Swap:
    """A swap and both of its escrows."""
    order_hash: str
    hashlock: str
    src: EscrowRecord
    dst: EscrowRecord
    state: SwapState = SwapState.CREATED

    # Multi-fill
    secret_hashes: List[str] = field(default_factory=list)
    secret_index: Optional[int] = None

    signed_order: Optional[SignedOrder] = None
    fill_amount: Optional[int] = None
    revealed_secret: Optional[str] = None

    # Timing
    created_at: int = 0
    updated_at: int = 0

    # Failure bookkeeping
    halted: bool = False
    halt_reason: Optional[str] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[float] = None

    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def escrow_hashlock(self) -> bytes:
        return self.src.immutables.hashlock

    def record(self, side: Side) -> EscrowRecord:
        return self.src if side == Side.SRC else self.dst

    def src_time(self, stage: Stage) -> int:
        return self.src.immutables.timelocks.absolute(stage)

    def dst_time(self, stage: Stage) -> int:
        return self.dst.immutables.timelocks.absolute(stage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "hashlock": self.hashlock,
            "state": self.state.value,
            "src": self.src.to_dict(),
            "dst": self.dst.to_dict(),
            "secret_hashes": list(self.secret_hashes),
            "secret_index": self.secret_index,
            "signed_order": self.signed_order.to_dict() if self.signed_order else None,
            "fill_amount": str(self.fill_amount) if self.fill_amount is not None else None,
            "revealed_secret": self.revealed_secret,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "last_error": self.last_error,
            "next_retry_at": self.next_retry_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Swap":
        return cls(
            order_hash=data["order_hash"],
            hashlock=data["hashlock"],
            state=SwapState(data["state"]),
            src=EscrowRecord.from_dict(data["src"]),
            dst=EscrowRecord.from_dict(data["dst"]),
            secret_hashes=list(data.get("secret_hashes") or []),
            secret_index=data.get("secret_index"),
            signed_order=SignedOrder.from_dict(data["signed_order"]) if data.get("signed_order") else None,
            fill_amount=int(data["fill_amount"]) if data.get("fill_amount") is not None else None,
            revealed_secret=data.get("revealed_secret"),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
            halted=data.get("halted", False),
            halt_reason=data.get("halt_reason"),
            last_error=data.get("last_error"),
            next_retry_at=data.get("next_retry_at"),
            history=list(data.get("history") or []),
        )


def normalize_order_hash(order_hash) -> str:
    return to_hex(to_bytes32(order_hash, "order_hash")).lower()


class SwapCoordinator:
    """
    Drives swaps across a source and a destination chain.

    Every public transition is idempotent: replaying it against a swap that
    already reached the target state is a no-op.
    """

    def __init__(
        self,
        source: SourceChainAdapter,
        destination: DestinationChainAdapter,
        config: SwapConfig = None,
        store=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.destination = destination
        self.config = config or SwapConfig()
        self.store = store
        self.clock = clock
        self.sleep = sleep

        self.src_resolver = EscrowAddressResolver(
            self.config.src_factory, self.config.src_code_hash, self.config.src_chain
        )
        self.dst_resolver = EscrowAddressResolver(
            self.config.dst_factory, self.config.dst_code_hash, self.config.dst_chain
        )

        self.swaps: Dict[str, Swap] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._aborts: Dict[str, threading.Event] = {}     # only while a deployment is in flight
        self._guard = threading.Lock()
        self._listeners: List[Callable[[Swap], None]] = []

        if self.store is not None:
            self._restore()

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _restore(self):
        for data in self.store.all():
            swap = Swap.from_dict(data)
            self.swaps[swap.order_hash] = swap
            if swap.is_terminal:
                continue
            if swap.src.status == EscrowStatus.FUNDED:
                self.source.watch_escrow(swap.src.address, swap.order_hash)
            if swap.dst.status == EscrowStatus.FUNDED:
                self.destination.watch_escrow(swap.dst.address, swap.order_hash)
        log.info(f"Restored {len(self.swaps)} swaps from store")

    def _lock(self, key: str) -> threading.RLock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            return self._locks[key]

    def _get(self, key: str) -> Swap:
        with self._guard:
            swap = self.swaps.get(key)
        if swap is None:
            raise ValidationError(f"Swap not found: {key}")
        return swap

    def subscribe(self, callback: Callable[[Swap], None]):
        """Call `callback(swap)` after every state change."""
        self._listeners.append(callback)

    def _persist(self, swap: Swap):
        swap.updated_at = int(self.clock())
        if self.store is not None:
            self.store.save(swap.order_hash, swap.to_dict())

    def _note(self, swap: Swap, event: str, **evidence):
        entry = {"event": event, "at": int(self.clock())}
        entry.update({k: v for k, v in evidence.items() if v is not None})
        swap.history.append(entry)

    def _transition(self, swap: Swap, state: SwapState, **evidence):
        previous = swap.state
        swap.state = state
        self._note(swap, f"{previous.value} -> {state.value}", **evidence)
        self._persist(swap)
        log.info(f"Swap {swap.order_hash[:10]}: {previous.value} -> {state.value}")
        for callback in list(self._listeners):
            try:
                callback(swap)
            except Exception as e:
                log.error(f"State listener failed for {swap.order_hash[:10]}: {e}")

    def _halt(self, swap: Swap, reason: str):
        """Abandon the forward path; the scanner takes the cancellation path."""
        swap.halted = True
        swap.halt_reason = reason
        swap.last_error = reason
        swap.next_retry_at = None
        self._note(swap, "halted", reason=reason)
        self._persist(swap)
        log.warning(f"Swap {swap.order_hash[:10]} halted: {reason}")

    def _review(self, swap: Swap, exc: Exception, **evidence):
        swap.last_error = str(exc)
        if isinstance(exc, ChainStateMismatch):
            evidence.setdefault("expected", str(exc.expected) if exc.expected is not None else None)
            evidence.setdefault("observed", str(exc.observed) if exc.observed is not None else None)
        log.error(f"Swap {swap.order_hash[:10]} needs manual review: {exc}")
        self._transition(swap, SwapState.MANUAL_REVIEW, reason=str(exc), **evidence)

    def _call(self, swap: Swap, description: str, fn, deadline: Optional[float], adapter, abortable: bool = False):
        """Run an adapter call with retries bounded by `deadline`. Only forward deployments are abortable."""
        def on_retry(next_at, exc):
            swap.last_error = str(exc)
            swap.next_retry_at = next_at
            self._persist(swap)

        abort = None
        if abortable:
            abort = threading.Event()
            with self._guard:
                self._aborts[swap.order_hash] = abort
        try:
            result = call_with_retry(
                fn,
                description=f"{description} [{swap.order_hash[:10]}]",
                deadline=deadline,
                policy=self.config.retry,
                clock=self.clock,
                sleep=self.sleep,
                abort=abort,
                observe=adapter.transaction_status,
                on_retry=on_retry,
            )
        except (TimeoutExceeded, SwapAborted) as e:
            self._halt(swap, f"{description}: {e}")
            raise
        except ChainCallError as e:
            swap.last_error = f"{description}: {e}"
            swap.next_retry_at = None
            self._persist(swap)
            raise
        finally:
            if abortable:
                with self._guard:
                    self._aborts.pop(swap.order_hash, None)
        swap.last_error = None
        swap.next_retry_at = None
        return result

    def _deployment_facts(self, receipt: TxReceipt, local: Immutables):
        """
        Immutables and address of a deployment as the chain reported them.

        Returns (None, None) when the receipt names no escrow or no deployment
        time; the creation event has to confirm the deployment instead.
        """
        if receipt.escrow_address is None:
            return None, None
        immutables = receipt.immutables
        if immutables is None:
            if not receipt.timestamp:
                return None, None
            immutables = local.with_deployed_at(receipt.timestamp)
        return immutables, receipt.escrow_address

    def _await_creation_event(self, swap: Swap, record: EscrowRecord, receipt: TxReceipt) -> Swap:
        record.tx_hashes["deploy"] = receipt.tx_hash
        record.block_number = receipt.block_number
        self._note(swap, f"{record.side.value} deploy unconfirmed", tx_hash=receipt.tx_hash)
        self._persist(swap)
        log.warning(f"Swap {swap.order_hash[:10]}: {record.side.value} deploy {receipt.tx_hash} "
                    f"names no escrow, waiting for the creation event")
        return swap

    def _confirmation_depth(self) -> int:
        depth = self.config.src_confirmations
        if depth is None:
            depth = FINALITY_BLOCKS.get(self.config.src_chain, 0)
        return depth

    def _source_final(self, swap: Swap) -> bool:
        """True once the source deployment is buried under enough blocks."""
        depth = self._confirmation_depth()
        if depth <= 0:
            return True
        if swap.src.block_number is None:
            tx_hash = swap.src.tx_hashes.get("deploy")
            receipt = self.source.transaction_status(tx_hash) if tx_hash else None
            if receipt is None or receipt.block_number is None:
                return False
            swap.src.block_number = receipt.block_number
        return self.source.current_block() >= swap.src.block_number + depth

    # =========================================================================
    # CREATE
    # =========================================================================

    def _validate_request(self, request: SwapRequest):
        hashlock = to_bytes32(request.hashlock, "hashlock")
        if hashlock == ZERO_HASH:
            raise ValidationError("Hashlock must not be zero")

        for side, terms, chain in (("source", request.src, self.config.src_chain),
                                   ("destination", request.dst, self.config.dst_chain)):
            for address in (terms.maker, terms.taker, terms.token):
                if address.chain != chain:
                    raise ValidationError(f"{side} address {address} is not on {chain.value}")

        hashes = [to_bytes32(h, "secret_hash") for h in request.secret_hashes]
        if len(hashes) > 1:
            if merkle_root(merkle_leaves(hashes)) != hashlock:
                raise ValidationError("Merkle root of secret hashes does not match hashlock")
            if request.secret_index is None or not 0 <= request.secret_index < len(hashes):
                raise ValidationError(f"Secret index {request.secret_index} out of range for {len(hashes)} secrets")
        elif hashes and hashes[0] != hashlock:
            raise ValidationError("Secret hash does not match hashlock")

        request.timelocks.check_cross_chain(self.config.safety_margin)

        if request.signed_order is not None:
            if request.signed_order.order_hash != to_bytes32(request.order_hash, "order_hash"):
                raise ValidationError("Signed order hash differs from swap order hash")
        if request.fill_amount is not None and not 0 < request.fill_amount <= request.src.amount:
            raise ValidationError(f"Fill amount {request.fill_amount} outside (0, {request.src.amount}]")

    def create(self, request: SwapRequest) -> Swap:
        """Register a swap; nothing touches a chain yet."""
        key = normalize_order_hash(request.order_hash)
        self._validate_request(request)

        hashes = [to_bytes32(h, "secret_hash") for h in request.secret_hashes]
        escrow_hashlock = hashes[request.secret_index] if len(hashes) > 1 else to_bytes32(request.hashlock)
        timelocks = request.timelocks.with_deployed_at(0)

        src_immutables = Immutables(
            order_hash=to_bytes32(request.order_hash),
            hashlock=escrow_hashlock,
            maker=request.src.maker,
            taker=request.src.taker,
            token=request.src.token,
            amount=request.src.amount,
            safety_deposit=request.src.safety_deposit,
            timelocks=timelocks,
        )
        dst_immutables = Immutables(
            order_hash=to_bytes32(request.order_hash),
            hashlock=escrow_hashlock,
            maker=request.dst.maker,
            taker=request.dst.taker,
            token=request.dst.token,
            amount=request.dst.amount,
            safety_deposit=request.dst.safety_deposit,
            timelocks=timelocks,
        )

        with self._lock(key):
            with self._guard:
                existing = self.swaps.get(key)
            if existing is not None:
                if (existing.src.immutables.matches(src_immutables)
                        and existing.dst.immutables.matches(dst_immutables)):
                    return existing
                raise ValidationError(f"Swap {key} already exists with different parameters")

            now = int(self.clock())
            swap = Swap(
                order_hash=key,
                hashlock=to_hex(to_bytes32(request.hashlock)),
                src=EscrowRecord(side=Side.SRC, chain=self.config.src_chain, order_hash=key,
                                 amount=request.src.amount, immutables=src_immutables),
                dst=EscrowRecord(side=Side.DST, chain=self.config.dst_chain, order_hash=key,
                                 amount=request.dst.amount, immutables=dst_immutables),
                secret_hashes=[to_hex(h) for h in hashes] if len(hashes) > 1 else [],
                secret_index=request.secret_index if len(hashes) > 1 else None,
                signed_order=request.signed_order,
                fill_amount=request.fill_amount or request.src.amount,
                created_at=now,
            )
            with self._guard:
                self.swaps[key] = swap
            self._note(swap, "created")
            self._persist(swap)
            log.info(f"Swap {key[:10]} created: {request.src.amount} on {self.config.src_chain.value} "
                     f"for {request.dst.amount} on {self.config.dst_chain.value}")
            return swap

    # =========================================================================
    # SOURCE
    # =========================================================================

    def submit_fill(self, order_hash) -> Swap:
        """Fill the maker's order through the resolver, deploying the source escrow."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.state != SwapState.CREATED:
                return swap
            if swap.halted:
                raise SwapAborted(f"Swap {key[:10]} is halted: {swap.halt_reason}")
            if swap.signed_order is None:
                raise ValidationError(f"Swap {key[:10]} has no signed order to fill")
            if swap.src.tx_hashes.get("deploy"):
                log.info(f"Swap {key[:10]}: fill {swap.src.tx_hashes['deploy']} already sent")
                return swap

            immutables = swap.src.immutables
            value = required_native_value(immutables, CallRole.SOURCE_FILL, swap.fill_amount)
            fill_args = FillArgs(signed_order=swap.signed_order, fill_amount=swap.fill_amount)

            deadline = None
            expiration = swap.signed_order.order.traits.expiration
            if expiration:
                deadline = expiration - self.config.safety_margin

            receipt = self._call(
                swap, "deploy source escrow",
                lambda: self.source.deploy_source_escrow(immutables, fill_args, value),
                deadline, self.source, abortable=True,
            )
            confirmed, address = self._deployment_facts(receipt, immutables)
            if address is None:
                return self._await_creation_event(swap, swap.src, receipt)
            return self.fill_source(FillReceipt(
                order_hash=key,
                filled_amount=swap.fill_amount,
                tx_hash=receipt.tx_hash,
                escrow_address=address,
                immutables=confirmed,
                block_number=receipt.block_number,
            ))

    def fill_source(self, receipt: FillReceipt) -> Swap:
        """The order was filled and the source escrow exists."""
        key = normalize_order_hash(receipt.order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.state == SwapState.MANUAL_REVIEW:
                return swap

            if swap.src.deployed:
                if receipt.escrow_address is None or receipt.escrow_address == swap.src.address:
                    return swap
                exc = ChainStateMismatch(
                    "Second source escrow reported for the same order",
                    expected=swap.src.address, observed=receipt.escrow_address,
                )
                self._review(swap, exc, tx_hash=receipt.tx_hash)
                raise exc

            if swap.state != SwapState.CREATED:
                raise ValidationError(f"Cannot record source fill in state {swap.state.value}")
            if receipt.escrow_address is None or receipt.immutables is None:
                raise ValidationError("Fill receipt carries no escrow address or immutables")

            confirmed = receipt.immutables
            try:
                if not confirmed.matches(swap.src.immutables):
                    raise ChainStateMismatch(
                        "Source escrow immutables differ from the agreed ones",
                        expected=swap.src.immutables.to_dict(), observed=confirmed.to_dict(),
                    )
                if confirmed.timelocks.deployed_at <= 0:
                    raise ChainStateMismatch("Source escrow reports no deployment time")
                self.src_resolver.verify(confirmed, receipt.escrow_address)
            except ChainStateMismatch as e:
                self._review(swap, e, tx_hash=receipt.tx_hash)
                raise

            swap.src.address = receipt.escrow_address
            swap.src.immutables = confirmed
            swap.src.status = EscrowStatus.FUNDED
            swap.src.tx_hashes["deploy"] = receipt.tx_hash
            swap.src.block_number = receipt.block_number
            self.source.watch_escrow(receipt.escrow_address, key)
            self._transition(swap, SwapState.SRC_FILLED,
                             tx_hash=receipt.tx_hash, escrow=str(receipt.escrow_address))
            return swap

    # =========================================================================
    # DESTINATION
    # =========================================================================

    def fund_destination(self, order_hash) -> Swap:
        """Deploy and fund the destination escrow, unless it is too late to do so safely."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.dst.deployed or swap.state in (SwapState.DST_FUNDED, SwapState.SECRET_REVEALED):
                return swap
            if swap.is_terminal:
                return swap
            if swap.state != SwapState.SRC_FILLED:
                raise ValidationError(f"Cannot fund destination in state {swap.state.value}")
            if swap.dst.tx_hashes.get("deploy"):
                log.info(f"Swap {key[:10]}: destination deploy {swap.dst.tx_hashes['deploy']} awaiting its event")
                return swap
            if swap.halted:
                raise SwapAborted(f"Swap {key[:10]} is halted: {swap.halt_reason}")

            now = self.clock()
            margin = self.config.safety_margin
            src_cancellation = swap.src_time(Stage.SRC_CANCELLATION)
            deadline = src_cancellation - margin

            if now > deadline:
                exc = TimeoutExceeded(
                    f"Too late to fund destination: now {now:.0f} > source cancellation "
                    f"{src_cancellation} - margin {margin}",
                    deadline,
                )
                self._halt(swap, str(exc))
                raise exc

            dst_immutables = swap.dst.immutables
            if now + dst_immutables.timelocks.dst_cancellation >= deadline:
                exc = TimeoutExceeded(
                    f"Destination cancellation would land at {now + dst_immutables.timelocks.dst_cancellation:.0f}, "
                    f"not before source cancellation {src_cancellation} - margin {margin}",
                    deadline,
                )
                self._halt(swap, str(exc))
                raise exc

            if not self._source_final(swap):
                log.info(f"Swap {key[:10]}: source deploy not final yet, "
                         f"waiting for {self._confirmation_depth()} confirmations")
                return swap

            value = required_native_value(dst_immutables, CallRole.DESTINATION_DEPLOY)
            receipt = self._call(
                swap, "deploy destination escrow",
                lambda: self.destination.deploy_destination_escrow(dst_immutables, src_cancellation, value),
                deadline, self.destination, abortable=True,
            )
            confirmed, address = self._deployment_facts(receipt, dst_immutables)
            if address is None:
                return self._await_creation_event(swap, swap.dst, receipt)
            return self._confirm_destination(swap, address, confirmed, receipt.tx_hash, receipt.block_number)

    def on_destination_funded(
        self,
        order_hash,
        escrow_address: ChainAddress,
        tx_hash: str,
        immutables: Optional[Immutables] = None,
        deployed_at: Optional[int] = None,
    ) -> Swap:
        """A destination escrow for this swap was observed on chain."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.dst.deployed:
                if escrow_address == swap.dst.address:
                    return swap
                exc = ChainStateMismatch(
                    "Second destination escrow reported for the same order",
                    expected=swap.dst.address, observed=escrow_address,
                )
                self._review(swap, exc, tx_hash=tx_hash)
                raise exc
            if swap.state != SwapState.SRC_FILLED:
                raise ValidationError(f"Destination escrow observed in state {swap.state.value}")
            if immutables is None:
                if not deployed_at:
                    raise ValidationError("Destination event carries neither immutables nor deployment time")
                immutables = swap.dst.immutables.with_deployed_at(deployed_at)
            return self._confirm_destination(swap, escrow_address, immutables, tx_hash)

    def _confirm_destination(
        self,
        swap: Swap,
        address: ChainAddress,
        immutables: Immutables,
        tx_hash: str,
        block_number: Optional[int] = None,
    ) -> Swap:
        try:
            if not immutables.matches(swap.dst.immutables):
                raise ChainStateMismatch(
                    "Destination escrow immutables differ from the agreed ones",
                    expected=swap.dst.immutables.to_dict(), observed=immutables.to_dict(),
                )
            self.dst_resolver.verify(immutables, address)
        except ChainStateMismatch as e:
            self._review(swap, e, tx_hash=tx_hash)
            raise

        swap.dst.address = address
        swap.dst.immutables = immutables
        swap.dst.status = EscrowStatus.FUNDED
        swap.dst.tx_hashes["deploy"] = tx_hash
        swap.dst.block_number = block_number
        self.destination.watch_escrow(address, swap.order_hash)
        self._transition(swap, SwapState.DST_FUNDED, tx_hash=tx_hash, escrow=str(address))
        return swap

    # =========================================================================
    # SECRET
    # =========================================================================

    def _secret_matches(self, swap: Swap, secret: bytes, proof=None) -> bool:
        if hash_secret(secret) != swap.escrow_hashlock:
            return False
        if not swap.secret_hashes:
            return True
        hashes = [to_bytes32(h) for h in swap.secret_hashes]
        if proof is None:
            proof = merkle_proof(merkle_leaves(hashes), swap.secret_index)
        return verify_secret(to_bytes32(swap.hashlock), secret, index=swap.secret_index, proof=proof)

    def reveal_secret(self, order_hash, secret, proof=None) -> Swap:
        """Accept the maker's secret and withdraw from both escrows with it."""
        key = normalize_order_hash(order_hash)
        secret = to_bytes32(secret, "secret")
        with self._lock(key):
            swap = self._get(key)
            if swap.is_terminal:
                return swap

            if swap.revealed_secret:
                if to_bytes32(swap.revealed_secret) != secret:
                    raise CounterpartyFault(f"Swap {key[:10]}: secret differs from the one already revealed")
            else:
                if swap.state != SwapState.DST_FUNDED:
                    raise ValidationError(f"Secret revealed in state {swap.state.value}, destination not funded")
                if not self._secret_matches(swap, secret, proof):
                    raise CounterpartyFault(f"Swap {key[:10]}: secret does not match the hash commitment")
                swap.revealed_secret = to_hex(secret)
                self._transition(swap, SwapState.SECRET_REVEALED, source="maker")

            if swap.state == SwapState.SECRET_REVEALED:
                self._withdraw_open_sides(swap)
            return swap

    def advance(self, order_hash) -> Swap:
        """Retry pending withdrawals once their windows are open."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.state == SwapState.SECRET_REVEALED:
                self._withdraw_open_sides(swap)
            return swap

    def _withdraw_open_sides(self, swap: Swap):
        secret = to_bytes32(swap.revealed_secret)
        now = self.clock()
        sides = (
            (swap.dst, self.destination, Stage.DST_WITHDRAWAL, Stage.DST_CANCELLATION),
            (swap.src, self.source, Stage.SRC_WITHDRAWAL, Stage.SRC_CANCELLATION),
        )
        for record, adapter, opens_at, closes_at in sides:
            if record.status != EscrowStatus.FUNDED:
                continue
            timelocks = record.immutables.timelocks
            opens, closes = timelocks.absolute(opens_at), timelocks.absolute(closes_at)
            if now < opens:
                log.info(f"Swap {swap.order_hash[:10]}: {record.side.value} withdrawal opens at {opens}")
                continue
            if now >= closes:
                log.warning(f"Swap {swap.order_hash[:10]}: {record.side.value} withdrawal window closed at {closes}")
                continue
            try:
                receipt = self._call(
                    swap, f"withdraw {record.side.value}",
                    lambda: adapter.withdraw(record.address, secret, record.immutables),
                    closes - self.config.safety_margin, adapter,
                )
            except (ChainCallError, TimeoutExceeded, SwapAborted) as e:
                # recorded on the swap; the scanner decides what happens next
                log.error(f"Swap {swap.order_hash[:10]}: {record.side.value} withdrawal failed: {e}")
                continue
            record.status = EscrowStatus.WITHDRAWN
            record.tx_hashes["withdraw"] = receipt.tx_hash
            self._note(swap, f"{record.side.value} withdrawn", tx_hash=receipt.tx_hash)
            self._persist(swap)

        if swap.src.status == EscrowStatus.WITHDRAWN and swap.dst.status == EscrowStatus.WITHDRAWN:
            self.complete(swap.order_hash)

    def complete(self, order_hash) -> Swap:
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.state == SwapState.COMPLETED:
                return swap
            if swap.src.status != EscrowStatus.WITHDRAWN or swap.dst.status != EscrowStatus.WITHDRAWN:
                raise ValidationError(
                    f"Cannot complete: source {swap.src.status.value}, destination {swap.dst.status.value}"
                )
            self._transition(swap, SwapState.COMPLETED,
                             src_tx=swap.src.tx_hashes.get("withdraw"),
                             dst_tx=swap.dst.tx_hashes.get("withdraw"))
            return swap

    # =========================================================================
    # OBSERVED FACTS
    # =========================================================================

    def on_escrow_withdrawn(self, order_hash, side: Side, tx_hash: str, secret: Optional[bytes] = None) -> Swap:
        """An escrow was withdrawn on chain, possibly by someone else."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            record = swap.record(side)
            if record.status == EscrowStatus.WITHDRAWN or swap.is_terminal:
                return swap
            if record.status != EscrowStatus.FUNDED:
                log.warning(f"Swap {key[:10]}: withdrawal seen on {side.value} escrow in status {record.status.value}")
                return swap

            record.status = EscrowStatus.WITHDRAWN
            record.tx_hashes["withdraw"] = tx_hash
            self._note(swap, f"{side.value} withdrawn (observed)", tx_hash=tx_hash)

            if secret is not None and not swap.revealed_secret:
                if not self._secret_matches(swap, to_bytes32(secret, "secret")):
                    exc = ChainStateMismatch(
                        f"{side.value} escrow withdrawn with a secret that does not match the hashlock",
                        expected=swap.hashlock, observed=to_hex(secret),
                    )
                    self._review(swap, exc, tx_hash=tx_hash)
                    raise exc
                swap.revealed_secret = to_hex(secret)
                self._transition(swap, SwapState.SECRET_REVEALED, source=f"{side.value} chain", tx_hash=tx_hash)
            else:
                self._persist(swap)

            if swap.state == SwapState.SECRET_REVEALED:
                self._withdraw_open_sides(swap)
            return swap

    def on_escrow_cancelled(self, order_hash, side: Side, tx_hash: str) -> Swap:
        """An escrow was cancelled on chain, possibly by someone else."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            record = swap.record(side)
            if record.status in (EscrowStatus.CANCELLED, EscrowStatus.REFUNDED) or swap.is_terminal:
                return swap
            if record.status != EscrowStatus.FUNDED:
                log.warning(f"Swap {key[:10]}: cancellation seen on {side.value} escrow in status {record.status.value}")
                return swap
            self._mark_cancelled(swap, side, tx_hash)
            self._settle(swap, tx_hash)
            return swap

    def _mark_cancelled(self, swap: Swap, side: Side, tx_hash: str):
        record = swap.record(side)
        record.status = EscrowStatus.REFUNDED if side == Side.SRC else EscrowStatus.CANCELLED
        record.tx_hashes["cancel"] = tx_hash
        self._note(swap, f"{side.value} {record.status.value}", tx_hash=tx_hash)

    def _settle(self, swap: Swap, tx_hash: Optional[str] = None):
        """Pick the state implied by both escrows after a cancellation."""
        src, dst = swap.src.status, swap.dst.status
        if EscrowStatus.WITHDRAWN in (src, dst):
            self._review(swap, CounterpartyFault(
                f"Escrows diverged: source {src.value}, destination {dst.value}"
            ), tx_hash=tx_hash)
        elif src == EscrowStatus.REFUNDED and dst == EscrowStatus.CANCELLED:
            self._transition(swap, SwapState.REFUNDED, tx_hash=tx_hash)
        elif dst == EscrowStatus.CANCELLED:
            self._transition(swap, SwapState.CANCELLED_DST, tx_hash=tx_hash)
        elif src == EscrowStatus.REFUNDED and dst == EscrowStatus.PENDING:
            self._transition(swap, SwapState.CANCELLED_SRC, tx_hash=tx_hash)
        else:
            self._persist(swap)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel(self, order_hash) -> Swap:
        """Cancel whichever escrow has reached its cancellation stage."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.is_terminal or swap.state == SwapState.CANCELLED_DST:
                return swap
            now = self.clock()

            if swap.state == SwapState.CREATED:
                expires = swap.created_at + swap.src.immutables.timelocks.src_cancellation
                if now < expires:
                    raise ValidationError(f"Swap {key[:10]}: unfilled order cannot be cancelled before {expires}")
                self._transition(swap, SwapState.CANCELLED_SRC, reason="order never filled")
                return swap

            if swap.state == SwapState.SRC_FILLED and not swap.dst.deployed:
                stage = swap.src_time(Stage.SRC_CANCELLATION)
                if now < stage:
                    raise ValidationError(f"Swap {key[:10]}: source cancellation opens at {stage}")
                receipt = self._call(
                    swap, "cancel source escrow",
                    lambda: self.source.cancel(swap.src.address, swap.src.immutables),
                    None, self.source,
                )
                self._mark_cancelled(swap, Side.SRC, receipt.tx_hash)
                self._settle(swap, receipt.tx_hash)
                return swap

            if swap.dst.status == EscrowStatus.FUNDED:
                stage = swap.dst_time(Stage.DST_CANCELLATION)
                if now < stage:
                    raise ValidationError(f"Swap {key[:10]}: destination cancellation opens at {stage}")
                receipt = self._call(
                    swap, "cancel destination escrow",
                    lambda: self.destination.cancel(swap.dst.address, swap.dst.immutables),
                    None, self.destination,
                )
                self._mark_cancelled(swap, Side.DST, receipt.tx_hash)
                self._settle(swap, receipt.tx_hash)
                if now >= swap.src_time(Stage.SRC_CANCELLATION):
                    return self.refund(key)
                return swap

            raise ValidationError(f"Swap {key[:10]}: nothing to cancel in state {swap.state.value}")

    def refund(self, order_hash) -> Swap:
        """Return the maker's source funds after the destination was cancelled."""
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if swap.state == SwapState.REFUNDED:
                return swap
            if swap.state != SwapState.CANCELLED_DST:
                raise ValidationError(f"Cannot refund in state {swap.state.value}")
            stage = swap.src_time(Stage.SRC_CANCELLATION)
            if self.clock() < stage:
                raise ValidationError(f"Swap {key[:10]}: source cancellation opens at {stage}")

            if swap.src.status == EscrowStatus.FUNDED:
                receipt = self._call(
                    swap, "refund source escrow",
                    lambda: self.source.cancel(swap.src.address, swap.src.immutables),
                    None, self.source,
                )
                self._mark_cancelled(swap, Side.SRC, receipt.tx_hash)
            self._settle(swap, swap.src.tx_hashes.get("cancel"))
            return swap

    def flag_for_review(self, order_hash, reason: str, **evidence) -> Swap:
        key = normalize_order_hash(order_hash)
        with self._lock(key):
            swap = self._get(key)
            if not swap.is_terminal:
                self._review(swap, TimeoutExceeded(reason), **evidence)
            return swap

    def abort(self, order_hash) -> bool:
        """
        Operator abort of a forward deployment that is waiting to retry.

        Returns False when no such call is in flight. Otherwise the retry loop
        raises SwapAborted before its next attempt and halts the swap; a
        transaction already broadcast is still observed to its outcome.
        """
        key = normalize_order_hash(order_hash)
        self._get(key)
        with self._guard:
            event = self._aborts.get(key)
        if event is None:
            log.info(f"Swap {key[:10]}: abort ignored, no deployment in flight")
            return False
        event.set()
        log.warning(f"Swap {key[:10]}: abort requested by operator")
        return True

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def due_action(self, swap: Swap, now: Optional[float] = None) -> Optional[str]:
        """
        What the timeout scanner should do with a swap right now.

        Cancellations wait until stage + margin so the chain clock has surely
        passed the stage; forward steps stop at stage - margin.
        """
        if swap.is_terminal:
            return None
        now = self.clock() if now is None else now
        margin = self.config.safety_margin
        timelocks = swap.src.immutables.timelocks

        if swap.state == SwapState.CREATED:
            if now >= swap.created_at + timelocks.src_cancellation + margin:
                return "cancel"
            return None

        src_cancellation = swap.src_time(Stage.SRC_CANCELLATION)

        if swap.state == SwapState.SRC_FILLED:
            if now >= src_cancellation + margin:
                return "cancel"
            if swap.halted or swap.dst.tx_hashes.get("deploy") or now > src_cancellation - margin:
                return None
            return "fund" if self._source_final(swap) else None

        if swap.state == SwapState.CANCELLED_DST:
            return "refund" if now >= src_cancellation + margin else None

        # DST_FUNDED / SECRET_REVEALED
        if swap.dst.status == EscrowStatus.FUNDED and now >= swap.dst_time(Stage.DST_CANCELLATION) + margin:
            if swap.revealed_secret:
                log.warning(f"Swap {swap.order_hash[:10]}: destination never withdrawn, cancelling")
            return "cancel"
        if swap.state == SwapState.SECRET_REVEALED:
            if swap.src.status == EscrowStatus.FUNDED and now >= src_cancellation:
                return "review"
            for record, opens in ((swap.dst, Stage.DST_WITHDRAWAL), (swap.src, Stage.SRC_WITHDRAWAL)):
                if record.status == EscrowStatus.FUNDED and now >= record.immutables.timelocks.absolute(opens):
                    return "advance"
        return None

    def run_action(self, order_hash, action: str) -> Swap:
        if action == "fund":
            return self.fund_destination(order_hash)
        if action == "cancel":
            return self.cancel(order_hash)
        if action == "refund":
            return self.refund(order_hash)
        if action == "advance":
            return self.advance(order_hash)
        if action == "review":
            swap = self._get(normalize_order_hash(order_hash))
            return self.flag_for_review(
                order_hash, "source withdrawal window closed before withdrawal",
                escrow=str(swap.src.address), dst_tx=swap.dst.tx_hashes.get("withdraw"),
                last_error=swap.last_error,
            )
        raise ValidationError(f"Unknown action: {action}")

    def archive_terminal(self, now: Optional[float] = None) -> List[str]:
        """Move terminal swaps idle for `archive_after` seconds out of the live set."""
        now = self.clock() if now is None else now
        cutoff = now - self.config.archive_after
        archived = []
        for swap in self._snapshot():
            if not swap.is_terminal or swap.updated_at > cutoff:
                continue
            key = swap.order_hash
            with self._lock(key):
                if self.store is not None:
                    self.store.archive(key)
                with self._guard:
                    self.swaps.pop(key, None)
                    self._aborts.pop(key, None)
            with self._guard:
                self._locks.pop(key, None)
            archived.append(key)
        if archived:
            log.info(f"Archived {len(archived)} finished swaps")
        return archived

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _snapshot(self) -> List[Swap]:
        with self._guard:
            return list(self.swaps.values())

    def get_swap(self, order_hash) -> Optional[Swap]:
        """Live swap, or an archived one from the store."""
        try:
            key = normalize_order_hash(order_hash)
        except ValidationError:
            return None
        with self._guard:
            swap = self.swaps.get(key)
        if swap is None and self.store is not None:
            data = self.store.get_archived(key)
            if data:
                swap = Swap.from_dict(data)
        return swap

    def all_swaps(self) -> List[Swap]:
        return self._snapshot()

    def active_swaps(self) -> List[Swap]:
        return [s for s in self._snapshot() if not s.is_terminal]

    def find_by_escrow(self, address: ChainAddress) -> Optional[Swap]:
        for swap in self._snapshot():
            if address in (swap.src.address, swap.dst.address):
                return swap
        return None

    def find_by_hashlock(self, hashlock: bytes) -> Optional[Swap]:
        for swap in self._snapshot():
            if swap.escrow_hashlock == hashlock:
                return swap
        return None

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for swap in self._snapshot():
            counts[swap.state.value] = counts.get(swap.state.value, 0) + 1
        return counts
