"""
Swap Watcher for crosslock.

Threads:
- one SwapWorker per in-flight swap, consuming a command queue; every
  transition of that swap runs there
- one ChainListener per chain, polling escrow events and routing each one
  to its swap's worker (by order hash, escrow address, then hashlock)
- one TimeoutScanner, queueing cancel/refund/advance actions as timelocks
  come due

Events are delivered at least once; the coordinator's transitions are
idempotent, so duplicates are harmless.
"""

import time
import queue
import logging
import threading
from typing import Dict, List, Callable, Optional, Tuple, Any
from dataclasses import dataclass

from ..core import Side, SwapState
from ..errors import CrossLockError
from ..chains.base import EscrowEvent, EscrowEventKind, FillReceipt
from .executor import SwapCoordinator, Swap

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval_src: float = 5.0     # seconds
    poll_interval_dst: float = 5.0     # seconds
    scan_interval: float = 10.0        # seconds
    auto_fund: bool = True             # fund destination once the source is filled
    auto_fill: bool = False            # submit the order fill when a swap is tracked


class SwapWorker:
    """Serializes all work for one swap on a dedicated thread."""

    def __init__(self, coordinator: SwapCoordinator, order_hash: str, config: WatcherConfig):
        self.coordinator = coordinator
        self.order_hash = order_hash
        self.config = config
        self.queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._pending: set = set()
        self._pending_lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._run_loop, name=f"swap-{self.order_hash[:10]}", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def submit(self, action: str, payload: Any = None):
        """Queue an action. Payload-less actions already queued are dropped."""
        if payload is None:
            with self._pending_lock:
                if action in self._pending:
                    return
                self._pending.add(action)
        self.queue.put((action, payload))

    def _run_loop(self):
        while self._running:
            try:
                action, payload = self.queue.get(timeout=1)
            except queue.Empty:
                continue
            self.process(action, payload)

            swap = self.coordinator.get_swap(self.order_hash)
            if swap is None or swap.is_terminal:
                log.info(f"Worker for {self.order_hash[:10]} finished ({swap.state.value if swap else 'gone'})")
                self._running = False

    def process(self, action: str, payload: Any = None):
        """Run one action; failures are logged and left to the scanner."""
        if payload is None:
            with self._pending_lock:
                self._pending.discard(action)
        try:
            self._dispatch(action, payload)
        except CrossLockError as e:
            log.warning(f"Swap {self.order_hash[:10]} {action} failed: {type(e).__name__}: {e}")
        except Exception:
            log.exception(f"Swap {self.order_hash[:10]} {action} crashed")

    def _dispatch(self, action: str, payload: Any):
        if action == "event":
            side, event = payload
            self._handle_event(side, event)
        elif action == "reveal":
            secret, proof = payload
            self.coordinator.reveal_secret(self.order_hash, secret, proof)
        elif action == "fill":
            self.coordinator.submit_fill(self.order_hash)
        else:
            self.coordinator.run_action(self.order_hash, action)

    def _handle_event(self, side: Side, event: EscrowEvent):
        c = self.coordinator
        if event.kind == EscrowEventKind.CREATED:
            if side == Side.SRC:
                c.fill_source(FillReceipt(
                    order_hash=self.order_hash,
                    filled_amount=event.immutables.amount if event.immutables else 0,
                    tx_hash=event.tx_hash,
                    escrow_address=event.escrow_address,
                    immutables=event.immutables,
                    block_number=event.block_number or None,
                ))
                if self.config.auto_fund:
                    c.fund_destination(self.order_hash)
            else:
                c.on_destination_funded(
                    self.order_hash,
                    event.escrow_address,
                    event.tx_hash,
                    immutables=event.immutables,
                    deployed_at=event.timestamp,
                )
        elif event.kind == EscrowEventKind.WITHDRAWN:
            c.on_escrow_withdrawn(self.order_hash, side, event.tx_hash, event.secret)
        elif event.kind == EscrowEventKind.CANCELLED:
            c.on_escrow_cancelled(self.order_hash, side, event.tx_hash)


class ChainListener:
    """Polls one chain's escrow events."""

    def __init__(
        self,
        adapter,
        side: Side,
        dispatch: Callable[[Side, EscrowEvent], None],
        poll_interval: float,
    ):
        self.adapter = adapter
        self.side = side
        self.dispatch = dispatch
        self.poll_interval = poll_interval
        self.cursor = None
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, name=f"listener-{self.side.value}", daemon=True)
        self._thread.start()
        log.info(f"{self.side.value} chain listener started")

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)

    def poll_once(self) -> int:
        events, cursor = self.adapter.poll_events(self.cursor)
        for event in events:
            self.dispatch(self.side, event)
        # only advance after every event was handed off
        self.cursor = cursor
        return len(events)

    def _watch_loop(self):
        while self._running:
            try:
                self.poll_once()
            except Exception as e:
                log.error(f"{self.side.value} listener error: {e}")
            time.sleep(self.poll_interval)


class TimeoutScanner:
    """Queues the action each swap's timelocks call for."""

    def __init__(
        self,
        coordinator: SwapCoordinator,
        route: Callable[[str, str], None],
        scan_interval: float,
        auto_fund: bool = True,
        on_archived: Optional[Callable[[List[str]], None]] = None,
    ):
        self.coordinator = coordinator
        self.route = route
        self.scan_interval = scan_interval
        self.auto_fund = auto_fund
        self.on_archived = on_archived
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._scan_loop, name="timeout-scanner", daemon=True)
        self._thread.start()

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)

    def scan_once(self, now: Optional[float] = None) -> List[Tuple[str, str]]:
        routed = []
        for swap in self.coordinator.active_swaps():
            action = self.coordinator.due_action(swap, now)
            if action is None or (action == "fund" and not self.auto_fund):
                continue
            self.route(swap.order_hash, action)
            routed.append((swap.order_hash, action))

        archived = self.coordinator.archive_terminal(now)
        if archived and self.on_archived:
            self.on_archived(archived)
        return routed

    def _scan_loop(self):
        while self._running:
            try:
                self.scan_once()
            except Exception as e:
                log.error(f"Timeout scan error: {e}")
            time.sleep(self.scan_interval)


class SwapWatcher:
    """
    Background service that runs the coordinator.

    Callbacks:
    - on_swap_completed(swap)
    - on_swap_cancelled(swap): CANCELLED_SRC or REFUNDED
    - on_manual_review(swap)
    """

    def __init__(self, coordinator: SwapCoordinator, config: WatcherConfig = None):
        self.coordinator = coordinator
        self.config = config or WatcherConfig()

        self.on_swap_completed: Optional[Callable[[Swap], None]] = None
        self.on_swap_cancelled: Optional[Callable[[Swap], None]] = None
        self.on_manual_review: Optional[Callable[[Swap], None]] = None

        self.workers: Dict[str, SwapWorker] = {}
        self._lock = threading.Lock()

        self.listeners = [
            ChainListener(coordinator.source, Side.SRC, self.dispatch, self.config.poll_interval_src),
            ChainListener(coordinator.destination, Side.DST, self.dispatch, self.config.poll_interval_dst),
        ]
        self.scanner = TimeoutScanner(
            coordinator, self.route, self.config.scan_interval, self.config.auto_fund,
            on_archived=self._forget,
        )
        coordinator.subscribe(self._on_state_change)

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start listeners, scanner and a worker for every active swap."""
        if self._running:
            return
        self._running = True
        for swap in self.coordinator.active_swaps():
            self.track(swap.order_hash)
        for listener in self.listeners:
            listener.start()
        self.scanner.start()
        log.info("Swap watcher started")

    def stop(self):
        self._running = False
        self.scanner.stop()
        for listener in self.listeners:
            listener.stop()
        with self._lock:
            workers = list(self.workers.values())
        for worker in workers:
            worker.stop()
        log.info("Swap watcher stopped")

    def track(self, order_hash: str) -> SwapWorker:
        """Worker for a swap, started on first use."""
        with self._lock:
            worker = self.workers.get(order_hash)
            if worker is None or (worker._thread is not None and not worker.alive):
                worker = SwapWorker(self.coordinator, order_hash, self.config)
                self.workers[order_hash] = worker
                worker.start()
                if self.config.auto_fill:
                    worker.submit("fill")
            return worker

    def route(self, order_hash: str, action: str, payload: Any = None):
        self.track(order_hash).submit(action, payload)

    def _match(self, event: EscrowEvent) -> Optional[Swap]:
        c = self.coordinator
        if event.order_hash:
            swap = c.get_swap(event.order_hash)
            if swap:
                return swap
        if event.escrow_address is not None:
            swap = c.find_by_escrow(event.escrow_address)
            if swap:
                return swap
        if event.hashlock:
            return c.find_by_hashlock(event.hashlock)
        return None

    def dispatch(self, side: Side, event: EscrowEvent):
        """Route a chain event to its swap's worker."""
        swap = self._match(event)
        if swap is None:
            log.debug(f"Ignoring {event.kind.value} event {event.tx_hash}: no matching swap")
            return
        if swap.is_terminal:
            return
        self.route(swap.order_hash, "event", (side, event))

    def reveal(self, order_hash: str, secret: bytes, proof=None):
        self.route(order_hash, "reveal", (secret, proof))

    def abort(self, order_hash: str) -> bool:
        # not queued: the worker may be blocked inside a retry wait
        return self.coordinator.abort(order_hash)

    def _forget(self, order_hashes: List[str]):
        """Drop workers of archived swaps."""
        with self._lock:
            workers = [self.workers.pop(h) for h in order_hashes if h in self.workers]
        for worker in workers:
            worker.stop()

    def _on_state_change(self, swap: Swap):
        if swap.state == SwapState.COMPLETED and self.on_swap_completed:
            self.on_swap_completed(swap)
        elif swap.state in (SwapState.CANCELLED_SRC, SwapState.REFUNDED) and self.on_swap_cancelled:
            self.on_swap_cancelled(swap)
        elif swap.state == SwapState.MANUAL_REVIEW and self.on_manual_review:
            self.on_manual_review(swap)
