#!/usr/bin/env python3
"""
crosslock Resolver Server
Runs the swap coordinator and exposes it to operators.

Endpoints:
  GET  /api/status                      - Health check and swap counts
  GET  /api/swaps                       - List swaps
  POST /api/swaps                       - Register a swap
  GET  /api/swaps/{order_hash}          - Get one swap
  POST /api/swaps/{order_hash}/fill     - Fill the order on the source chain
  POST /api/swaps/{order_hash}/reveal   - Submit the maker's secret
  POST /api/swaps/{order_hash}/cancel   - Cancel once a timelock allows it
  POST /api/swaps/{order_hash}/abort    - Abort a deployment waiting to retry
"""

import os
import time
import logging
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from crosslock import __version__
from crosslock.core import ChainAddress, ChainKind, SwapState, to_bytes32
from crosslock.errors import (
    CrossLockError, ValidationError, ConfigurationError, ChainCallError,
    ChainStateMismatch, TimeoutExceeded, CounterpartyFault, SwapAborted,
)
from crosslock.htlc.escrow import proxy_code_hash
from crosslock.orders import SignedOrder
from crosslock.timelocks import Timelocks
from crosslock.swap.executor import (
    SwapCoordinator, SwapConfig, SwapRequest, EscrowTerms, normalize_order_hash,
)
from crosslock.swap.retry import RetryPolicy
from crosslock.swap.store import SwapStore
from crosslock.swap.watcher import SwapWatcher, WatcherConfig

log = logging.getLogger(__name__)

# =============================================================================
# MODELS
# =============================================================================

class EscrowTermsModel(BaseModel):
    maker: str = Field(..., min_length=1)
    taker: str = Field(..., min_length=1)
    token: str = Field(..., description="Token address, zero address for the native coin")
    amount: int = Field(..., gt=0)
    safety_deposit: int = Field(0, ge=0)


class TimelocksModel(BaseModel):
    """Stage offsets in seconds from deployment."""
    src_withdrawal: int
    src_cancellation: int
    dst_withdrawal: int
    dst_cancellation: int
    src_public_withdrawal: Optional[int] = None
    src_public_cancellation: Optional[int] = None
    dst_public_withdrawal: Optional[int] = None


class SwapCreateRequest(BaseModel):
    order_hash: str = Field(..., description="0x-prefixed 32-byte order hash")
    hashlock: str = Field(..., description="H(secret), or Merkle root for multi-fill")
    src: EscrowTermsModel
    dst: EscrowTermsModel
    timelocks: TimelocksModel
    secret_hashes: List[str] = []
    secret_index: Optional[int] = None
    signed_order: Optional[Dict[str, Any]] = None    # SignedOrder.to_dict() form
    fill_amount: Optional[int] = None


class RevealRequest(BaseModel):
    secret: str                          # 0x-prefixed 32-byte hex
    proof: Optional[List[str]] = None    # Merkle proof, multi-fill only


class SwapSummary(BaseModel):
    order_hash: str
    state: str
    src_status: str
    dst_status: str
    src_address: Optional[str] = None
    dst_address: Optional[str] = None
    halted: bool = False
    last_error: Optional[str] = None
    updated_at: int = 0


def _summary(swap) -> SwapSummary:
    return SwapSummary(
        order_hash=swap.order_hash,
        state=swap.state.value,
        src_status=swap.src.status.value,
        dst_status=swap.dst.status.value,
        src_address=str(swap.src.address) if swap.src.address else None,
        dst_address=str(swap.dst.address) if swap.dst.address else None,
        halted=swap.halted,
        last_error=swap.last_error,
        updated_at=swap.updated_at,
    )


def _terms(model: EscrowTermsModel, chain: ChainKind) -> EscrowTerms:
    return EscrowTerms(
        maker=ChainAddress(chain, model.maker),
        taker=ChainAddress(chain, model.taker),
        token=ChainAddress(chain, model.token),
        amount=model.amount,
        safety_deposit=model.safety_deposit,
    )


def _swap_request(req: SwapCreateRequest, config: SwapConfig) -> SwapRequest:
    return SwapRequest(
        order_hash=to_bytes32(req.order_hash, "order_hash"),
        hashlock=to_bytes32(req.hashlock, "hashlock"),
        src=_terms(req.src, config.src_chain),
        dst=_terms(req.dst, config.dst_chain),
        timelocks=Timelocks.build(**req.timelocks.model_dump(), safety_margin=config.safety_margin),
        secret_hashes=[to_bytes32(h, "secret_hash") for h in req.secret_hashes],
        secret_index=req.secret_index,
        signed_order=SignedOrder.from_dict(req.signed_order) if req.signed_order else None,
        fill_amount=req.fill_amount,
    )


def _http_error(e: CrossLockError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, (CounterpartyFault, ChainStateMismatch, TimeoutExceeded, SwapAborted)):
        return HTTPException(409, f"{type(e).__name__}: {e}")
    if isinstance(e, ChainCallError):
        return HTTPException(502, f"Chain call failed: {e}")
    return HTTPException(500, str(e))


# =============================================================================
# APP
# =============================================================================

def create_app(coordinator: SwapCoordinator, watcher: Optional[SwapWatcher] = None) -> FastAPI:
    app = FastAPI(
        title="crosslock",
        description="Cross-chain atomic swap resolver",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _swap_or_404(order_hash: str):
        try:
            key = normalize_order_hash(order_hash)
        except ValidationError as e:
            raise HTTPException(400, str(e))
        swap = coordinator.get_swap(key)
        if swap is None:
            raise HTTPException(404, "Swap not found")
        return swap

    @app.on_event("startup")
    def startup_event():
        if watcher is not None:
            watcher.start()

    @app.on_event("shutdown")
    def shutdown_event():
        if watcher is not None:
            watcher.stop()

    @app.get("/api/status")
    def get_status():
        """Health check."""
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "source_chain": coordinator.config.src_chain.value,
            "destination_chain": coordinator.config.dst_chain.value,
            "swaps_active": len(coordinator.active_swaps()),
            "swaps_total": len(coordinator.all_swaps()),
            "swaps_archived": coordinator.store.archived_count() if coordinator.store is not None else 0,
            "states": coordinator.summary(),
            "watcher_running": bool(watcher and watcher.running),
        }

    @app.get("/api/swaps", response_model=List[SwapSummary])
    def list_swaps(state: Optional[str] = Query(None), active: bool = Query(False)):
        """List swaps, newest first."""
        swaps = coordinator.active_swaps() if active else coordinator.all_swaps()
        if state:
            try:
                wanted = SwapState(state)
            except ValueError:
                raise HTTPException(400, f"Unknown state: {state}")
            swaps = [s for s in swaps if s.state == wanted]
        swaps.sort(key=lambda s: s.updated_at, reverse=True)
        return [_summary(s) for s in swaps]

    @app.post("/api/swaps", status_code=201)
    def create_swap(req: SwapCreateRequest):
        """Register a swap agreed off-chain."""
        try:
            swap = coordinator.create(_swap_request(req, coordinator.config))
        except CrossLockError as e:
            raise _http_error(e)
        except (KeyError, ValueError) as e:
            raise HTTPException(400, f"Invalid swap request: {e}")
        if watcher is not None and watcher.running:
            watcher.track(swap.order_hash)
        return swap.to_dict()

    @app.get("/api/swaps/{order_hash}")
    def get_swap(order_hash: str):
        return _swap_or_404(order_hash).to_dict()

    @app.post("/api/swaps/{order_hash}/fill")
    def fill_swap(order_hash: str):
        """Fill the signed order, deploying the source escrow."""
        swap = _swap_or_404(order_hash)
        if watcher is not None and watcher.running:
            watcher.route(swap.order_hash, "fill")
            return {"order_hash": swap.order_hash, "state": swap.state.value, "queued": True}
        try:
            return coordinator.submit_fill(swap.order_hash).to_dict()
        except CrossLockError as e:
            raise _http_error(e)

    @app.post("/api/swaps/{order_hash}/reveal")
    def reveal_secret(order_hash: str, req: RevealRequest):
        swap = _swap_or_404(order_hash)
        try:
            proof = [to_bytes32(p, "proof") for p in req.proof] if req.proof else None
            return coordinator.reveal_secret(swap.order_hash, req.secret, proof).to_dict()
        except CrossLockError as e:
            raise _http_error(e)

    @app.post("/api/swaps/{order_hash}/cancel")
    def cancel_swap(order_hash: str):
        swap = _swap_or_404(order_hash)
        try:
            return coordinator.cancel(swap.order_hash).to_dict()
        except CrossLockError as e:
            raise _http_error(e)

    @app.post("/api/swaps/{order_hash}/abort")
    def abort_swap(order_hash: str):
        swap = _swap_or_404(order_hash)
        target = watcher if watcher is not None else coordinator
        if not target.abort(swap.order_hash):
            raise HTTPException(409, "No deployment in flight to abort")
        return coordinator.get_swap(swap.order_hash).to_dict()

    return app


# =============================================================================
# CONFIGURATION
# =============================================================================

def _env(name: str, default: str = "") -> str:
    return os.environ.get(f"CROSSLOCK_{name}", default)


def _evm_config(prefix: str):
    from crosslock.chains.evm import EVMConfig
    return EVMConfig(
        rpc_url=_env(f"{prefix}_RPC", "http://127.0.0.1:8545"),
        chain_id=int(_env(f"{prefix}_CHAIN_ID", "1")),
        private_key=_env(f"{prefix}_PRIVATE_KEY", _env("PRIVATE_KEY")),
        resolver_address=_env(f"{prefix}_RESOLVER"),
        escrow_factory_address=_env(f"{prefix}_FACTORY"),
        limit_order_protocol=_env(f"{prefix}_LOP"),
    )


def _code_hash(prefix: str, chain: ChainKind) -> Optional[bytes]:
    """Explicit code hash, else derived from the escrow implementation."""
    explicit = _env(f"{prefix}_CODE_HASH")
    if explicit:
        return bytes.fromhex(explicit[2:] if explicit.startswith("0x") else explicit)
    implementation = _env(f"{prefix}_ESCROW_IMPL")
    if implementation:
        return proxy_code_hash(ChainAddress(chain, implementation))
    return None


def _load_config():
    """Build adapters and coordinator config from CROSSLOCK_* variables."""
    from crosslock.chains.evm import EVMChainAdapter

    dst_chain = ChainKind(_env("DST_CHAIN", "evm"))

    src_config = _evm_config("SRC")
    source = EVMChainAdapter(src_config)

    if dst_chain == ChainKind.TRON:
        from crosslock.chains.tron import TronDestinationAdapter, TronConfig
        dst_config = TronConfig(
            network=_env("TRON_NETWORK", "nile"),
            api_key=_env("TRON_API_KEY"),
            private_key=_env("DST_PRIVATE_KEY", _env("PRIVATE_KEY")),
            resolver_address=_env("DST_RESOLVER"),
            escrow_factory_address=_env("DST_FACTORY"),
        )
        destination = TronDestinationAdapter(dst_config)
        dst_factory = dst_config.escrow_factory_address
    else:
        dst_config = _evm_config("DST")
        destination = EVMChainAdapter(dst_config)
        dst_factory = dst_config.escrow_factory_address

    if not src_config.escrow_factory_address or not dst_factory:
        raise ConfigurationError("CROSSLOCK_SRC_FACTORY and CROSSLOCK_DST_FACTORY must be set")

    swap_config = SwapConfig(
        src_factory=ChainAddress(ChainKind.EVM, src_config.escrow_factory_address),
        src_code_hash=_code_hash("SRC", ChainKind.EVM),
        dst_factory=ChainAddress(dst_chain, dst_factory),
        dst_code_hash=_code_hash("DST", dst_chain),
        src_chain=ChainKind.EVM,
        dst_chain=dst_chain,
        safety_margin=int(_env("SAFETY_MARGIN", "120")),
        src_confirmations=int(_env("SRC_CONFIRMATIONS")) if _env("SRC_CONFIRMATIONS") else None,
        archive_after=int(_env("ARCHIVE_AFTER", "3600")),
        retry=RetryPolicy(max_attempts=int(_env("RETRY_MAX_ATTEMPTS", "8"))),
    )
    watcher_config = WatcherConfig(
        poll_interval_src=float(_env("POLL_INTERVAL", "5")),
        poll_interval_dst=float(_env("POLL_INTERVAL", "5")),
        scan_interval=float(_env("SCAN_INTERVAL", "10")),
        auto_fund=_env("AUTO_FUND", "1") not in ("0", "false", "no"),
        auto_fill=_env("AUTO_FILL", "0") not in ("0", "false", "no"),
    )
    return source, destination, swap_config, watcher_config


# =============================================================================
# MAIN
# =============================================================================

def main():
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    source, destination, swap_config, watcher_config = _load_config()
    coordinator = SwapCoordinator(source, destination, swap_config, store=SwapStore.from_env())
    watcher = SwapWatcher(coordinator, watcher_config)
    app = create_app(coordinator, watcher)

    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting crosslock resolver on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
