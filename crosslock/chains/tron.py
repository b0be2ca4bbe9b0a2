"""
Tron destination adapter.

Transactions go through tronpy against the same resolver interface as on
EVM. Tron nodes have no log filter RPC, so escrow events are read from the
TronGrid event API with httpx.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple

import httpx
from eth_abi import decode as abi_decode
from tronpy import Tron
from tronpy.contract import Contract
from tronpy.exceptions import TransactionNotFound
from tronpy.keys import PrivateKey
from tronpy.providers import HTTPProvider

from ..core import ChainAddress, ChainKind, Immutables, keccak, to_hex, hex_to_tron
from ..errors import ChainCallError, ConfigurationError
from .base import DestinationChainAdapter, TxReceipt, EscrowEvent, EscrowEventKind
from .evm import RESOLVER_ABI

log = logging.getLogger(__name__)

TRONGRID_ENDPOINTS = {
    "mainnet": "https://api.trongrid.io",
    "shasta": "https://api.shasta.trongrid.io",
    "nile": "https://nile.trongrid.io",
}

DST_ESCROW_CREATED_TOPIC = keccak(b"DstEscrowCreated(address,bytes32,uint256)")


@dataclass
class TronConfig:
    """Tron network configuration."""
    network: str = "nile"
    api_key: str = ""
    private_key: str = ""                 # resolver key, hex
    resolver_address: str = ""            # base58
    escrow_factory_address: str = ""      # base58
    fee_limit: int = 150_000_000          # SUN
    receipt_timeout: int = 60             # seconds
    event_page_size: int = 200


def _tron_address(value: str) -> ChainAddress:
    """TronGrid reports addresses as base58 or hex; normalize."""
    if value.startswith("T"):
        return ChainAddress.tron(value)
    return ChainAddress.tron(hex_to_tron(value))


def _created_escrow(info: Dict) -> Optional[ChainAddress]:
    """Escrow address from the factory's DstEscrowCreated log in a transaction info."""
    for entry in info.get("log", []):
        topics = entry.get("topics") or []
        if topics and bytes.fromhex(topics[0]) == DST_ESCROW_CREATED_TOPIC:
            escrow, _hashlock, _taker = abi_decode(
                ["address", "bytes32", "uint256"], bytes.fromhex(entry["data"])
            )
            return _tron_address(escrow)
    return None

class TronDestinationAdapter(DestinationChainAdapter):
    """Resolver-side adapter for Tron as the destination chain."""

    chain_kind = ChainKind.TRON

    def __init__(self, config: TronConfig, client: Optional[Tron] = None, http: Optional[httpx.Client] = None):
        self.config = config
        self._client = client
        self._http = http
        self._key: Optional[PrivateKey] = None
        self._watched: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def client(self) -> Tron:
        """Lazy-load tronpy client."""
        if self._client is None:
            if self.config.api_key:
                provider = HTTPProvider(TRONGRID_ENDPOINTS[self.config.network], api_key=self.config.api_key)
                self._client = Tron(provider)
            else:
                self._client = Tron(network=self.config.network)
        return self._client

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            headers = {"Accept": "application/json"}
            if self.config.api_key:
                headers["TRON-PRO-API-KEY"] = self.config.api_key
            self._http = httpx.Client(
                base_url=TRONGRID_ENDPOINTS[self.config.network],
                headers=headers,
                timeout=30.0,
            )
        return self._http

    @property
    def key(self) -> PrivateKey:
        if self._key is None:
            if not self.config.private_key:
                raise ConfigurationError("Tron private key is not set")
            text = self.config.private_key
            self._key = PrivateKey(bytes.fromhex(text[2:] if text.startswith("0x") else text))
        return self._key

    @property
    def owner(self) -> str:
        return self.key.public_key.to_base58check_address()

    @property
    def resolver(self) -> Contract:
        if not self.config.resolver_address:
            raise ConfigurationError("Tron resolver address is not set")
        return Contract(addr=self.config.resolver_address, abi=RESOLVER_ABI, client=self.client)

    def _send(self, method, label: str) -> Tuple[str, Dict]:
        try:
            txn = method.with_owner(self.owner).fee_limit(self.config.fee_limit).build().sign(self.key)
            ret = txn.broadcast()
        except Exception as e:
            raise ChainCallError(f"{label} failed to send: {e}", chain="tron") from e

        tx_hash = ret["txid"]
        log.info(f"{label} TX: {tx_hash}")

        try:
            info = ret.wait(timeout=self.config.receipt_timeout)
        except Exception as e:
            raise ChainCallError(f"{label} receipt not available: {e}", chain="tron", tx_hash=tx_hash) from e

        if info.get("receipt", {}).get("result") != "SUCCESS":
            raise ChainCallError(
                f"{label} failed: {info.get('resMessage') or info.get('receipt')}",
                chain="tron",
                tx_hash=tx_hash,
                retryable=False,
            )
        return tx_hash, info

    def deploy_destination_escrow(
        self,
        immutables: Immutables,
        src_cancellation_timestamp: int,
        value: int,
    ) -> TxReceipt:
        log.info(f"Deploying Tron escrow for {to_hex(immutables.order_hash)} (value {value} SUN)")
        method = self.resolver.functions.deployDst
        if value:
            method = method.with_transfer(value)
        tx_hash, info = self._send(
            method(immutables.abi_values(), src_cancellation_timestamp),
            label="deployDst",
        )

        deployed_at = int(info["blockTimeStamp"]) // 1000
        return TxReceipt(
            tx_hash=tx_hash,
            chain=ChainKind.TRON,
            block_number=info.get("blockNumber"),
            timestamp=deployed_at,
            escrow_address=_created_escrow(info),
            immutables=immutables.with_deployed_at(deployed_at),
        )

    def withdraw(self, escrow: ChainAddress, secret: bytes, immutables: Immutables) -> TxReceipt:
        tx_hash, info = self._send(
            self.resolver.functions.withdraw(escrow.value, secret, immutables.abi_values()),
            label="withdraw",
        )
        return TxReceipt(tx_hash=tx_hash, chain=ChainKind.TRON, block_number=info.get("blockNumber"),
                         escrow_address=escrow)

    def cancel(self, escrow: ChainAddress, immutables: Immutables) -> TxReceipt:
        tx_hash, info = self._send(
            self.resolver.functions.cancel(escrow.value, immutables.abi_values()),
            label="cancel",
        )
        return TxReceipt(tx_hash=tx_hash, chain=ChainKind.TRON, block_number=info.get("blockNumber"),
                         escrow_address=escrow)

    def watch_escrow(self, escrow: ChainAddress, order_hash: str):
        with self._lock:
            self._watched[escrow.value] = order_hash

    def _contract_events(self, address: str, since_ms: int) -> List[Dict]:
        response = self.http.get(
            f"/v1/contracts/{address}/events",
            params={
                "min_block_timestamp": since_ms,
                "order_by": "block_timestamp,asc",
                "limit": self.config.event_page_size,
            },
        )
        response.raise_for_status()
        return response.json().get("data", [])

    def poll_events(self, cursor: Optional[int]) -> Tuple[List[EscrowEvent], Optional[int]]:
        """Cursor is the last seen block timestamp in milliseconds."""
        since = (cursor + 1) if cursor is not None else (self.current_timestamp() - 300) * 1000
        newest = cursor
        events = []

        with self._lock:
            watched = dict(self._watched)

        sources = [(self.config.escrow_factory_address, None)] if self.config.escrow_factory_address else []
        sources += list(watched.items())

        for address, order_hash in sources:
            try:
                raw_events = self._contract_events(address, since)
            except httpx.HTTPError as e:
                raise ChainCallError(f"TronGrid event query failed for {address}: {e}", chain="tron") from e

            for item in raw_events:
                name = item.get("event_name")
                result = item.get("result", {})
                ts = int(item.get("block_timestamp", 0))
                newest = ts if newest is None else max(newest, ts)

                if name == "DstEscrowCreated":
                    hashlock = result.get("hashlock", "")
                    events.append(EscrowEvent(
                        kind=EscrowEventKind.CREATED,
                        chain=ChainKind.TRON,
                        escrow_address=_tron_address(result["escrow"]),
                        tx_hash=item.get("transaction_id", ""),
                        hashlock=bytes.fromhex(hashlock[2:] if hashlock.startswith("0x") else hashlock),
                        block_number=item.get("block_number", 0),
                        timestamp=ts // 1000,
                    ))
                elif name == "EscrowWithdrawal":
                    secret = result.get("secret", "")
                    events.append(EscrowEvent(
                        kind=EscrowEventKind.WITHDRAWN,
                        chain=ChainKind.TRON,
                        escrow_address=ChainAddress.tron(address),
                        tx_hash=item.get("transaction_id", ""),
                        order_hash=order_hash,
                        secret=bytes.fromhex(secret[2:] if secret.startswith("0x") else secret),
                        block_number=item.get("block_number", 0),
                    ))
                elif name == "EscrowCancelled":
                    events.append(EscrowEvent(
                        kind=EscrowEventKind.CANCELLED,
                        chain=ChainKind.TRON,
                        escrow_address=ChainAddress.tron(address),
                        tx_hash=item.get("transaction_id", ""),
                        order_hash=order_hash,
                        block_number=item.get("block_number", 0),
                    ))

        return events, newest

    def transaction_status(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            info = self.client.get_transaction_info(tx_hash)
        except TransactionNotFound:
            return None
        if not info:
            return None
        return TxReceipt(
            tx_hash=tx_hash,
            chain=ChainKind.TRON,
            success=info.get("receipt", {}).get("result") == "SUCCESS",
            block_number=info.get("blockNumber"),
            timestamp=int(info.get("blockTimeStamp", 0)) // 1000,
            escrow_address=_created_escrow(info),
        )

    def current_timestamp(self) -> int:
        block = self.client.get_latest_block()
        return int(block["block_header"]["raw_data"]["timestamp"]) // 1000

    def current_block(self) -> int:
        return int(self.client.get_latest_block_number())
