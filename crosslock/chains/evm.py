"""
EVM chain adapters (web3.py).

Talks to three contracts:
- Resolver: deploySrc / deployDst / withdraw / cancel on behalf of the taker
- EscrowFactory: CREATE2 escrow clones, creation events, address views
- Limit order protocol: order fills and invalidator views

Escrow withdraw/cancel events are read straight from the escrow clones the
coordinator asks us to watch.
"""

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple

from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.logs import DISCARD
from eth_account import Account

from ..core import ChainAddress, ChainKind, Immutables, to_hex
from ..errors import ChainCallError, ConfigurationError
from .base import (
    SourceChainAdapter,
    DestinationChainAdapter,
    OrderMatcher,
    FillArgs,
    FillReceipt,
    TxReceipt,
    EscrowEvent,
    EscrowEventKind,
)

log = logging.getLogger(__name__)

IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "uint256"},
    {"name": "taker", "type": "uint256"},
    {"name": "token", "type": "uint256"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256"},
]

ORDER_COMPONENTS = [
    {"name": "salt", "type": "uint256"},
    {"name": "maker", "type": "uint256"},
    {"name": "receiver", "type": "uint256"},
    {"name": "makerAsset", "type": "uint256"},
    {"name": "takerAsset", "type": "uint256"},
    {"name": "makingAmount", "type": "uint256"},
    {"name": "takingAmount", "type": "uint256"},
    {"name": "makerTraits", "type": "uint256"},
]

IMMUTABLES_ARG = {"name": "immutables", "type": "tuple", "components": IMMUTABLES_COMPONENTS}

RESOLVER_ABI = [
    {
        "name": "deploySrc",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            IMMUTABLES_ARG,
            {"name": "order", "type": "tuple", "components": ORDER_COMPONENTS},
            {"name": "r", "type": "bytes32"},
            {"name": "vs", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "takerTraits", "type": "uint256"},
            {"name": "args", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "deployDst",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            IMMUTABLES_ARG,
            {"name": "srcCancellationTimestamp", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "escrow", "type": "address"},
            {"name": "secret", "type": "bytes32"},
            IMMUTABLES_ARG,
        ],
        "outputs": [],
    },
    {
        "name": "cancel",
        "type": "function",
        "inputs": [
            {"name": "escrow", "type": "address"},
            IMMUTABLES_ARG,
        ],
        "outputs": [],
    },
]

ESCROW_FACTORY_ABI = [
    {
        "name": "addressOfEscrowSrc",
        "type": "function",
        "stateMutability": "view",
        "inputs": [IMMUTABLES_ARG],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "addressOfEscrowDst",
        "type": "function",
        "stateMutability": "view",
        "inputs": [IMMUTABLES_ARG],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "SrcEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "srcImmutables", "type": "tuple", "indexed": False, "components": IMMUTABLES_COMPONENTS},
            {
                "name": "dstImmutablesComplement",
                "type": "tuple",
                "indexed": False,
                "components": [
                    {"name": "maker", "type": "uint256"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "token", "type": "uint256"},
                    {"name": "safetyDeposit", "type": "uint256"},
                    {"name": "chainId", "type": "uint256"},
                ],
            },
        ],
    },
    {
        "name": "DstEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "taker", "type": "uint256", "indexed": False},
        ],
    },
]

LIMIT_ORDER_ABI = [
    {
        "name": "fillOrderArgs",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "order", "type": "tuple", "components": ORDER_COMPONENTS},
            {"name": "r", "type": "bytes32"},
            {"name": "vs", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "takerTraits", "type": "uint256"},
            {"name": "args", "type": "bytes"},
        ],
        "outputs": [
            {"name": "makingAmount", "type": "uint256"},
            {"name": "takingAmount", "type": "uint256"},
            {"name": "orderHash", "type": "bytes32"},
        ],
    },
    {
        "name": "bitInvalidatorForOrder",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "maker", "type": "address"},
            {"name": "slot", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "rawRemainingInvalidatorForOrder",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "maker", "type": "address"},
            {"name": "orderHash", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "epoch",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "maker", "type": "address"},
            {"name": "series", "type": "uint96"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "OrderFilled",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "orderHash", "type": "bytes32", "indexed": False},
            {"name": "remainingAmount", "type": "uint256", "indexed": False},
        ],
    },
]

ESCROW_WITHDRAWAL_TOPIC = Web3.keccak(text="EscrowWithdrawal(bytes32)")
ESCROW_CANCELLED_TOPIC = Web3.keccak(text="EscrowCancelled()")


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 1
    private_key: str = ""                 # resolver key
    resolver_address: str = ""
    escrow_factory_address: str = ""
    limit_order_protocol: str = ""
    deploy_gas: int = 800000
    action_gas: int = 250000
    receipt_timeout: int = 120            # seconds
    event_block_range: int = 2000         # max blocks per log query
    event_lookback: int = 100             # blocks scanned on first poll


def _struct_values(value, components) -> Tuple:
    """web3 may hand back structs as named mappings or plain tuples."""
    if isinstance(value, Mapping):
        return tuple(value[c["name"]] for c in components)
    return tuple(value)


class EVMTransactor:
    """Signs and sends resolver transactions; shared by the adapters below."""

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self._web3 = web3
        self._account = None
        self._send_lock = threading.Lock()

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def account(self):
        if self._account is None:
            if not self.config.private_key:
                raise ConfigurationError("EVM private key is not set")
            key = self.config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    def _contract(self, address: str, abi: List[Dict]):
        if not address:
            raise ConfigurationError("Contract address is not set")
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def _send(self, fn, value: int = 0, gas: Optional[int] = None, label: str = "tx"):
        """Build, sign, send and wait. Returns (tx_hash, receipt)."""
        w3 = self.web3
        sender = self.account.address

        # nonce allocation and broadcast must not interleave across threads
        with self._send_lock:
            try:
                nonce = w3.eth.get_transaction_count(sender, 'pending')
                gas_price = int(w3.eth.gas_price * 1.1)
                tx = fn.build_transaction({
                    'from': sender,
                    'nonce': nonce,
                    'gas': gas or self.config.action_gas,
                    'gasPrice': gas_price,
                    'chainId': self.config.chain_id,
                    'value': value,
                })
                signed = self.account.sign_transaction(tx)
                raw_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                raise ChainCallError(f"{label} failed to send: {e}", chain="evm") from e

        tx_hash = Web3.to_hex(raw_hash)
        log.info(f"{label} TX: {tx_hash}")

        try:
            receipt = w3.eth.wait_for_transaction_receipt(raw_hash, timeout=self.config.receipt_timeout)
        except Exception as e:
            raise ChainCallError(f"{label} receipt not available: {e}", chain="evm", tx_hash=tx_hash) from e

        if receipt['status'] != 1:
            raise ChainCallError(f"{label} reverted", chain="evm", tx_hash=tx_hash, retryable=False)
        return tx_hash, receipt

    def _block_timestamp(self, block_number) -> int:
        return int(self.web3.eth.get_block(block_number)['timestamp'])

    def transaction_status(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return TxReceipt(
            tx_hash=tx_hash,
            chain=ChainKind.EVM,
            success=receipt['status'] == 1,
            block_number=receipt['blockNumber'],
            timestamp=self._block_timestamp(receipt['blockNumber']),
        )

    def current_timestamp(self) -> int:
        return int(self.web3.eth.get_block('latest')['timestamp'])

    def current_block(self) -> int:
        return int(self.web3.eth.block_number)


class EVMChainAdapter(EVMTransactor, SourceChainAdapter, DestinationChainAdapter):
    """Resolver-side adapter for an EVM chain, usable as either side."""

    chain_kind = ChainKind.EVM

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        super().__init__(config, web3)
        self._watched: Dict[str, str] = {}   # escrow address -> order hash
        self._lock = threading.Lock()

    @property
    def resolver(self):
        return self._contract(self.config.resolver_address, RESOLVER_ABI)

    @property
    def factory(self):
        return self._contract(self.config.escrow_factory_address, ESCROW_FACTORY_ABI)

    def compute_escrow_address(self, immutables: Immutables) -> ChainAddress:
        address = self.factory.functions.addressOfEscrowSrc(immutables.abi_values()).call()
        return ChainAddress.evm(address)

    def _created_escrow(self, receipt) -> Tuple[Optional[ChainAddress], Optional[Immutables]]:
        """Escrow created by a transaction, read from the factory's creation log."""
        factory = self.factory
        for event in factory.events.SrcEscrowCreated().process_receipt(receipt, errors=DISCARD):
            immutables = Immutables.from_abi(
                _struct_values(event['args']['srcImmutables'], IMMUTABLES_COMPONENTS),
                ChainKind.EVM,
            )
            return self.compute_escrow_address(immutables), immutables
        for event in factory.events.DstEscrowCreated().process_receipt(receipt, errors=DISCARD):
            return ChainAddress.evm(event['args']['escrow']), None
        return None, None

    def transaction_status(self, tx_hash: str) -> Optional[TxReceipt]:
        status = super().transaction_status(tx_hash)
        if status is None or not status.success:
            return status
        receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        status.escrow_address, status.immutables = self._created_escrow(receipt)
        return status

    def deploy_source_escrow(self, immutables: Immutables, fill_args: FillArgs, value: int) -> TxReceipt:
        signed = fill_args.signed_order
        log.info(f"Filling order {to_hex(immutables.order_hash)} for {fill_args.fill_amount} (value {value})")
        fn = self.resolver.functions.deploySrc(
            immutables.abi_values(),
            signed.order.abi_values(),
            signed.r,
            signed.vs,
            fill_args.fill_amount,
            fill_args.taker_traits,
            fill_args.args,
        )
        tx_hash, receipt = self._send(fn, value=value, gas=self.config.deploy_gas, label="deploySrc")

        escrow_address, confirmed = self._created_escrow(receipt)
        return TxReceipt(
            tx_hash=tx_hash,
            chain=ChainKind.EVM,
            block_number=receipt['blockNumber'],
            timestamp=self._block_timestamp(receipt['blockNumber']),
            escrow_address=escrow_address,
            immutables=confirmed,
        )

    def deploy_destination_escrow(
        self,
        immutables: Immutables,
        src_cancellation_timestamp: int,
        value: int,
    ) -> TxReceipt:
        log.info(f"Deploying destination escrow for {to_hex(immutables.order_hash)} (value {value})")
        fn = self.resolver.functions.deployDst(immutables.abi_values(), src_cancellation_timestamp)
        tx_hash, receipt = self._send(fn, value=value, gas=self.config.deploy_gas, label="deployDst")

        deployed_at = self._block_timestamp(receipt['blockNumber'])
        escrow_address, _ = self._created_escrow(receipt)

        return TxReceipt(
            tx_hash=tx_hash,
            chain=ChainKind.EVM,
            block_number=receipt['blockNumber'],
            timestamp=deployed_at,
            escrow_address=escrow_address,
            immutables=immutables.with_deployed_at(deployed_at),
        )

    def withdraw(self, escrow: ChainAddress, secret: bytes, immutables: Immutables) -> TxReceipt:
        fn = self.resolver.functions.withdraw(escrow.value, secret, immutables.abi_values())
        tx_hash, receipt = self._send(fn, label="withdraw")
        return TxReceipt(tx_hash=tx_hash, chain=ChainKind.EVM, block_number=receipt['blockNumber'],
                         escrow_address=escrow)

    def cancel(self, escrow: ChainAddress, immutables: Immutables) -> TxReceipt:
        fn = self.resolver.functions.cancel(escrow.value, immutables.abi_values())
        tx_hash, receipt = self._send(fn, label="cancel")
        return TxReceipt(tx_hash=tx_hash, chain=ChainKind.EVM, block_number=receipt['blockNumber'],
                         escrow_address=escrow)

    def watch_escrow(self, escrow: ChainAddress, order_hash: str):
        with self._lock:
            self._watched[escrow.value] = order_hash

    def poll_events(self, cursor: Optional[int]) -> Tuple[List[EscrowEvent], Optional[int]]:
        latest = self.web3.eth.block_number
        from_block = cursor + 1 if cursor is not None else max(0, latest - self.config.event_lookback)
        if from_block > latest:
            return [], cursor
        to_block = min(latest, from_block + self.config.event_block_range - 1)

        events = []
        factory = self.factory

        for entry in factory.events.SrcEscrowCreated().get_logs(from_block=from_block, to_block=to_block):
            immutables = Immutables.from_abi(
                _struct_values(entry['args']['srcImmutables'], IMMUTABLES_COMPONENTS),
                ChainKind.EVM,
            )
            events.append(EscrowEvent(
                kind=EscrowEventKind.CREATED,
                chain=ChainKind.EVM,
                escrow_address=self.compute_escrow_address(immutables),
                tx_hash=Web3.to_hex(entry['transactionHash']),
                order_hash=to_hex(immutables.order_hash),
                immutables=immutables,
                hashlock=immutables.hashlock,
                block_number=entry['blockNumber'],
            ))

        for entry in factory.events.DstEscrowCreated().get_logs(from_block=from_block, to_block=to_block):
            events.append(EscrowEvent(
                kind=EscrowEventKind.CREATED,
                chain=ChainKind.EVM,
                escrow_address=ChainAddress.evm(entry['args']['escrow']),
                tx_hash=Web3.to_hex(entry['transactionHash']),
                hashlock=bytes(entry['args']['hashlock']),
                block_number=entry['blockNumber'],
                timestamp=self._block_timestamp(entry['blockNumber']),
            ))

        with self._lock:
            watched = dict(self._watched)
        if watched:
            logs = self.web3.eth.get_logs({
                'address': list(watched),
                'fromBlock': from_block,
                'toBlock': to_block,
            })
            for entry in logs:
                address = Web3.to_checksum_address(entry['address'])
                topic = bytes(entry['topics'][0]) if entry['topics'] else b""
                if topic == bytes(ESCROW_WITHDRAWAL_TOPIC):
                    kind, secret = EscrowEventKind.WITHDRAWN, bytes(entry['data'])[:32]
                elif topic == bytes(ESCROW_CANCELLED_TOPIC):
                    kind, secret = EscrowEventKind.CANCELLED, None
                else:
                    continue
                events.append(EscrowEvent(
                    kind=kind,
                    chain=ChainKind.EVM,
                    escrow_address=ChainAddress.evm(address),
                    tx_hash=Web3.to_hex(entry['transactionHash']),
                    order_hash=watched.get(address),
                    secret=secret,
                    block_number=entry['blockNumber'],
                ))

        return events, to_block


class EVMOrderMatcher(EVMTransactor, OrderMatcher):
    """Limit order protocol on the source chain."""

    @property
    def protocol(self):
        return self._contract(self.config.limit_order_protocol, LIMIT_ORDER_ABI)

    def fill_order(self, signed_order, fill_amount: int, callback_args: bytes = b"") -> FillReceipt:
        fn = self.protocol.functions.fillOrderArgs(
            signed_order.order.abi_values(),
            signed_order.r,
            signed_order.vs,
            fill_amount,
            0,
            callback_args,
        )
        tx_hash, receipt = self._send(fn, gas=self.config.deploy_gas, label="fillOrderArgs")
        return FillReceipt(
            order_hash=to_hex(signed_order.order_hash),
            filled_amount=fill_amount,
            tx_hash=tx_hash,
        )

    def bit_invalidator_for_order(self, maker: str, slot: int) -> int:
        return self.protocol.functions.bitInvalidatorForOrder(Web3.to_checksum_address(maker), slot).call()

    def remaining_invalidator_for_order(self, maker: str, order_hash: bytes) -> int:
        return self.protocol.functions.rawRemainingInvalidatorForOrder(
            Web3.to_checksum_address(maker), order_hash
        ).call()

    def epoch(self, maker: str, series: int) -> int:
        return self.protocol.functions.epoch(Web3.to_checksum_address(maker), series).call()
