"""
Core types for crosslock.

Chain-tagged addresses, escrow immutables, and the swap/escrow lifecycle
enums shared by every other module.
"""

import re
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Tuple

import base58
from eth_abi import encode as abi_encode
from eth_utils import keccak as _keccak, to_checksum_address

from .errors import ValidationError
from .timelocks import Timelocks

ZERO_HASH = b"\x00" * 32
TRON_ADDRESS_PREFIX = b"\x41"

# ABI layout of IBaseEscrow.Immutables (addresses widened to uint256)
IMMUTABLES_ABI_TYPES = [
    "bytes32",  # orderHash
    "bytes32",  # hashlock
    "uint256",  # maker
    "uint256",  # taker
    "uint256",  # token
    "uint256",  # amount
    "uint256",  # safetyDeposit
    "uint256",  # timelocks
]

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def keccak(data: bytes) -> bytes:
    """keccak256 digest."""
    return _keccak(data)


def to_bytes32(value, name: str = "value") -> bytes:
    """Accept 32 raw bytes or 64 hex chars (0x optional)."""
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            value = bytes.fromhex(text)
        except ValueError:
            raise ValidationError(f"{name} is not valid hex: {text!r}")
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValidationError(f"{name} must be 32 bytes")
    return bytes(value)


def to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


class ChainKind(Enum):
    """Supported virtual machines."""
    EVM = "evm"     # Ethereum-style chains (0xff CREATE2 prefix)
    TRON = "tron"   # TVM (0x41 CREATE2 prefix, base58 addresses)


# =============================================================================
# ADDRESSES
# =============================================================================

def tron_to_bytes(address: str) -> bytes:
    """Base58check Tron address -> 20 raw bytes."""
    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        raise ValidationError(f"Invalid Tron address: {address}")
    if len(raw) != 21 or raw[:1] != TRON_ADDRESS_PREFIX:
        raise ValidationError(f"Invalid Tron address: {address}")
    return raw[1:]


def bytes_to_tron(raw: bytes) -> str:
    """20 raw bytes -> base58check Tron address."""
    if len(raw) != 20:
        raise ValidationError(f"Tron address must be 20 bytes, got {len(raw)}")
    return base58.b58encode_check(TRON_ADDRESS_PREFIX + raw).decode()


def tron_to_hex(address: str) -> str:
    """Base58 Tron address -> 0x-prefixed 20 byte hex (EVM form)."""
    return "0x" + tron_to_bytes(address).hex()


def hex_to_tron(address: str) -> str:
    """Hex address (with or without 0x/41 prefix) -> base58 Tron address."""
    text = address[2:] if address.startswith("0x") else address
    if len(text) == 42 and text.startswith("41"):
        text = text[2:]
    if len(text) != 40:
        raise ValidationError(f"Invalid hex address: {address}")
    return bytes_to_tron(bytes.fromhex(text))


@dataclass(frozen=True)
class ChainAddress:
    """
    An address tagged with the chain it lives on.

    EVM values are checksummed 0x hex, Tron values are base58 'T...' strings.
    Both widen to the same 160-bit integer for ABI encoding.
    """
    chain: ChainKind
    value: str

    def __post_init__(self):
        if self.chain == ChainKind.EVM:
            if not isinstance(self.value, str) or not _EVM_ADDRESS_RE.match(self.value):
                raise ValidationError(f"Invalid EVM address: {self.value!r}")
            object.__setattr__(self, "value", to_checksum_address(self.value))
        elif self.chain == ChainKind.TRON:
            if not isinstance(self.value, str):
                raise ValidationError(f"Invalid Tron address: {self.value!r}")
            if self.value.startswith("0x") or (len(self.value) == 42 and self.value.startswith("41")):
                object.__setattr__(self, "value", hex_to_tron(self.value))
            else:
                tron_to_bytes(self.value)
        else:
            raise ValidationError(f"Unsupported chain: {self.chain}")

    @classmethod
    def evm(cls, value: str) -> "ChainAddress":
        return cls(ChainKind.EVM, value)

    @classmethod
    def tron(cls, value: str) -> "ChainAddress":
        return cls(ChainKind.TRON, value)

    @classmethod
    def zero(cls, chain: ChainKind) -> "ChainAddress":
        return cls.from_bytes(chain, b"\x00" * 20)

    @classmethod
    def from_bytes(cls, chain: ChainKind, raw: bytes) -> "ChainAddress":
        if len(raw) != 20:
            raise ValidationError(f"Address must be 20 bytes, got {len(raw)}")
        if chain == ChainKind.TRON:
            return cls(chain, bytes_to_tron(raw))
        return cls(chain, "0x" + raw.hex())

    @classmethod
    def from_int(cls, chain: ChainKind, value: int) -> "ChainAddress":
        if value < 0 or value >= 2**160:
            raise ValidationError(f"Address integer out of range: {value}")
        return cls.from_bytes(chain, value.to_bytes(20, "big"))

    @classmethod
    def parse(cls, text: str) -> "ChainAddress":
        """Parse the 'chain:value' form produced by str()."""
        chain, sep, value = text.partition(":")
        if not sep:
            raise ValidationError(f"Expected 'chain:address', got {text!r}")
        try:
            kind = ChainKind(chain)
        except ValueError:
            raise ValidationError(f"Unknown chain {chain!r}")
        return cls(kind, value)

    def to_bytes(self) -> bytes:
        if self.chain == ChainKind.TRON:
            return tron_to_bytes(self.value)
        return bytes.fromhex(self.value[2:])

    def to_int(self) -> int:
        return int.from_bytes(self.to_bytes(), "big")

    def to_hex(self) -> str:
        """EVM-style hex form, whatever the chain."""
        return "0x" + self.to_bytes().hex()

    def is_zero(self) -> bool:
        return self.to_int() == 0

    def is_native(self) -> bool:
        """Zero address as token means the chain's native currency."""
        return self.is_zero()

    def __str__(self) -> str:
        return f"{self.chain.value}:{self.value}"


# =============================================================================
# IMMUTABLES
# =============================================================================

@dataclass(frozen=True)
class Immutables:
    """Escrow parameters fixed at deployment; their hash is the CREATE2 salt."""
    order_hash: bytes
    hashlock: bytes
    maker: ChainAddress
    taker: ChainAddress
    token: ChainAddress
    amount: int
    safety_deposit: int
    timelocks: Timelocks

    def __post_init__(self):
        object.__setattr__(self, "order_hash", to_bytes32(self.order_hash, "order_hash"))
        object.__setattr__(self, "hashlock", to_bytes32(self.hashlock, "hashlock"))
        if self.hashlock == ZERO_HASH:
            raise ValidationError("Hashlock must not be zero")
        if not isinstance(self.amount, int) or self.amount <= 0:
            raise ValidationError(f"Amount must be positive, got {self.amount}")
        if not isinstance(self.safety_deposit, int) or self.safety_deposit < 0:
            raise ValidationError(f"Safety deposit must be non-negative, got {self.safety_deposit}")
        chains = {self.maker.chain, self.taker.chain, self.token.chain}
        if len(chains) != 1:
            raise ValidationError("Maker, taker and token must be on the same chain")

    @property
    def chain(self) -> ChainKind:
        return self.token.chain

    def abi_values(self) -> Tuple:
        return (
            self.order_hash,
            self.hashlock,
            self.maker.to_int(),
            self.taker.to_int(),
            self.token.to_int(),
            self.amount,
            self.safety_deposit,
            self.timelocks.pack(),
        )

    def hash(self) -> bytes:
        """keccak256(abi.encode(immutables))."""
        return keccak(abi_encode(IMMUTABLES_ABI_TYPES, list(self.abi_values())))

    @classmethod
    def from_abi(cls, values, chain: ChainKind) -> "Immutables":
        order_hash, hashlock, maker, taker, token, amount, safety_deposit, timelocks = values
        return cls(
            order_hash=bytes(order_hash),
            hashlock=bytes(hashlock),
            maker=ChainAddress.from_int(chain, maker),
            taker=ChainAddress.from_int(chain, taker),
            token=ChainAddress.from_int(chain, token),
            amount=amount,
            safety_deposit=safety_deposit,
            timelocks=Timelocks.unpack(timelocks),
        )

    def with_deployed_at(self, deployed_at: int) -> "Immutables":
        return replace(self, timelocks=self.timelocks.with_deployed_at(deployed_at))

    def matches(self, other: "Immutables") -> bool:
        """Equal apart from the deployment timestamp."""
        return self.with_deployed_at(0) == other.with_deployed_at(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": to_hex(self.order_hash),
            "hashlock": to_hex(self.hashlock),
            "maker": str(self.maker),
            "taker": str(self.taker),
            "token": str(self.token),
            "amount": str(self.amount),
            "safety_deposit": str(self.safety_deposit),
            "timelocks": self.timelocks.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Immutables":
        return cls(
            order_hash=data["order_hash"],
            hashlock=data["hashlock"],
            maker=ChainAddress.parse(data["maker"]),
            taker=ChainAddress.parse(data["taker"]),
            token=ChainAddress.parse(data["token"]),
            amount=int(data["amount"]),
            safety_deposit=int(data["safety_deposit"]),
            timelocks=Timelocks.from_dict(data["timelocks"]),
        )


# =============================================================================
# LIFECYCLE
# =============================================================================

class EscrowStatus(Enum):
    """Escrow lifecycle on one chain."""
    PENDING = "pending"         # Not deployed yet
    FUNDED = "funded"           # Deployed and holding funds
    WITHDRAWN = "withdrawn"     # Unlocked with the secret
    CANCELLED = "cancelled"     # Destination escrow reclaimed by the resolver
    REFUNDED = "refunded"       # Source escrow returned to the maker


class SwapState(Enum):
    """Swap lifecycle states."""
    CREATED = "created"                 # Parameters agreed, nothing on-chain
    SRC_FILLED = "src_filled"           # Order filled, source escrow funded
    DST_FUNDED = "dst_funded"           # Destination escrow funded
    SECRET_REVEALED = "secret_revealed" # Secret known, withdrawals in progress
    COMPLETED = "completed"             # Both escrows withdrawn
    CANCELLED_SRC = "cancelled_src"     # Source cancelled, destination never funded
    CANCELLED_DST = "cancelled_dst"     # Destination cancelled, source refund pending
    REFUNDED = "refunded"               # Both sides returned
    MANUAL_REVIEW = "manual_review"     # Chain state contradicts ours, automation halted


TERMINAL_STATES = frozenset({
    SwapState.COMPLETED,
    SwapState.CANCELLED_SRC,
    SwapState.REFUNDED,
    SwapState.MANUAL_REVIEW,
})


class Side(Enum):
    SRC = "src"
    DST = "dst"


@dataclass
class EscrowRecord:
    """One side of a swap."""
    side: Side
    chain: ChainKind
    order_hash: str                        # back-reference to the owning swap
    amount: int
    status: EscrowStatus = EscrowStatus.PENDING
    address: Optional[ChainAddress] = None
    immutables: Optional[Immutables] = None
    tx_hashes: Dict[str, str] = field(default_factory=dict)
    block_number: Optional[int] = None     # deployment block

    @property
    def deployed(self) -> bool:
        return self.address is not None and self.status != EscrowStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "chain": self.chain.value,
            "order_hash": self.order_hash,
            "amount": str(self.amount),
            "status": self.status.value,
            "address": str(self.address) if self.address else None,
            "immutables": self.immutables.to_dict() if self.immutables else None,
            "tx_hashes": dict(self.tx_hashes),
            "block_number": self.block_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowRecord":
        return cls(
            side=Side(data["side"]),
            chain=ChainKind(data["chain"]),
            order_hash=data["order_hash"],
            amount=int(data["amount"]),
            status=EscrowStatus(data["status"]),
            address=ChainAddress.parse(data["address"]) if data.get("address") else None,
            immutables=Immutables.from_dict(data["immutables"]) if data.get("immutables") else None,
            tx_hashes=dict(data.get("tx_hashes") or {}),
            block_number=data.get("block_number"),
        )
