"""
Limit orders for the source-chain order-matching protocol.

The maker signs an EIP-712 order; the resolver fills it on the source chain,
which deploys the source escrow as a side effect. Before signing, the order's
nonce slot is checked against the protocol's invalidators so a reused slot
is caught off-chain instead of reverting on fill.
"""

import logging
import secrets
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any, Union

from eth_account import Account
from eth_account.messages import encode_typed_data, SignableMessage
from eth_utils import to_checksum_address

from .core import keccak, to_hex, ChainAddress
from .errors import ValidationError

log = logging.getLogger(__name__)

LOP_DOMAIN_NAME = "1inch Limit Order Protocol"
LOP_DOMAIN_VERSION = "4"

ORDER_TYPES = {
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "receiver", "type": "address"},
        {"name": "makerAsset", "type": "address"},
        {"name": "takerAsset", "type": "address"},
        {"name": "makingAmount", "type": "uint256"},
        {"name": "takingAmount", "type": "uint256"},
        {"name": "makerTraits", "type": "uint256"},
    ]
}

ZERO_ADDRESS = "0x" + "0" * 40

# MakerTraits layout
ALLOWED_SENDER_MASK = 2**80 - 1
EXPIRATION_OFFSET = 80
NONCE_OR_EPOCH_OFFSET = 120
SERIES_OFFSET = 160
UINT40_MASK = 2**40 - 1

NO_PARTIAL_FILLS_FLAG = 1 << 255
ALLOW_MULTIPLE_FILLS_FLAG = 1 << 254
PRE_INTERACTION_CALL_FLAG = 1 << 252
POST_INTERACTION_CALL_FLAG = 1 << 251
NEED_CHECK_EPOCH_MANAGER_FLAG = 1 << 250
HAS_EXTENSION_FLAG = 1 << 249
USE_PERMIT2_FLAG = 1 << 248
UNWRAP_WETH_FLAG = 1 << 247


def _uint40(name: str, value: int) -> int:
    if value < 0 or value > UINT40_MASK:
        raise ValidationError(f"{name} must fit in 40 bits, got {value}")
    return value


@dataclass
class MakerTraits:
    """Decoded makerTraits word."""
    allowed_sender: Optional[str] = None   # only this taker may fill (low 80 bits kept)
    expiration: int = 0                    # unix time, 0 = never
    nonce_or_epoch: int = 0
    series: int = 0
    allow_partial_fills: bool = True
    allow_multiple_fills: bool = True
    pre_interaction: bool = False
    post_interaction: bool = False
    need_check_epoch_manager: bool = False
    has_extension: bool = False
    use_permit2: bool = False
    unwrap_weth: bool = False

    def encode(self) -> int:
        word = 0
        if self.allowed_sender:
            word |= int(self.allowed_sender, 16) & ALLOWED_SENDER_MASK
        word |= _uint40("expiration", self.expiration) << EXPIRATION_OFFSET
        word |= _uint40("nonce_or_epoch", self.nonce_or_epoch) << NONCE_OR_EPOCH_OFFSET
        word |= _uint40("series", self.series) << SERIES_OFFSET
        if not self.allow_partial_fills:
            word |= NO_PARTIAL_FILLS_FLAG
        if self.allow_multiple_fills:
            word |= ALLOW_MULTIPLE_FILLS_FLAG
        if self.pre_interaction:
            word |= PRE_INTERACTION_CALL_FLAG
        if self.post_interaction:
            word |= POST_INTERACTION_CALL_FLAG
        if self.need_check_epoch_manager:
            word |= NEED_CHECK_EPOCH_MANAGER_FLAG
        if self.has_extension:
            word |= HAS_EXTENSION_FLAG
        if self.use_permit2:
            word |= USE_PERMIT2_FLAG
        if self.unwrap_weth:
            word |= UNWRAP_WETH_FLAG
        return word

    @classmethod
    def decode(cls, word: int) -> "MakerTraits":
        sender_bits = word & ALLOWED_SENDER_MASK
        return cls(
            allowed_sender=("0x" + sender_bits.to_bytes(10, "big").hex()) if sender_bits else None,
            expiration=(word >> EXPIRATION_OFFSET) & UINT40_MASK,
            nonce_or_epoch=(word >> NONCE_OR_EPOCH_OFFSET) & UINT40_MASK,
            series=(word >> SERIES_OFFSET) & UINT40_MASK,
            allow_partial_fills=not (word & NO_PARTIAL_FILLS_FLAG),
            allow_multiple_fills=bool(word & ALLOW_MULTIPLE_FILLS_FLAG),
            pre_interaction=bool(word & PRE_INTERACTION_CALL_FLAG),
            post_interaction=bool(word & POST_INTERACTION_CALL_FLAG),
            need_check_epoch_manager=bool(word & NEED_CHECK_EPOCH_MANAGER_FLAG),
            has_extension=bool(word & HAS_EXTENSION_FLAG),
            use_permit2=bool(word & USE_PERMIT2_FLAG),
            unwrap_weth=bool(word & UNWRAP_WETH_FLAG),
        )

    @property
    def uses_bit_invalidator(self) -> bool:
        """Single-fill orders are invalidated by a nonce bit, others by a remaining counter."""
        return not self.allow_partial_fills or not self.allow_multiple_fills

    def is_expired(self, now: int) -> bool:
        return self.expiration != 0 and self.expiration <= now


@dataclass(frozen=True)
class OrderDomain:
    """EIP-712 domain of the order-matching contract."""
    chain_id: int
    verifying_contract: str
    name: str = LOP_DOMAIN_NAME
    version: str = LOP_DOMAIN_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": to_checksum_address(self.verifying_contract),
        }


@dataclass(frozen=True)
class Order:
    salt: int
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int

    def __post_init__(self):
        if self.making_amount <= 0 or self.taking_amount <= 0:
            raise ValidationError("Order amounts must be positive")
        for name in ("maker", "receiver", "maker_asset", "taker_asset"):
            try:
                object.__setattr__(self, name, to_checksum_address(getattr(self, name)))
            except ValueError:
                raise ValidationError(f"Invalid {name} address: {getattr(self, name)!r}")

    @property
    def traits(self) -> MakerTraits:
        return MakerTraits.decode(self.maker_traits)

    def to_message(self) -> Dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "receiver": self.receiver,
            "makerAsset": self.maker_asset,
            "takerAsset": self.taker_asset,
            "makingAmount": self.making_amount,
            "takingAmount": self.taking_amount,
            "makerTraits": self.maker_traits,
        }

    def abi_values(self):
        """Order struct as the contract takes it (Address fields are uint256)."""
        return (
            self.salt,
            int(self.maker, 16),
            int(self.receiver, 16),
            int(self.maker_asset, 16),
            int(self.taker_asset, 16),
            self.making_amount,
            self.taking_amount,
            self.maker_traits,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_message()
        for key in ("salt", "makingAmount", "takingAmount", "makerTraits"):
            data[key] = str(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            salt=int(data["salt"]),
            maker=data["maker"],
            receiver=data["receiver"],
            maker_asset=data["makerAsset"],
            taker_asset=data["takerAsset"],
            making_amount=int(data["makingAmount"]),
            taking_amount=int(data["takingAmount"]),
            maker_traits=int(data["makerTraits"]),
        )


@dataclass
class SignedOrder:
    order: Order
    order_hash: bytes
    signature: bytes
    extension: bytes = b""

    @property
    def r(self) -> bytes:
        return self.signature[:32]

    @property
    def vs(self) -> bytes:
        """EIP-2098 compact form: s with the parity bit of v in the top bit."""
        s = int.from_bytes(self.signature[32:64], "big")
        v = self.signature[64]
        if v < 27:
            v += 27
        return (s | ((v - 27) << 255)).to_bytes(32, "big")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "order_hash": to_hex(self.order_hash),
            "signature": to_hex(self.signature),
            "extension": to_hex(self.extension),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedOrder":
        return cls(
            order=Order.from_dict(data["order"]),
            order_hash=bytes.fromhex(data["order_hash"][2:]),
            signature=bytes.fromhex(data["signature"][2:]),
            extension=bytes.fromhex(data.get("extension", "0x")[2:]),
        )


def order_typed_data(order: Order, domain: OrderDomain) -> SignableMessage:
    return encode_typed_data(
        domain_data=domain.to_dict(),
        message_types=ORDER_TYPES,
        message_data=order.to_message(),
    )


def order_hash(order: Order, domain: OrderDomain) -> bytes:
    """EIP-712 digest of the order, as the contract computes it."""
    signable = order_typed_data(order, domain)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def sign_order(order: Order, domain: OrderDomain, signer) -> SignedOrder:
    """Sign with a LocalAccount or a raw private key."""
    signable = order_typed_data(order, domain)
    if hasattr(signer, "sign_message"):
        if to_checksum_address(signer.address) != order.maker:
            raise ValidationError(f"Signer {signer.address} is not the order maker {order.maker}")
        signed = signer.sign_message(signable)
    else:
        account = Account.from_key(signer)
        if account.address != order.maker:
            raise ValidationError(f"Signer {account.address} is not the order maker {order.maker}")
        signed = account.sign_message(signable)
    return SignedOrder(
        order=order,
        order_hash=order_hash(order, domain),
        signature=bytes(signed.signature),
    )


def _signer_address(signer: Union[str, ChainAddress, Any]) -> str:
    if isinstance(signer, ChainAddress):
        return to_checksum_address(signer.to_hex())
    if hasattr(signer, "address"):
        return to_checksum_address(signer.address)
    return to_checksum_address(signer)


class OrderBuilder:
    """
    Builds and signs maker orders.

    `matcher` is the order-matching collaborator (see chains.base.OrderMatcher)
    used to read invalidator state before a nonce slot is reused.
    """

    def __init__(self, domain: OrderDomain, matcher):
        self.domain = domain
        self.matcher = matcher

    def new_order(
        self,
        maker: str,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        taking_amount: int,
        traits: MakerTraits,
        receiver: Optional[str] = None,
        extension: bytes = b"",
        salt: Optional[int] = None,
    ) -> Order:
        if salt is None:
            salt = secrets.randbits(96) << 160
        if extension:
            # low 160 bits of the salt commit to the extension
            traits = replace(traits, has_extension=True)
            salt = (salt & ~(2**160 - 1)) | (int.from_bytes(keccak(extension), "big") & (2**160 - 1))
        return Order(
            salt=salt,
            maker=maker,
            receiver=receiver or ZERO_ADDRESS,
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=making_amount,
            taking_amount=taking_amount,
            maker_traits=traits.encode(),
        )

    def is_order_slot_fresh(
        self,
        signer,
        traits: MakerTraits,
        order_hash: Optional[bytes] = None,
    ) -> bool:
        """True if an order with these traits has not been used or invalidated."""
        maker = _signer_address(signer)

        if traits.need_check_epoch_manager:
            current = self.matcher.epoch(maker, traits.series)
            if current != traits.nonce_or_epoch:
                log.info(f"Epoch mismatch for {maker}: order {traits.nonce_or_epoch}, current {current}")
                return False

        if traits.uses_bit_invalidator:
            slot = traits.nonce_or_epoch >> 8
            bit = 1 << (traits.nonce_or_epoch & 0xFF)
            word = self.matcher.bit_invalidator_for_order(maker, slot)
            return not (word & bit)

        if order_hash is None:
            raise ValidationError("Order hash is required for remaining-amount invalidation")
        remaining = self.matcher.remaining_invalidator_for_order(maker, order_hash)
        # 0 means never touched
        return remaining == 0

    def sign(self, order: Order, signer, extension: bytes = b"") -> SignedOrder:
        digest = order_hash(order, self.domain)
        if not self.is_order_slot_fresh(_signer_address(order.maker), order.traits, digest):
            raise ValidationError(
                f"Nonce slot {order.traits.nonce_or_epoch} for {order.maker} is already used"
            )
        signed = sign_order(order, self.domain, signer)
        signed.extension = extension
        log.info(f"Signed order {to_hex(signed.order_hash)} for {order.maker}")
        return signed
