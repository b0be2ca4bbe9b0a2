"""
Deterministic escrow addresses.

Escrows are minimal-proxy clones deployed by a factory with CREATE2, salted
by the hash of their immutables. Anyone holding the immutables can therefore
compute the escrow address before it exists, and check any address a chain
reports against it.
"""

import logging
from typing import Optional

from ..core import ChainAddress, ChainKind, Immutables, keccak, to_bytes32, ZERO_HASH
from ..errors import ConfigurationError, ChainStateMismatch, ValidationError

log = logging.getLogger(__name__)

CREATE2_PREFIX = {
    ChainKind.EVM: b"\xff",
    ChainKind.TRON: b"\x41",
}

# EIP-1167 minimal proxy creation code around the implementation address
PROXY_CODE_PREFIX = bytes.fromhex("3d602d80600a3d3981f3363d3d373d3d3d363d73")
PROXY_CODE_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")


def escrow_salt(immutables: Immutables) -> bytes:
    return immutables.hash()


def proxy_code_hash(implementation: ChainAddress) -> bytes:
    """Init code hash of a minimal proxy pointing at `implementation`."""
    if implementation is None or implementation.is_zero():
        raise ConfigurationError("Escrow implementation address is not set")
    return keccak(PROXY_CODE_PREFIX + implementation.to_bytes() + PROXY_CODE_SUFFIX)


def compute_address(
    immutables: Immutables,
    factory_address: Optional[ChainAddress],
    implementation_code_hash: Optional[bytes],
    chain_kind: ChainKind,
) -> ChainAddress:
    """CREATE2 address of the escrow for these immutables."""
    if factory_address is None or factory_address.is_zero():
        raise ConfigurationError(f"Escrow factory address is not set for {chain_kind.value}")
    if not implementation_code_hash:
        raise ConfigurationError(f"Escrow implementation code hash is not set for {chain_kind.value}")
    try:
        code_hash = to_bytes32(implementation_code_hash, "implementation_code_hash")
    except ValidationError as e:
        raise ConfigurationError(str(e))
    if code_hash == ZERO_HASH:
        raise ConfigurationError(f"Escrow implementation code hash is zero for {chain_kind.value}")
    if chain_kind not in CREATE2_PREFIX:
        raise ConfigurationError(f"No CREATE2 rule for chain {chain_kind}")

    digest = keccak(
        CREATE2_PREFIX[chain_kind]
        + factory_address.to_bytes()
        + escrow_salt(immutables)
        + code_hash
    )
    return ChainAddress.from_bytes(chain_kind, digest[12:])


class EscrowAddressResolver:
    """Factory parameters for one side of a swap."""

    def __init__(
        self,
        factory_address: Optional[ChainAddress],
        implementation_code_hash: Optional[bytes],
        chain_kind: ChainKind,
    ):
        self.factory_address = factory_address
        self.implementation_code_hash = implementation_code_hash
        self.chain_kind = chain_kind

    @classmethod
    def for_implementation(
        cls,
        factory_address: ChainAddress,
        implementation: ChainAddress,
    ) -> "EscrowAddressResolver":
        return cls(factory_address, proxy_code_hash(implementation), factory_address.chain)

    def compute(self, immutables: Immutables) -> ChainAddress:
        return compute_address(
            immutables,
            self.factory_address,
            self.implementation_code_hash,
            self.chain_kind,
        )

    def verify(self, immutables: Immutables, observed: Optional[ChainAddress]) -> ChainAddress:
        """Raise ChainStateMismatch unless `observed` is the address we derive."""
        expected = self.compute(immutables)
        if observed is None or observed != expected:
            log.error(f"Escrow address mismatch on {self.chain_kind.value}: expected {expected}, got {observed}")
            raise ChainStateMismatch(
                f"Escrow address mismatch: expected {expected}, observed {observed}",
                expected=expected,
                observed=observed,
            )
        return expected
