"""
Secrets and hash commitments.

A single-fill swap commits to H(secret). A multi-fill order commits to the
Merkle root of N index-salted leaves, so each partial fill is unlocked by its
own secret and leaves cannot be reordered between fills:

    leaf_i = keccak256(uint64(i) || keccak256(secret_i))

Internal nodes hash the sorted pair, so a proof is just the sibling list.
"""

import secrets as _secrets
from typing import List, Optional, Sequence

from ..core import keccak, ZERO_HASH
from ..errors import ValidationError

SECRET_SIZE = 32


def generate_secrets(n: int = 1) -> List[bytes]:
    """Generate n random 32-byte secrets."""
    if n < 1:
        raise ValidationError(f"Need at least one secret, got {n}")
    return [_secrets.token_bytes(SECRET_SIZE) for _ in range(n)]


def hash_secret(secret: bytes) -> bytes:
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != SECRET_SIZE:
        raise ValidationError("Secret must be 32 bytes")
    return keccak(bytes(secret))


def merkle_leaf(index: int, secret_hash: bytes) -> bytes:
    if index < 0 or index >= 2**64:
        raise ValidationError(f"Leaf index out of range: {index}")
    return keccak(index.to_bytes(8, "big") + secret_hash)


def merkle_leaves(secret_hashes: Sequence[bytes]) -> List[bytes]:
    return [merkle_leaf(i, h) for i, h in enumerate(secret_hashes)]


def _hash_pair(a: bytes, b: bytes) -> bytes:
    return keccak(a + b) if a < b else keccak(b + a)


def _next_level(level: List[bytes]) -> List[bytes]:
    parents = []
    for i in range(0, len(level), 2):
        if i + 1 < len(level):
            parents.append(_hash_pair(level[i], level[i + 1]))
        else:
            # odd node is promoted unchanged
            parents.append(level[i])
    return parents


def merkle_root(leaves: Sequence[bytes]) -> bytes:
    if not leaves:
        raise ValidationError("Cannot build a Merkle root from zero leaves")
    level = list(leaves)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def merkle_proof(leaves: Sequence[bytes], index: int) -> List[bytes]:
    """Sibling hashes from leaf to root."""
    if index < 0 or index >= len(leaves):
        raise ValidationError(f"Leaf index {index} out of range (0..{len(leaves) - 1})")
    proof = []
    level = list(leaves)
    while len(level) > 1:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append(level[sibling])
        level = _next_level(level)
        index //= 2
    return proof


def verify_merkle_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
    node = leaf
    for sibling in proof:
        node = _hash_pair(node, sibling)
    return node == root


def build_hashlock(secrets: Sequence[bytes]) -> bytes:
    """Commitment for a list of secrets: H(secret) for one, Merkle root for many."""
    if not secrets:
        raise ValidationError("Need at least one secret")
    hashes = [hash_secret(s) for s in secrets]
    if len(hashes) == 1:
        return hashes[0]
    return merkle_root(merkle_leaves(hashes))


def verify_secret(
    commitment: bytes,
    secret: bytes,
    index: Optional[int] = None,
    proof: Optional[Sequence[bytes]] = None,
) -> bool:
    """
    Check a secret against a commitment.

    Without an index the commitment must be H(secret). With an index the
    secret's leaf must prove into the commitment as a Merkle root.
    """
    try:
        secret_hash = hash_secret(secret)
    except ValidationError:
        return False
    if commitment == ZERO_HASH:
        return False
    if index is None:
        return secret_hash == commitment
    if proof is None:
        return False
    return verify_merkle_proof(merkle_leaf(index, secret_hash), proof, commitment)


def secret_index_for_fill(
    order_making_amount: int,
    remaining_making_amount: int,
    fill_amount: int,
    parts: int,
) -> int:
    """
    Index of the secret a partial fill must reveal.

    An order split into `parts` carries parts + 1 secrets; the fill that
    exhausts the order uses the extra one at index `parts`.
    """
    if parts < 1:
        raise ValidationError(f"Parts must be positive, got {parts}")
    if fill_amount <= 0 or fill_amount > remaining_making_amount:
        raise ValidationError(
            f"Fill amount {fill_amount} outside remaining {remaining_making_amount}"
        )
    if remaining_making_amount > order_making_amount:
        raise ValidationError("Remaining amount exceeds order amount")
    if fill_amount == remaining_making_amount:
        return parts
    filled_after = order_making_amount - remaining_making_amount + fill_amount
    return (filled_after - 1) * parts // order_making_amount
