"""HTLC primitives: hash commitments and deterministic escrow addresses."""

from .hashlock import (
    generate_secrets,
    hash_secret,
    build_hashlock,
    merkle_leaf,
    merkle_leaves,
    merkle_root,
    merkle_proof,
    verify_merkle_proof,
    verify_secret,
    secret_index_for_fill,
)
from .escrow import compute_address, escrow_salt, proxy_code_hash, EscrowAddressResolver

__all__ = [
    "generate_secrets",
    "hash_secret",
    "build_hashlock",
    "merkle_leaf",
    "merkle_leaves",
    "merkle_root",
    "merkle_proof",
    "verify_merkle_proof",
    "verify_secret",
    "secret_index_for_fill",
    "compute_address",
    "escrow_salt",
    "proxy_code_hash",
    "EscrowAddressResolver",
]
