#!/usr/bin/env python3
"""
Hash Lock Tests

1. Single secret commitment is keccak256(secret)
2. Merkle commitments for multi-fill orders
3. Secret index selection for partial fills
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crosslock.core import keccak, ZERO_HASH
from crosslock.errors import ValidationError
from crosslock.htlc.hashlock import (
    generate_secrets, hash_secret, build_hashlock, merkle_leaf, merkle_leaves,
    merkle_root, merkle_proof, verify_merkle_proof, verify_secret, secret_index_for_fill,
)


class TestSingleSecret(unittest.TestCase):

    def test_secrets_are_random_32_bytes(self):
        a, b = generate_secrets(2)
        self.assertEqual(len(a), 32)
        self.assertNotEqual(a, b)

    def test_hashlock_is_keccak(self):
        secret = b"\x42" * 32
        self.assertEqual(build_hashlock([secret]), keccak(secret))
        self.assertTrue(verify_secret(keccak(secret), secret))

    def test_wrong_secret_fails(self):
        secret, other = generate_secrets(2)
        self.assertFalse(verify_secret(build_hashlock([secret]), other))

    def test_bad_secret_length_fails(self):
        self.assertFalse(verify_secret(keccak(b"short"), b"short"))

    def test_zero_commitment_never_verifies(self):
        self.assertFalse(verify_secret(ZERO_HASH, b"\x00" * 32))

    def test_needs_a_secret(self):
        with self.assertRaises(ValidationError):
            build_hashlock([])


class TestMerkle(unittest.TestCase):

    def test_every_index_proves(self):
        for count in (2, 3, 5, 8):
            secrets_ = generate_secrets(count)
            leaves = merkle_leaves([hash_secret(s) for s in secrets_])
            root = build_hashlock(secrets_)
            self.assertEqual(root, merkle_root(leaves))
            for i, secret in enumerate(secrets_):
                proof = merkle_proof(leaves, i)
                self.assertTrue(verify_secret(root, secret, index=i, proof=proof), f"{count} secrets, index {i}")

    def test_leaf_binds_index(self):
        secrets_ = generate_secrets(4)
        leaves = merkle_leaves([hash_secret(s) for s in secrets_])
        root = merkle_root(leaves)
        proof = merkle_proof(leaves, 1)
        self.assertFalse(verify_secret(root, secrets_[1], index=2, proof=proof))

    def test_leaf_encoding(self):
        secret_hash = b"\x11" * 32
        self.assertEqual(merkle_leaf(3, secret_hash), keccak((3).to_bytes(8, "big") + secret_hash))

    def test_proof_required_with_index(self):
        secrets_ = generate_secrets(2)
        self.assertFalse(verify_secret(build_hashlock(secrets_), secrets_[0], index=0))

    def test_tampered_proof_fails(self):
        secrets_ = generate_secrets(4)
        leaves = merkle_leaves([hash_secret(s) for s in secrets_])
        proof = merkle_proof(leaves, 0)
        proof[0] = b"\x00" * 32
        self.assertFalse(verify_merkle_proof(leaves[0], proof, merkle_root(leaves)))

    def test_proof_index_out_of_range(self):
        leaves = merkle_leaves([b"\x01" * 32, b"\x02" * 32])
        with self.assertRaises(ValidationError):
            merkle_proof(leaves, 2)


class TestFillIndex(unittest.TestCase):

    def test_partial_fills(self):
        # 100 split into 4 parts: 5 secrets
        self.assertEqual(secret_index_for_fill(100, 100, 10, 4), 0)
        self.assertEqual(secret_index_for_fill(100, 100, 30, 4), 1)
        self.assertEqual(secret_index_for_fill(100, 70, 20, 4), 1)
        self.assertEqual(secret_index_for_fill(100, 50, 40, 4), 3)

    def test_final_fill_uses_last_secret(self):
        self.assertEqual(secret_index_for_fill(100, 100, 100, 4), 4)
        self.assertEqual(secret_index_for_fill(100, 20, 20, 4), 4)

    def test_invalid_fill(self):
        with self.assertRaises(ValidationError):
            secret_index_for_fill(100, 50, 60, 4)
        with self.assertRaises(ValidationError):
            secret_index_for_fill(100, 50, 10, 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
