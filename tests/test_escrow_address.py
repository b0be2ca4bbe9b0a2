#!/usr/bin/env python3
"""
Escrow Address Tests

1. CREATE2 address is a pure function of (immutables, factory, code hash, chain)
2. Missing deployment configuration is an error, never a guessed address
3. Tron uses the 0x41 CREATE2 prefix
"""

import sys
import os
import unittest
from dataclasses import replace

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eth_abi import encode as abi_encode

from crosslock.core import ChainAddress, ChainKind, Immutables, keccak, IMMUTABLES_ABI_TYPES
from crosslock.errors import ConfigurationError, ChainStateMismatch
from crosslock.timelocks import Timelocks
from crosslock.htlc.escrow import (
    compute_address, escrow_salt, proxy_code_hash, EscrowAddressResolver,
    PROXY_CODE_PREFIX, PROXY_CODE_SUFFIX,
)

FACTORY = ChainAddress.evm("0x" + "11" * 20)
IMPLEMENTATION = ChainAddress.evm("0x" + "22" * 20)
CODE_HASH = proxy_code_hash(IMPLEMENTATION)


def _immutables(chain: ChainKind = ChainKind.EVM, **overrides) -> Immutables:
    params = dict(
        order_hash=b"\x01" * 32,
        hashlock=keccak(b"\x02" * 32),
        maker=ChainAddress.from_bytes(chain, b"\xaa" * 20),
        taker=ChainAddress.from_bytes(chain, b"\xbb" * 20),
        token=ChainAddress.zero(chain),
        amount=10**18,
        safety_deposit=10**17,
        timelocks=Timelocks.build(600, 3600, 300, 3300, deployed_at=1_700_000_000),
    )
    params.update(overrides)
    return Immutables(**params)


class TestCreate2(unittest.TestCase):

    def test_matches_create2_formula(self):
        immutables = _immutables()
        digest = keccak(b"\xff" + FACTORY.to_bytes() + escrow_salt(immutables) + CODE_HASH)
        address = compute_address(immutables, FACTORY, CODE_HASH, ChainKind.EVM)
        self.assertEqual(address.to_bytes(), digest[12:])
        self.assertEqual(address.chain, ChainKind.EVM)

    def test_salt_is_hash_of_abi_encoded_immutables(self):
        immutables = _immutables()
        encoded = abi_encode(IMMUTABLES_ABI_TYPES, list(immutables.abi_values()))
        self.assertEqual(len(encoded), 8 * 32)
        self.assertEqual(escrow_salt(immutables), keccak(encoded))

    def test_deterministic(self):
        a = compute_address(_immutables(), FACTORY, CODE_HASH, ChainKind.EVM)
        b = compute_address(_immutables(), FACTORY, CODE_HASH, ChainKind.EVM)
        self.assertEqual(a, b)

    def test_every_field_changes_address(self):
        base = _immutables()
        reference = compute_address(base, FACTORY, CODE_HASH, ChainKind.EVM)
        variants = [
            replace(base, amount=base.amount + 1),
            replace(base, safety_deposit=0),
            replace(base, hashlock=keccak(b"other")),
            base.with_deployed_at(1_700_000_001),
        ]
        for variant in variants:
            self.assertNotEqual(compute_address(variant, FACTORY, CODE_HASH, ChainKind.EVM), reference)

    def test_proxy_code_hash(self):
        expected = keccak(PROXY_CODE_PREFIX + b"\x22" * 20 + PROXY_CODE_SUFFIX)
        self.assertEqual(CODE_HASH, expected)


class TestConfiguration(unittest.TestCase):

    def test_missing_factory(self):
        with self.assertRaises(ConfigurationError):
            compute_address(_immutables(), None, CODE_HASH, ChainKind.EVM)
        with self.assertRaises(ConfigurationError):
            compute_address(_immutables(), ChainAddress.zero(ChainKind.EVM), CODE_HASH, ChainKind.EVM)

    def test_missing_code_hash(self):
        with self.assertRaises(ConfigurationError):
            compute_address(_immutables(), FACTORY, None, ChainKind.EVM)
        with self.assertRaises(ConfigurationError):
            compute_address(_immutables(), FACTORY, b"\x00" * 32, ChainKind.EVM)
        with self.assertRaises(ConfigurationError):
            compute_address(_immutables(), FACTORY, b"\x01" * 31, ChainKind.EVM)

    def test_missing_implementation(self):
        with self.assertRaises(ConfigurationError):
            proxy_code_hash(ChainAddress.zero(ChainKind.EVM))


class TestTron(unittest.TestCase):

    def test_tron_prefix(self):
        factory = ChainAddress.from_bytes(ChainKind.TRON, b"\x11" * 20)
        immutables = _immutables(ChainKind.TRON)
        address = compute_address(immutables, factory, CODE_HASH, ChainKind.TRON)

        digest = keccak(b"\x41" + b"\x11" * 20 + escrow_salt(immutables) + CODE_HASH)
        self.assertEqual(address.chain, ChainKind.TRON)
        self.assertTrue(address.value.startswith("T"))
        self.assertEqual(address.to_bytes(), digest[12:])

    def test_tron_and_evm_addresses_differ(self):
        tron = compute_address(_immutables(ChainKind.TRON), ChainAddress.from_bytes(ChainKind.TRON, b"\x11" * 20),
                               CODE_HASH, ChainKind.TRON)
        evm = compute_address(_immutables(), FACTORY, CODE_HASH, ChainKind.EVM)
        self.assertNotEqual(tron.to_bytes(), evm.to_bytes())


class TestResolver(unittest.TestCase):

    def setUp(self):
        self.resolver = EscrowAddressResolver.for_implementation(FACTORY, IMPLEMENTATION)

    def test_verify_accepts_expected(self):
        immutables = _immutables()
        expected = self.resolver.compute(immutables)
        self.assertEqual(self.resolver.verify(immutables, expected), expected)

    def test_verify_rejects_other(self):
        immutables = _immutables()
        with self.assertRaises(ChainStateMismatch) as ctx:
            self.resolver.verify(immutables, ChainAddress.evm("0x" + "99" * 20))
        self.assertEqual(ctx.exception.expected, self.resolver.compute(immutables))

    def test_verify_rejects_missing(self):
        with self.assertRaises(ChainStateMismatch):
            self.resolver.verify(_immutables(), None)


if __name__ == "__main__":
    unittest.main(verbosity=2)
