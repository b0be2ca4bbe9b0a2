#!/usr/bin/env python3
"""
Order Builder Tests

1. makerTraits bit layout
2. EIP-712 signing and the compact (r, vs) form
3. Nonce slot freshness against the matcher's invalidators
"""

import sys
import os
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eth_account import Account

from crosslock.core import keccak
from crosslock.errors import ValidationError
from crosslock.orders import (
    MakerTraits, Order, OrderDomain, OrderBuilder, SignedOrder,
    order_hash, order_typed_data, sign_order,
    NO_PARTIAL_FILLS_FLAG, ALLOW_MULTIPLE_FILLS_FLAG, HAS_EXTENSION_FLAG,
)

DOMAIN = OrderDomain(chain_id=1, verifying_contract="0x" + "11" * 20)
USDC = "0x" + "c0" * 20
WETH = "0x" + "e0" * 20


class TestMakerTraits(unittest.TestCase):

    def test_field_offsets(self):
        traits = MakerTraits(expiration=1_700_000_000, nonce_or_epoch=7, series=3)
        word = traits.encode()
        self.assertEqual((word >> 80) & (2**40 - 1), 1_700_000_000)
        self.assertEqual((word >> 120) & (2**40 - 1), 7)
        self.assertEqual((word >> 160) & (2**40 - 1), 3)
        self.assertTrue(word & ALLOW_MULTIPLE_FILLS_FLAG)
        self.assertFalse(word & NO_PARTIAL_FILLS_FLAG)

    def test_decode_restores_traits(self):
        traits = MakerTraits(expiration=123, nonce_or_epoch=9, allow_partial_fills=False,
                             allow_multiple_fills=False, post_interaction=True)
        self.assertEqual(MakerTraits.decode(traits.encode()), traits)

    def test_fields_limited_to_40_bits(self):
        with self.assertRaises(ValidationError):
            MakerTraits(nonce_or_epoch=2**40).encode()

    def test_invalidator_choice(self):
        self.assertFalse(MakerTraits().uses_bit_invalidator)
        self.assertTrue(MakerTraits(allow_partial_fills=False).uses_bit_invalidator)
        self.assertTrue(MakerTraits(allow_multiple_fills=False).uses_bit_invalidator)

    def test_expiry(self):
        self.assertFalse(MakerTraits().is_expired(2**40))
        self.assertTrue(MakerTraits(expiration=100).is_expired(100))
        self.assertFalse(MakerTraits(expiration=100).is_expired(99))


class TestSigning(unittest.TestCase):

    def setUp(self):
        self.account = Account.create()
        self.order = Order(
            salt=1 << 160,
            maker=self.account.address,
            receiver="0x" + "00" * 20,
            maker_asset=USDC,
            taker_asset=WETH,
            making_amount=10**18,
            taking_amount=5 * 10**17,
            maker_traits=MakerTraits().encode(),
        )

    def test_signature_recovers_maker(self):
        signed = sign_order(self.order, DOMAIN, self.account)
        recovered = Account.recover_message(order_typed_data(self.order, DOMAIN), signature=signed.signature)
        self.assertEqual(recovered, self.account.address)
        self.assertEqual(signed.order_hash, order_hash(self.order, DOMAIN))

    def test_raw_key_signer(self):
        signed = sign_order(self.order, DOMAIN, self.account.key)
        self.assertEqual(signed.signature, sign_order(self.order, DOMAIN, self.account).signature)

    def test_hash_depends_on_domain(self):
        other = OrderDomain(chain_id=137, verifying_contract=DOMAIN.verifying_contract)
        self.assertNotEqual(order_hash(self.order, DOMAIN), order_hash(self.order, other))

    def test_non_maker_signer_rejected(self):
        with self.assertRaises(ValidationError):
            sign_order(self.order, DOMAIN, Account.create())

    def test_compact_signature(self):
        signed = sign_order(self.order, DOMAIN, self.account)
        vs = int.from_bytes(signed.vs, "big")
        s = int.from_bytes(signed.signature[32:64], "big")
        self.assertEqual(vs & (2**255 - 1), s)
        self.assertEqual(vs >> 255, signed.signature[64] - 27)
        self.assertEqual(signed.r, signed.signature[:32])

    def test_signed_order_dict_form(self):
        signed = sign_order(self.order, DOMAIN, self.account)
        self.assertEqual(SignedOrder.from_dict(signed.to_dict()), signed)

    def test_invalid_orders(self):
        with self.assertRaises(ValidationError):
            Order(salt=1, maker=self.account.address, receiver="0x" + "00" * 20, maker_asset=USDC,
                  taker_asset=WETH, making_amount=0, taking_amount=1, maker_traits=0)
        with self.assertRaises(ValidationError):
            Order(salt=1, maker="not-an-address", receiver="0x" + "00" * 20, maker_asset=USDC,
                  taker_asset=WETH, making_amount=1, taking_amount=1, maker_traits=0)


class TestOrderBuilder(unittest.TestCase):

    def setUp(self):
        self.account = Account.create()
        self.matcher = MagicMock()
        self.matcher.bit_invalidator_for_order.return_value = 0
        self.matcher.remaining_invalidator_for_order.return_value = 0
        self.matcher.epoch.return_value = 0
        self.builder = OrderBuilder(DOMAIN, self.matcher)

    def _order(self, traits: MakerTraits, extension: bytes = b""):
        return self.builder.new_order(
            maker=self.account.address, maker_asset=USDC, taker_asset=WETH,
            making_amount=10**18, taking_amount=5 * 10**17, traits=traits, extension=extension,
        )

    def test_bit_invalidator_slot(self):
        traits = MakerTraits(nonce_or_epoch=300, allow_multiple_fills=False)
        self.assertTrue(self.builder.is_order_slot_fresh(self.account.address, traits))
        self.matcher.bit_invalidator_for_order.assert_called_with(self.account.address, 1)

        self.matcher.bit_invalidator_for_order.return_value = 1 << 44
        self.assertFalse(self.builder.is_order_slot_fresh(self.account.address, traits))

    def test_remaining_invalidator(self):
        traits = MakerTraits()
        digest = b"\x0a" * 32
        self.assertTrue(self.builder.is_order_slot_fresh(self.account, traits, digest))
        self.matcher.remaining_invalidator_for_order.assert_called_with(self.account.address, digest)

        self.matcher.remaining_invalidator_for_order.return_value = 5
        self.assertFalse(self.builder.is_order_slot_fresh(self.account, traits, digest))

    def test_remaining_invalidator_needs_hash(self):
        with self.assertRaises(ValidationError):
            self.builder.is_order_slot_fresh(self.account, MakerTraits())

    def test_epoch_mismatch(self):
        traits = MakerTraits(nonce_or_epoch=1, series=2, need_check_epoch_manager=True,
                             allow_multiple_fills=False)
        self.matcher.epoch.return_value = 2
        self.assertFalse(self.builder.is_order_slot_fresh(self.account, traits))
        self.matcher.epoch.assert_called_with(self.account.address, 2)
        self.matcher.bit_invalidator_for_order.assert_not_called()

    def test_sign_checks_slot(self):
        order = self._order(MakerTraits(nonce_or_epoch=5, allow_multiple_fills=False))
        signed = self.builder.sign(order, self.account)
        self.assertEqual(signed.order.maker, self.account.address)

        self.matcher.bit_invalidator_for_order.return_value = 1 << 5
        with self.assertRaises(ValidationError):
            self.builder.sign(order, self.account)

    def test_extension_commits_in_salt(self):
        extension = b"\x01\x02\x03"
        order = self._order(MakerTraits(), extension=extension)
        low = int.from_bytes(keccak(extension), "big") & (2**160 - 1)
        self.assertEqual(order.salt & (2**160 - 1), low)
        self.assertTrue(order.maker_traits & HAS_EXTENSION_FLAG)
        self.assertTrue(order.traits.has_extension)

    def test_extension_leaves_caller_traits_alone(self):
        traits = MakerTraits(nonce_or_epoch=9)
        self._order(traits, extension=b"\xff")
        self.assertFalse(traits.has_extension)

        plain = self._order(traits)
        self.assertFalse(plain.maker_traits & HAS_EXTENSION_FLAG)

    def test_random_salt_leaves_low_bits_clear(self):
        order = self._order(MakerTraits())
        self.assertEqual(order.salt & (2**160 - 1), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
