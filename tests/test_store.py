#!/usr/bin/env python3
"""
Swap Store Tests

Records survive a reload from disk and can be found by hashlock.
"""

import sys
import os
import json
import shutil
import tempfile
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crosslock.swap.store import SwapStore


def _record(order_hash: str, hashlock: str, state: str = "created"):
    return {"order_hash": order_hash, "hashlock": hashlock, "state": state}


class TestSwapStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "nested", "swaps.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_reload_from_disk(self):
        store = SwapStore(self.path)
        store.save("0x01", _record("0x01", "0xAB", "src_filled"))

        reloaded = SwapStore(self.path)
        self.assertEqual(reloaded.get("0x01")["state"], "src_filled")
        self.assertEqual(len(reloaded.all()), 1)

    def test_file_is_plain_json(self):
        SwapStore(self.path).save("0x01", _record("0x01", "0xab"))
        with open(self.path) as f:
            self.assertIn("0x01", json.load(f))
        self.assertFalse(os.path.exists(self.path + ".tmp"))

    def test_internal_keys_dropped(self):
        store = SwapStore(self.path)
        store.save("0x01", dict(_record("0x01", "0xab"), _lock="x"))
        self.assertNotIn("_lock", SwapStore(self.path).get("0x01"))

    def test_find_by_hashlock_ignores_case(self):
        store = SwapStore()
        store.save("0x01", _record("0x01", "0xAbCd"))
        self.assertEqual(store.find_by_hashlock("0xabcd")["order_hash"], "0x01")
        self.assertIsNone(store.find_by_hashlock("0xffff"))

    def test_returned_records_are_copies(self):
        store = SwapStore()
        store.save("0x01", _record("0x01", "0xab"))
        store.get("0x01")["state"] = "completed"
        self.assertEqual(store.get("0x01")["state"], "created")

    def test_memory_store_writes_nothing(self):
        store = SwapStore()
        store.save("0x01", _record("0x01", "0xab"))
        self.assertIsNone(store.path)
        self.assertEqual(store.load(), 0)

    def test_archive_moves_record_to_its_own_file(self):
        store = SwapStore(self.path)
        store.save("0x01", _record("0x01", "0xab", "completed"))
        store.save("0x02", _record("0x02", "0xcd"))

        self.assertTrue(store.archive("0x01"))
        self.assertFalse(store.archive("0x01"))

        self.assertIsNone(store.get("0x01"))
        self.assertEqual(store.get_archived("0x01")["state"], "completed")
        with open(self.path) as f:
            self.assertEqual(list(json.load(f)), ["0x02"])
        archive_file = os.path.join(self.tmpdir, "nested", "swaps.archive.json")
        with open(archive_file) as f:
            self.assertIn("0x01", json.load(f))

        reloaded = SwapStore(self.path)
        self.assertEqual([r["order_hash"] for r in reloaded.all()], ["0x02"])
        self.assertEqual(reloaded.archived_count(), 1)
        self.assertIsNone(reloaded.find_by_hashlock("0xab"))

    def test_from_env(self):
        with patch.dict(os.environ, {"CROSSLOCK_DB": self.path}):
            store = SwapStore.from_env()
        self.assertEqual(store.path, self.path)


if __name__ == "__main__":
    unittest.main(verbosity=2)
