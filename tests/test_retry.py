#!/usr/bin/env python3
"""
Retry Tests

Backoff is bounded by the caller's deadline: no retry is scheduled past it,
broadcast transactions are observed instead of re-sent, and operator aborts
stop the loop between attempts.
"""

import sys
import os
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crosslock.core import ChainKind
from crosslock.errors import ChainCallError, TimeoutExceeded, SwapAborted
from crosslock.chains.base import TxReceipt
from crosslock.swap.retry import RetryPolicy, call_with_retry

from fakes import FakeClock

POLICY = RetryPolicy(initial_delay=2.0, multiplier=2.0, max_delay=5.0, max_attempts=5, observe_interval=3.0)


class TestBackoff(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(1000)

    def _call(self, fn, **kwargs):
        return call_with_retry(fn, "test call", policy=POLICY, clock=self.clock, sleep=self.clock.sleep, **kwargs)

    def test_first_success(self):
        fn = MagicMock(return_value="ok")
        self.assertEqual(self._call(fn), "ok")
        self.assertEqual(self.clock.sleeps, [])

    def test_backoff_grows_and_caps(self):
        fn = MagicMock(side_effect=[ChainCallError("a"), ChainCallError("b"), ChainCallError("c"), "ok"])
        self.assertEqual(self._call(fn), "ok")
        self.assertEqual(self.clock.sleeps, [2.0, 4.0, 5.0])

    def test_gives_up_after_max_attempts(self):
        fn = MagicMock(side_effect=ChainCallError("down"))
        with self.assertRaises(TimeoutExceeded):
            self._call(fn)
        self.assertEqual(fn.call_count, POLICY.max_attempts)

    def test_never_sleeps_past_deadline(self):
        fn = MagicMock(side_effect=ChainCallError("down"))
        with self.assertRaises(TimeoutExceeded) as ctx:
            self._call(fn, deadline=1005)
        self.assertEqual(ctx.exception.deadline, 1005)
        self.assertLessEqual(self.clock(), 1005)
        self.assertEqual(self.clock.sleeps, [2.0])

    def test_deadline_already_passed(self):
        fn = MagicMock()
        with self.assertRaises(TimeoutExceeded):
            self._call(fn, deadline=1000)
        fn.assert_not_called()

    def test_non_retryable_raised_immediately(self):
        fn = MagicMock(side_effect=ChainCallError("reverted", retryable=False))
        with self.assertRaises(ChainCallError):
            self._call(fn)
        self.assertEqual(fn.call_count, 1)

    def test_on_retry_reports_schedule(self):
        on_retry = MagicMock()
        fn = MagicMock(side_effect=[ChainCallError("a"), "ok"])
        self._call(fn, on_retry=on_retry)
        next_at, exc = on_retry.call_args[0]
        self.assertEqual(next_at, 1002.0)
        self.assertEqual(exc.next_retry_at, 1002.0)


class TestObserve(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(1000)

    def _call(self, fn, observe, **kwargs):
        return call_with_retry(fn, "deploy", policy=POLICY, clock=self.clock, sleep=self.clock.sleep,
                               observe=observe, **kwargs)

    def test_broadcast_tx_is_observed(self):
        receipt = TxReceipt(tx_hash="0xabc", chain=ChainKind.EVM)
        fn = MagicMock(side_effect=ChainCallError("receipt timeout", tx_hash="0xabc"))
        observe = MagicMock(side_effect=[None, receipt])

        self.assertIs(self._call(fn, observe), receipt)
        self.assertEqual(fn.call_count, 1)
        observe.assert_called_with("0xabc")
        self.assertEqual(self.clock.sleeps, [3.0])

    def test_failed_tx_not_resent(self):
        fn = MagicMock(side_effect=ChainCallError("receipt timeout", tx_hash="0xabc"))
        observe = MagicMock(return_value=TxReceipt(tx_hash="0xabc", chain=ChainKind.EVM, success=False))
        with self.assertRaises(ChainCallError) as ctx:
            self._call(fn, observe)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(fn.call_count, 1)

    def test_unconfirmed_at_deadline(self):
        fn = MagicMock(side_effect=ChainCallError("receipt timeout", tx_hash="0xabc"))
        observe = MagicMock(return_value=None)
        with self.assertRaises(TimeoutExceeded):
            self._call(fn, observe, deadline=1010)
        self.assertLessEqual(self.clock(), 1010)


class TestAbort(unittest.TestCase):

    def test_abort_between_attempts(self):
        clock = FakeClock(1000)
        abort = threading.Event()
        abort.set()
        fn = MagicMock(side_effect=ChainCallError("down"))
        with self.assertRaises(SwapAborted):
            call_with_retry(fn, "fund", policy=POLICY, clock=clock, sleep=clock.sleep, abort=abort)
        self.assertEqual(fn.call_count, 1)
        self.assertEqual(clock.sleeps, [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
