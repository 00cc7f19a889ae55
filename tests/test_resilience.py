#!/usr/bin/env python3
"""
Tests for retry backoff, the circuit breaker, event publishing failures
and the background sweep loop
"""

import threading
import unittest
from datetime import datetime
from unittest import mock

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerException, CircuitState
from common.kafka import KafkaEventPublisher
from common.retry import LEDGER_CAS_RETRY_CONFIG, RetryConfig, StaleStateError, retry_sync
from common.schemas import MarketplaceEvent
from marketplace_service.workers import SweepWorker


@mock.patch("common.retry.time.sleep")
class TestRetry(unittest.TestCase):

    def test_stale_state_is_retried(self, sleep):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleStateError("hold changed")
            return "done"

        self.assertEqual(retry_sync(flaky, LEDGER_CAS_RETRY_CONFIG), "done")
        self.assertEqual(len(calls), 3)
        self.assertEqual(sleep.call_count, 2)

    def test_other_errors_are_not_retried(self, sleep):
        def broken():
            raise KeyError("boom")

        with self.assertRaises(KeyError):
            retry_sync(broken, LEDGER_CAS_RETRY_CONFIG)
        sleep.assert_not_called()

    def test_gives_up_after_max_attempts(self, sleep):
        def always_stale():
            raise StaleStateError("again")

        with self.assertRaises(StaleStateError):
            retry_sync(always_stale, RetryConfig(max_attempts=4, retryable_exceptions=(StaleStateError,)))
        self.assertEqual(sleep.call_count, 3)

    def test_backoff_is_capped(self, sleep):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        self.assertEqual([config.delay_for(n) for n in (1, 2, 3, 4, 5)], [1.0, 2.0, 4.0, 5.0, 5.0])


class TestCircuitBreaker(unittest.TestCase):

    def setUp(self):
        self.now = 0.0
        self.breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30, success_threshold=1),
                                      clock=lambda: self.now)

    def fail(self):
        raise ConnectionError("broker down")

    def test_opens_after_threshold_and_recovers(self):
        for _ in range(2):
            with self.assertRaises(ConnectionError):
                self.breaker.call(self.fail)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        with self.assertRaises(CircuitBreakerException):
            self.breaker.call(lambda: "ok")

        self.now = 31.0
        self.assertEqual(self.breaker.call(lambda: "ok"), "ok")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_half_open_failure_reopens(self):
        for _ in range(2):
            with self.assertRaises(ConnectionError):
                self.breaker.call(self.fail)
        self.now = 31.0
        with self.assertRaises(ConnectionError):
            self.breaker.call(self.fail)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)


@mock.patch("common.retry.time.sleep")
class TestKafkaEventPublisher(unittest.TestCase):

    def setUp(self):
        self.breaker = CircuitBreaker("kafka-test", CircuitBreakerConfig(failure_threshold=1, reset_timeout=60))
        self.publisher = KafkaEventPublisher(breaker=self.breaker)
        self.event = MarketplaceEvent(type="OrderClaimed", order_id="o-1", guide_id="guide-1",
                                      occurred_at=datetime(2026, 10, 1, 7, 0))

    def test_publish_failure_is_reported_not_raised(self, sleep):
        attempts = []

        def no_broker(event):
            attempts.append(event)
            raise RuntimeError("no broker")

        with mock.patch.object(self.publisher, "_send", no_broker):
            self.assertFalse(self.publisher.publish(self.event))
            self.assertEqual(len(attempts), 3)
            # Breaker is open now; no further send attempts
            self.assertFalse(self.publisher.publish(self.event))
            self.assertEqual(len(attempts), 3)

    def test_publish_success(self, sleep):
        sent = []

        def deliver(event):
            sent.append(event)

        with mock.patch.object(self.publisher, "_send", deliver):
            self.assertTrue(self.publisher.publish(self.event))
        self.assertEqual(sent, [self.event])



class TestSweepWorker(unittest.TestCase):

    def test_failed_iteration_is_logged_and_survived(self):
        def broken():
            raise RuntimeError("database unavailable")

        worker = SweepWorker("broken", broken, interval=1)
        with self.assertLogs("marketplace_service.workers", level="ERROR"):
            self.assertEqual(worker.run_once(), 0)

    def test_runs_until_stopped(self):
        ticked = threading.Event()

        def sweep():
            ticked.set()
            return 0

        worker = SweepWorker("ticker", sweep, interval=0.01)
        worker.start()
        self.assertTrue(ticked.wait(2))
        worker.stop()
        worker.join(2)
        self.assertFalse(worker.is_alive())


if __name__ == "__main__":
    unittest.main()
