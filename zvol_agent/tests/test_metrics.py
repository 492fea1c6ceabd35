import threading
import time
import unittest

from zvol_agent.locks import OperationLockRegistry
from zvol_agent.models.events import OperationOutcome
from zvol_agent.truenas_api.errors import ConflictError, OperationInProgressError
from zvol_agent.truenas_api.metrics import CallMetrics, EventLog
from zvol_agent.utils import align_size, format_bytes, normalize_value, parse_blocksize, to_int


class CallMetricsTests(unittest.TestCase):
    def test_counters(self):
        metrics = CallMetrics()
        metrics.record_attempt("core.ping")
        metrics.record_retry("core.ping")
        metrics.record_attempt("core.ping")
        metrics.record_success("core.ping", 10.0)
        metrics.record_attempt("pool.dataset.query")
        metrics.record_success("pool.dataset.query", 30.0)

        stats = metrics.snapshot()
        self.assertEqual(stats["attempts"], 3)
        self.assertEqual(stats["retries"], 1)
        self.assertEqual(stats["avg_latency_ms"], 20.0)
        self.assertEqual(stats["max_latency_ms"], 30.0)
        self.assertEqual(stats["per_method"]["core.ping"], {"attempts": 2, "retries": 1, "failures": 0, "successes": 1})


class EventLogTests(unittest.TestCase):
    def test_track_success_and_failure(self):
        log = EventLog()
        with log.track("create", "tn1", ["tank/a"]) as resources:
            resources.append("iscsi.extent:1")

        with self.assertRaises(ConflictError):
            with log.track("delete", "tn1", ["tank/a"]):
                raise ConflictError("busy", step="delete dataset")

        ok, failed = log.events()
        self.assertEqual(ok.outcome, OperationOutcome.SUCCESS)
        self.assertEqual(ok.resources, ["tank/a", "iscsi.extent:1"])
        self.assertEqual(failed.outcome, OperationOutcome.FAILED)
        self.assertEqual(failed.error_type, "ConflictError")
        self.assertEqual(failed.step, "delete dataset")

    def test_bounded_and_limited(self):
        log = EventLog(max_events=3)
        for i in range(5):
            with log.track(f"op{i}", None, []):
                pass
        self.assertEqual([e.operation for e in log.events()], ["op2", "op3", "op4"])
        self.assertEqual([e.operation for e in log.events(limit=1)], ["op4"])
        self.assertEqual(log.events(limit=0), [])

    def test_subscribers(self):
        log = EventLog()
        seen = []
        unsubscribe = log.subscribe(lambda e: seen.append(e.operation))
        log.subscribe(lambda e: 1 / 0)

        with log.track("create", None, []):
            pass
        unsubscribe()
        with log.track("delete", None, []):
            pass

        self.assertEqual(seen, ["create"])
        self.assertEqual(len(log.events()), 2)


class LockRegistryTests(unittest.TestCase):
    def test_non_blocking_conflict(self):
        locks = OperationLockRegistry()
        with locks.hold("tank/a"):
            self.assertTrue(locks.is_locked("tank/a"))
            with self.assertRaises(OperationInProgressError):
                with locks.hold("tank/a", blocking=False):
                    pass
            with locks.hold("tank/b", blocking=False):
                pass
        self.assertFalse(locks.is_locked("tank/a"))

    def test_released_locks_are_forgotten(self):
        locks = OperationLockRegistry()
        for i in range(20):
            with locks.hold(f"tank/vm-{i}-disk-0"):
                self.assertEqual(len(locks), 1)
        self.assertEqual(len(locks), 0)

        with locks.hold("tank/a"):
            with self.assertRaises(OperationInProgressError):
                with locks.hold("tank/a", blocking=False):
                    pass
            self.assertTrue(locks.is_locked("tank/a"))
        self.assertEqual(len(locks), 0)

    def test_waiter_keeps_the_lock_entry(self):
        locks = OperationLockRegistry()
        acquired = threading.Event()

        def waiter():
            with locks.hold("tank/a", timeout=5):
                acquired.set()

        with locks.hold("tank/a"):
            thread = threading.Thread(target=waiter)
            thread.start()
            for _ in range(500):
                if locks._users.get("tank/a", 0) == 2:
                    break
                time.sleep(0.01)
        thread.join(5)

        self.assertTrue(acquired.is_set())
        self.assertEqual(len(locks), 0)

    def test_hold_many_in_sorted_order(self):
        """Two threads locking the same pair in opposite order must not deadlock."""
        locks = OperationLockRegistry()
        done = []

        def worker(keys):
            for _ in range(50):
                with locks.hold_many(keys):
                    pass
            done.append(keys)

        threads = [
            threading.Thread(target=worker, args=(["tank/a", "tank/b"],)),
            threading.Thread(target=worker, args=(["tank/b", "tank/a"],)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        self.assertEqual(len(done), 2)


class UtilsTests(unittest.TestCase):
    def test_blocksize_and_alignment(self):
        self.assertEqual(parse_blocksize("16K"), 16384)
        self.assertEqual(parse_blocksize("1m"), 1024 ** 2)
        self.assertEqual(parse_blocksize("junk"), 0)
        self.assertEqual(align_size(1, 16384), 16384)
        self.assertEqual(align_size(16384, 16384), 16384)
        self.assertEqual(align_size(5, 0), 5)

    def test_property_values(self):
        self.assertEqual(normalize_value({"parsed": 5, "rawvalue": "5"}), 5)
        self.assertEqual(normalize_value({"parsed": None, "rawvalue": "7"}), "7")
        self.assertEqual(normalize_value(None), 0)
        self.assertEqual(to_int({"rawvalue": "12"}), 12)
        self.assertEqual(to_int("n/a"), 0)

    def test_format_bytes(self):
        self.assertEqual(format_bytes(0), "0 B")
        self.assertEqual(format_bytes(1536), "1.50 KB")


if __name__ == "__main__":
    unittest.main()
