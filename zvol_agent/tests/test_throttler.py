import unittest

from zvol_agent.truenas_api.errors import ConflictError, TransientError, TransportError
from zvol_agent.truenas_api.throttler import RateLimiter, RetryPolicy


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class RetryPolicyTests(unittest.TestCase):
    def test_backoff_doubles_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, rand=lambda a, b: 0)
        self.assertEqual([policy.delay(i) for i in range(4)], [1.0, 2.0, 4.0, 8.0])

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, rand=lambda a, b: b)
        self.assertEqual(policy.delay(10), 5.0)

    def test_jitter_bounded_by_ratio(self):
        policy = RetryPolicy(base_delay=2.0, jitter_ratio=0.2, rand=lambda a, b: b)
        self.assertAlmostEqual(policy.delay(1), 4.0 + 0.8)

    def test_should_retry(self):
        policy = RetryPolicy(max_retries=2)
        transient = TransientError("timeout")
        self.assertTrue(policy.should_retry(transient, 0))
        self.assertTrue(policy.should_retry(transient, 1))
        self.assertFalse(policy.should_retry(transient, 2))
        self.assertFalse(policy.should_retry(ConflictError("busy"), 0))


class RateLimiterTests(unittest.TestCase):
    def test_burst_then_empty(self):
        clock = FakeClock()
        limiter = RateLimiter(calls=3, window=3.0, clock=clock, sleep=clock.sleep)
        self.assertEqual([limiter.try_acquire() for _ in range(4)], [True, True, True, False])
        clock.now += 1.0
        self.assertTrue(limiter.try_acquire())

    def test_acquire_waits_for_refill(self):
        clock = FakeClock()
        limiter = RateLimiter(calls=2, window=10.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        limiter.acquire()
        waited = limiter.acquire()
        self.assertAlmostEqual(waited, 5.0)
        self.assertEqual(len(clock.sleeps), 1)

    def test_acquire_respects_deadline(self):
        clock = FakeClock()
        limiter = RateLimiter(calls=1, window=60.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        with self.assertRaises(TransportError) as ctx:
            limiter.acquire(deadline=clock.now + 5)
        self.assertEqual(ctx.exception.error_code, "RATE_LIMIT_DEADLINE")
        self.assertEqual(clock.sleeps, [])

    def test_zero_calls_disables(self):
        limiter = RateLimiter(calls=0)
        self.assertFalse(limiter.enabled)
        self.assertTrue(all(limiter.try_acquire() for _ in range(100)))
        self.assertEqual(limiter.acquire(), 0.0)


if __name__ == "__main__":
    unittest.main()
