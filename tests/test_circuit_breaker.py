from __future__ import annotations

import unittest
from datetime import datetime, timezone

from app.shadow.circuit_breaker import CircuitBreakerRegistry
from app.shadow.entities import ShadowDecision
from app.shadow.enums import BreakerState
from app.shadow.safety_config import CircuitBreakerConfig


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CircuitBreakerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.config = CircuitBreakerConfig(
            consecutive_failure_limit=3,
            error_threshold_percent=10.0,
            min_requests=10,
            recovery_seconds=300,
            monitoring_window_seconds=60,
            half_open_trials=1,
        )
        self.registry = CircuitBreakerRegistry(self.config, clock=self.clock)

    def test_opens_after_consecutive_failures(self) -> None:
        for _ in range(2):
            self.assertEqual(self.registry.record("exp", False), BreakerState.closed)
        self.assertEqual(self.registry.record("exp", False), BreakerState.open)
        allowed, reason = self.registry.check("exp")
        self.assertFalse(allowed)
        self.assertIn("Circuit breaker open", reason)

    def test_success_resets_consecutive_failures(self) -> None:
        self.registry.record("exp", False)
        self.registry.record("exp", False)
        self.registry.record("exp", True)
        self.assertEqual(self.registry.get("exp").failure_count, 0)
        self.registry.record("exp", False)
        self.assertEqual(self.registry.get("exp").state, BreakerState.closed)

    def test_error_rate_needs_minimum_requests(self) -> None:
        # 单次失败即 100% 错误率，但请求数不足，不应熔断
        self.registry.record("exp", False)
        self.assertEqual(self.registry.get("exp").state, BreakerState.closed)

        for _ in range(8):
            self.registry.record("exp", True)
        # 10 个请求里 2 个失败 = 20% > 10%
        self.assertEqual(self.registry.record("exp", False), BreakerState.open)

    def test_half_open_allows_single_trial(self) -> None:
        for _ in range(3):
            self.registry.record("exp", False)
        self.clock.now += 301

        allowed, _ = self.registry.check("exp")
        self.assertTrue(allowed)
        self.assertEqual(self.registry.get("exp").state, BreakerState.half_open)

        self.assertTrue(self.registry.try_acquire("exp")[0])
        allowed, reason = self.registry.try_acquire("exp")
        self.assertFalse(allowed)
        self.assertIn("half-open", reason)

    def test_unreported_half_open_trial_expires(self) -> None:
        for _ in range(3):
            self.registry.record("exp", False)
        self.clock.now += 301
        self.assertTrue(self.registry.try_acquire("exp")[0])

        # 试探放行后没有回报：恢复时间内继续拒绝
        self.clock.now += 299
        allowed, reason = self.registry.try_acquire("exp")
        self.assertFalse(allowed)
        self.assertIn("trial in progress", reason)

        self.clock.now += 10_000
        self.assertTrue(self.registry.try_acquire("exp")[0])
        self.assertEqual(self.registry.get("exp").state, BreakerState.half_open)
        self.assertEqual(self.registry.record("exp", True), BreakerState.closed)

    def test_half_open_success_closes_and_failure_reopens(self) -> None:
        for _ in range(3):
            self.registry.record("exp", False)
        self.clock.now += 301
        self.registry.try_acquire("exp")
        self.assertEqual(self.registry.record("exp", True), BreakerState.closed)
        self.assertEqual(self.registry.get("exp").failure_count, 0)

        for _ in range(3):
            self.registry.record("exp", False)
        self.clock.now += 301
        self.registry.try_acquire("exp")
        self.assertEqual(self.registry.record("exp", False), BreakerState.open)
        self.assertAlmostEqual(self.registry.get("exp").next_retry_at, self.clock.now + 300)

    def test_breakers_are_per_experiment(self) -> None:
        for _ in range(3):
            self.registry.record("exp-a", False)
        self.assertFalse(self.registry.check("exp-a")[0])
        self.assertTrue(self.registry.check("exp-b")[0])

    def test_rebuild_from_history(self) -> None:
        at = datetime.fromtimestamp(self.clock.now - 10, tz=timezone.utc)
        old = datetime.fromtimestamp(self.clock.now - 3600, tz=timezone.utc)
        decisions = [
            ShadowDecision(
                conversation_id="c", experiment_id="exp", variant_id="v", shadow_action="error",
                shadow_reasoning="x", execution_time_ms=5, error_occurred=True, timestamp=at,
            )
            for _ in range(3)
        ]
        decisions.append(
            ShadowDecision(
                conversation_id="c", experiment_id="exp-old", variant_id="v", shadow_action="error",
                shadow_reasoning="x", execution_time_ms=5, error_occurred=True, timestamp=old,
            )
        )
        replayed = self.registry.rebuild_from_history(decisions)
        self.assertEqual(replayed, 3)
        self.assertEqual(self.registry.get("exp").state, BreakerState.open)
        self.assertEqual(self.registry.get("exp-old").state, BreakerState.closed)


if __name__ == "__main__":
    unittest.main()
