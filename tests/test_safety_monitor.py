from __future__ import annotations

import asyncio
import unittest

from app.shadow.monitoring import SafetyMonitor
from app.shadow.repository import InMemoryShadowRepository
from app.shadow.resources import ResourceMetrics, StaticResourceSampler
from app.shadow.safety import SafetyGovernor
from tests.shadow_builders import no_cache_config


class _FlakySampler:
    def __init__(self):
        self.fail = True
        self.calls = 0

    def sample(self) -> ResourceMetrics:
        self.calls += 1
        if self.fail:
            raise RuntimeError("sampler unavailable")
        return ResourceMetrics(memory_mb=32, cpu_percent=2)


class SafetyMonitorTestCase(unittest.TestCase):
    def test_backoff_on_failure_then_tightens(self) -> None:
        sampler = _FlakySampler()
        monitor = SafetyMonitor(SafetyGovernor(InMemoryShadowRepository(), config=no_cache_config(), sampler=sampler))
        self.assertEqual(monitor.resource_interval, 10)

        self.assertIsNone(asyncio.run(monitor.refresh_once()))
        self.assertEqual(monitor.consecutive_errors, 1)
        self.assertEqual(monitor.resource_interval, 20)

        asyncio.run(monitor.refresh_once())
        self.assertEqual(monitor.resource_interval, 40)
        asyncio.run(monitor.refresh_once())
        # 不超过上限 60s
        self.assertEqual(monitor.resource_interval, 60)

        sampler.fail = False
        usage = asyncio.run(monitor.refresh_once())
        self.assertAlmostEqual(usage, 6.25)
        self.assertEqual(monitor.consecutive_errors, 0)
        self.assertAlmostEqual(monitor.resource_interval, 57)

    def test_interval_never_below_base(self) -> None:
        governor = SafetyGovernor(
            InMemoryShadowRepository(), config=no_cache_config(), sampler=StaticResourceSampler(32, 2)
        )
        monitor = SafetyMonitor(governor)
        for _ in range(5):
            asyncio.run(monitor.refresh_once())
        self.assertEqual(monitor.resource_interval, 10)

    def test_skips_sampling_when_saturated(self) -> None:
        sampler = StaticResourceSampler(memory_mb=32, cpu_percent=99)
        governor = SafetyGovernor(InMemoryShadowRepository(), config=no_cache_config(), sampler=sampler)
        asyncio.run(governor.refresh_resource_metrics())
        monitor = SafetyMonitor(governor)

        sampler.cpu_percent = 10
        self.assertIsNone(asyncio.run(monitor.refresh_once()))
        self.assertEqual(monitor.resource_interval, 20)
        # 跳过时不更新读数
        self.assertEqual(governor.resource_metrics.cpu_percent, 99)

        # 连续两轮不会都跳过
        self.assertAlmostEqual(asyncio.run(monitor.refresh_once()), 10)
        self.assertEqual(governor.resource_metrics.cpu_percent, 10)
        self.assertAlmostEqual(monitor.resource_interval, 19)

    def test_start_and_stop(self) -> None:
        governor = SafetyGovernor(InMemoryShadowRepository(), config=no_cache_config())
        monitor = SafetyMonitor(governor)

        async def _cycle() -> bool:
            monitor.start()
            started = monitor.running
            await monitor.stop()
            return started

        self.assertTrue(asyncio.run(_cycle()))
        self.assertFalse(monitor.running)


if __name__ == "__main__":
    unittest.main()
