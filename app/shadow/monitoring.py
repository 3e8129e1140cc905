"""
安全治理的后台循环

- 定时自检：固定间隔重算完整安全状态，有 critical 就触发紧急停止（流量低谷时也能发现资源恶化）；
- 资源刷新：自适应间隔采样 CPU/内存，失败时指数退避、成功后逐步收紧，始终不超过上限，
  避免事故期间监控本身放大负载。
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from loguru import logger

from app.shadow.safety import SafetyGovernor


class SafetyMonitor:
    def __init__(self, governor: SafetyGovernor):
        self._governor = governor
        mon = governor.config.monitoring
        self.resource_interval: float = mon.resource_base_seconds
        self.consecutive_errors: int = 0
        self._skipped_last = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._safety_check_loop(), name="shadow-safety-check"),
            asyncio.create_task(self._resource_loop(), name="shadow-resource-monitor"),
        ]
        logger.info("安全监控循环已启动")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("安全监控循环已停止")

    async def _safety_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self._governor.config.monitoring.check_interval_seconds)
            try:
                status = await self._governor.run_periodic_check()
                logger.debug(f"定时安全自检: {status.status.value}")
            except Exception as exc:
                logger.error(f"定时安全自检失败: {exc}")

    async def _resource_loop(self) -> None:
        while True:
            await asyncio.sleep(self.resource_interval)
            await self.refresh_once()

    async def refresh_once(self) -> Optional[float]:
        """执行一次资源刷新并更新下一次间隔；返回本次采到的聚合占用率（跳过/失败时为 None）"""
        mon = self._governor.config.monitoring
        limits = self._governor.config.resource_limits

        current = self._governor.resource_metrics
        if (
            not self._skipped_last
            and current is not None
            and current.usage_percent(limits.max_memory_mb) > 95
        ):
            # 资源已极度紧张：本轮不采样，直接拉长间隔；下一轮必定重新采样
            self._skipped_last = True
            self.resource_interval = min(mon.resource_max_seconds, self.resource_interval * 2)
            logger.warning(f"资源占用 >95%，跳过本轮采样，下次间隔 {self.resource_interval:.1f}s")
            return None
        self._skipped_last = False

        try:
            metrics = await self._governor.refresh_resource_metrics()
        except Exception as exc:
            self.consecutive_errors += 1
            backoff = mon.resource_base_seconds * (2 ** min(self.consecutive_errors, 4))
            self.resource_interval = min(mon.resource_max_seconds, backoff)
            logger.warning(
                f"资源采样失败({self.consecutive_errors} 次)，下次间隔 {self.resource_interval:.1f}s: {exc}"
            )
            return None

        self.consecutive_errors = 0
        self.resource_interval = min(
            mon.resource_max_seconds,
            max(mon.resource_base_seconds, self.resource_interval * 0.95),
        )
        if metrics is None:
            return None
        return metrics.usage_percent(limits.max_memory_mb)
