"""
进程资源采样

CPU 使用率取的是当前进程的 cpu_percent，只是系统负载的粗略代理：
多进程部署（多个 uvicorn worker）时每个进程只看得到自己。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import psutil


@dataclass(frozen=True)
class ResourceMetrics:
    memory_mb: float
    cpu_percent: float
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def usage_percent(self, max_memory_mb: float) -> float:
        """聚合资源占用：CPU% 与内存占上限百分比取大"""
        mem_pct = self.memory_mb / max_memory_mb * 100 if max_memory_mb > 0 else 0.0
        return max(self.cpu_percent, mem_pct)

    def to_dict(self) -> dict:
        return {
            "memoryMb": round(self.memory_mb, 2),
            "cpuPercent": round(self.cpu_percent, 2),
            "sampledAt": self.sampled_at.isoformat(),
        }


class ResourceSampler(Protocol):
    def sample(self) -> ResourceMetrics: ...


class PsutilResourceSampler:
    """基于 psutil 的进程级采样器"""

    def __init__(self):
        self._process = psutil.Process()
        # 第一次调用 cpu_percent(None) 恒为 0，先预热一次
        self._process.cpu_percent(interval=None)

    def sample(self) -> ResourceMetrics:
        rss_mb = self._process.memory_info().rss / (1024 * 1024)
        cpu = self._process.cpu_percent(interval=None)
        return ResourceMetrics(memory_mb=rss_mb, cpu_percent=cpu)


class StaticResourceSampler:
    """固定读数的采样器：本地调试或关闭资源门控时使用"""

    def __init__(self, memory_mb: float = 0.0, cpu_percent: float = 0.0):
        self.memory_mb = memory_mb
        self.cpu_percent = cpu_percent

    def sample(self) -> ResourceMetrics:
        return ResourceMetrics(memory_mb=self.memory_mb, cpu_percent=self.cpu_percent)
