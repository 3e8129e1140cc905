"""
遥测广播（fire-and-forget）

安全状态变化、紧急停止、IPS / regret 汇总会推送到观测端；
发布失败只记日志，绝不影响影子执行或统计结果。
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol

from loguru import logger

from app.core.redis_client import RedisClient


class TelemetryTopic(str, Enum):
    safety_status = "safety.status"
    emergency_stop = "safety.emergency_stop"
    ips_estimate = "ips.estimate"
    regret_report = "regret.report"


class TelemetryPublisher(Protocol):
    async def publish(self, topic: TelemetryTopic, payload: Mapping[str, Any]) -> None: ...


def _default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class NullTelemetryPublisher:
    async def publish(self, topic: TelemetryTopic, payload: Mapping[str, Any]) -> None:
        return None


class RedisTelemetryPublisher:
    """通过 Redis pub/sub 广播，频道名为 ``{prefix}:{topic}``"""

    def __init__(self, redis: RedisClient, *, channel_prefix: str = "shadow_lab"):
        self._redis = redis
        self._prefix = channel_prefix

    def channel(self, topic: TelemetryTopic) -> str:
        return f"{self._prefix}:{topic.value}"

    async def publish(self, topic: TelemetryTopic, payload: Mapping[str, Any]) -> None:
        if not self._redis.is_connected:
            return
        try:
            message = json.dumps(dict(payload), ensure_ascii=False, default=_default)
            await self._redis.publish(self.channel(topic), message)
        except Exception as exc:
            logger.warning(f"遥测发布失败 topic={topic.value}: {exc}")
