from __future__ import annotations

import time
from typing import Optional


class FakeRedis:
    """
    进程内 Redis 最小实现（覆盖遥测广播测试所需命令）

    目的：在无法建立 socket 的环境中做集成级验证，不依赖真实 Redis。
    publish 的消息按频道记录下来，供断言使用。
    """

    def __init__(self):
        self._strings: dict[str, tuple[str, Optional[float]]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail_publish = False

    async def ping(self) -> str:
        return "PONG"

    async def flushdb(self) -> bool:
        self._strings.clear()
        self.published.clear()
        return True

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> bool:
        expire_at = time.time() + ex if ex else None
        self._strings[key] = (str(value), expire_at)
        return True

    async def get(self, key: str) -> Optional[str]:
        item = self._strings.get(key)
        if item is None:
            return None
        value, expire_at = item
        if expire_at is not None and expire_at <= time.time():
            del self._strings[key]
            return None
        return value

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            raise ConnectionError("fake redis: publish failed")
        self.published.append((channel, message))
        return 1

    def messages(self, channel: str) -> list[str]:
        return [m for c, m in self.published if c == channel]


class FakeRedisClient:
    """与 app.core.redis_client.RedisClient 同形的包装"""

    def __init__(self, client: FakeRedis, *, connected: bool = True):
        self._client = client
        self._connected = connected

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client(self) -> FakeRedis:
        return self._client

    async def publish(self, channel: str, message: str) -> int:
        return await self._client.publish(channel, message)
