"""
Redis 客户端工具模块

提供统一的 Redis 连接封装；本项目只用它做遥测广播（pub/sub publish）。
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
from loguru import logger

from app.core.config import settings


class RedisClient:
    """Redis 异步客户端封装"""

    def __init__(self):
        self._client: Optional[redis.Redis] = None

    async def connect(self):
        """建立 Redis 连接"""
        try:
            if settings.REDIS_UNIX_SOCKET:
                self._client = redis.Redis(
                    unix_socket_path=settings.REDIS_UNIX_SOCKET,
                    db=settings.REDIS_DB,
                    password=settings.REDIS_PASSWORD,
                    decode_responses=True,  # 自动解码为字符串
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
            else:
                self._client = redis.Redis(
                    host=settings.REDIS_HOST,
                    port=settings.REDIS_PORT,
                    db=settings.REDIS_DB,
                    password=settings.REDIS_PASSWORD,
                    decode_responses=True,  # 自动解码为字符串
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
            # 测试连接
            await self._client.ping()
            target = (
                settings.REDIS_UNIX_SOCKET
                if settings.REDIS_UNIX_SOCKET
                else f"{settings.REDIS_HOST}:{settings.REDIS_PORT}"
            )
            logger.info(f"✅ Redis 连接成功: {target}")
        except Exception as e:
            logger.error(f"❌ Redis 连接失败: {e}")
            self._client = None

    async def close(self):
        """关闭 Redis 连接"""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("Redis 连接已关闭")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self):
        """获取 Redis 客户端实例"""
        if not self._client:
            raise RuntimeError("Redis 客户端未初始化，请先调用 connect()")
        return self._client

    async def publish(self, channel: str, message: str) -> int:
        """向频道广播一条消息，返回收到消息的订阅者数量"""
        return await self.client.publish(channel, message)


# 全局 Redis 客户端实例
redis_client = RedisClient()
