"""
影子实验安全自检（建议由 CronJob 定时触发，作为进程内监控循环之外的兜底）

示例（每 5 分钟一次）：
  */5 * * * *  cd <project> && python -m app.jobs.safety_check

只对 SQL 后端有意义：memory 后端的进程内数据不会被 cron 进程看到。
"""

from __future__ import annotations

import asyncio

from loguru import logger

from app.core.config import settings
from app.core.redis_client import redis_client
from app.shadow.container import build_services


async def run_once() -> str:
    if settings.TELEMETRY_ENABLED:
        await redis_client.connect()
    try:
        services = build_services(settings)
        await services.governor.rebuild_circuit_breakers()
        status = await services.governor.run_periodic_check()
        logger.info(
            f"安全自检结果: status={status.status.value} "
            f"critical={len(status.critical_issues)} warnings={len(status.warnings)}"
        )
        return status.status.value
    finally:
        if redis_client.is_connected:
            await redis_client.close()


def main() -> None:
    asyncio.run(run_once())


if __name__ == "__main__":
    main()
