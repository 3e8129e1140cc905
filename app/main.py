# 【入口】整个程序的启动点
from fastapi import FastAPI
from loguru import logger
import sys

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.redis_client import redis_client
from app.shadow.container import build_services


# ========================================
# Loguru 日志配置
# ========================================
def setup_logger():
    """配置 loguru 日志系统"""
    # 移除默认的 handler
    logger.remove()

    # 添加控制台输出（彩色）
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.LOG_LEVEL,
        colorize=True,
    )

    # 如果配置了日志文件，添加文件输出
    if settings.LOG_FILE:
        logger.add(
            settings.LOG_FILE,
            rotation="100 MB",  # 日志文件达到 100MB 时轮转
            retention="10 days",  # 保留最近 10 天的日志
            compression="zip",  # 压缩旧日志
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=settings.LOG_LEVEL,
        )

    logger.info("Loguru 日志系统初始化完成")


# 初始化日志
setup_logger()


# ========================================
# FastAPI 应用配置
# ========================================
app = FastAPI(
    title="Shadow Lab - 影子策略实验平台",
    description="影子决策执行、安全治理、IPS 离线评估与 regret 分析",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# 注册所有路由，统一加前缀 /api/v1
app.include_router(api_router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    """应用启动事件"""
    logger.info("=" * 60)
    logger.info("影子策略实验平台正在启动...")
    logger.info(f"调试模式: {settings.DEBUG}")
    logger.info(f"日志级别: {settings.LOG_LEVEL}")
    logger.info(f"存储后端: {settings.SHADOW_STORAGE_BACKEND}")
    logger.info("=" * 60)

    if settings.TELEMETRY_ENABLED:
        await redis_client.connect()

    services = build_services(settings)
    app.state.services = services

    # 进程重启后熔断器状态丢失：用监控窗口内的历史重建
    await services.governor.rebuild_circuit_breakers()
    if settings.SAFETY_MONITOR_ENABLED:
        services.monitor.start()


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭事件"""
    logger.info("影子策略实验平台正在关闭...")
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.monitor.stop()
    if redis_client.is_connected:
        await redis_client.close()


@app.get("/")
def health_check():
    """健康检查端点"""
    return {
        "status": "ok",
        "message": "Shadow Lab is running!",
        "version": "1.0.0",
    }
