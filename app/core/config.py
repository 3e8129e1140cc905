# 读取 .env 配置
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Service
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Database
    DB_SERVER: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "shadow_user"
    DB_PASSWORD: str = "shadow_password"
    DB_NAME: str = "shadow_lab"
    DATABASE_URL: Optional[str] = None  # 显式指定时覆盖 MySQL 拼接串（例如 sqlite:///./shadow.db）
    SHADOW_STORAGE_BACKEND: str = "memory"  # 可选: "memory", "sql"

    # Redis（遥测广播通道）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_UNIX_SOCKET: Optional[str] = None
    TELEMETRY_ENABLED: bool = False
    TELEMETRY_CHANNEL_PREFIX: str = "shadow_lab"

    # Shadow engine
    SHADOW_EXECUTION_TIMEOUT_MS: int = 1000
    SHADOW_MAX_CONCURRENT_EXECUTIONS: int = 10
    SHADOW_DEFAULT_PRODUCTION_PROBABILITY: float = 0.5

    # Safety: resource limits
    SAFETY_MAX_CONCURRENT_EXPERIMENTS: int = 10
    SAFETY_MAX_DECISIONS_PER_SECOND: float = 100.0
    SAFETY_MAX_MEMORY_MB: float = 512.0
    SAFETY_MAX_CPU_PERCENT: float = 20.0

    # Safety: circuit breaker
    BREAKER_ERROR_THRESHOLD_PERCENT: float = 10.0
    BREAKER_CONSECUTIVE_FAILURE_LIMIT: int = 5
    BREAKER_MIN_REQUESTS: int = 10
    BREAKER_RECOVERY_SECONDS: float = 300.0
    BREAKER_MONITORING_WINDOW_SECONDS: float = 60.0
    BREAKER_HALF_OPEN_TRIALS: int = 1

    # Safety: production isolation
    ALLOW_PRODUCTION_MODIFICATION: bool = False
    SHADOW_ONLY_MODE: bool = True
    DATABASE_ISOLATION: bool = True
    NETWORK_ISOLATION: bool = True

    # Safety: emergency stop ceilings
    EMERGENCY_MAX_LATENCY_MS: float = 2000.0
    EMERGENCY_MAX_ERROR_RATE_PERCENT: float = 5.0
    EMERGENCY_MAX_RESOURCE_USAGE_PERCENT: float = 80.0
    EMERGENCY_MIN_SAMPLE_SIZE: int = 10
    EMERGENCY_ERROR_WINDOW_SECONDS: float = 3600.0

    # Safety: monitoring loops / caches
    SAFETY_CHECK_INTERVAL_SECONDS: float = 30.0
    RESOURCE_MONITOR_BASE_SECONDS: float = 10.0
    RESOURCE_MONITOR_MAX_SECONDS: float = 60.0
    ACTIVE_EXPERIMENTS_CACHE_TTL_SECONDS: float = 30.0
    DECISION_RATE_CACHE_TTL_SECONDS: float = 60.0
    SAFETY_HISTORY_LIMIT: int = 100
    SAFETY_MONITOR_ENABLED: bool = True

    # Regret
    REGRET_MATCHING_WINDOW_SECONDS: float = 60.0
    REGRET_DEFAULT_PRODUCTION_VALUE: float = 8000.0
    REGRET_VALUE_RANGE: float = 20000.0
    REGRET_EARLY_STOP_THRESHOLD: float = 1000.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"  # 忽略多余的环境变量
    )


settings = Settings()
