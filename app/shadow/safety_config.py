from __future__ import annotations

from dataclasses import dataclass, field

from app.core.config import Settings


@dataclass
class ResourceLimits:
    max_concurrent_experiments: int = 10
    max_decisions_per_second: float = 100.0
    max_memory_mb: float = 512.0
    max_cpu_percent: float = 20.0


@dataclass
class CircuitBreakerConfig:
    error_threshold_percent: float = 10.0
    consecutive_failure_limit: int = 5
    # 窗口内请求数不足时不触发错误率熔断，避免首个失败就熔断
    min_requests: int = 10
    recovery_seconds: float = 300.0
    monitoring_window_seconds: float = 60.0
    half_open_trials: int = 1


@dataclass
class ProductionIsolation:
    allow_production_modification: bool = False
    shadow_only_mode: bool = True
    database_isolation: bool = True
    network_isolation: bool = True


@dataclass
class EmergencyStopConfig:
    max_latency_ms: float = 2000.0
    max_error_rate_percent: float = 5.0
    max_resource_usage_percent: float = 80.0
    min_sample_size: int = 10
    error_window_seconds: float = 3600.0


@dataclass
class MonitoringConfig:
    check_interval_seconds: float = 30.0
    resource_base_seconds: float = 10.0
    resource_max_seconds: float = 60.0
    active_experiments_ttl_seconds: float = 30.0
    decision_rate_ttl_seconds: float = 60.0
    history_limit: int = 100


@dataclass
class SafetyConfig:
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    production_isolation: ProductionIsolation = field(default_factory=ProductionIsolation)
    emergency_stops: EmergencyStopConfig = field(default_factory=EmergencyStopConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_settings(cls, s: Settings) -> "SafetyConfig":
        return cls(
            resource_limits=ResourceLimits(
                max_concurrent_experiments=s.SAFETY_MAX_CONCURRENT_EXPERIMENTS,
                max_decisions_per_second=s.SAFETY_MAX_DECISIONS_PER_SECOND,
                max_memory_mb=s.SAFETY_MAX_MEMORY_MB,
                max_cpu_percent=s.SAFETY_MAX_CPU_PERCENT,
            ),
            circuit_breaker=CircuitBreakerConfig(
                error_threshold_percent=s.BREAKER_ERROR_THRESHOLD_PERCENT,
                consecutive_failure_limit=s.BREAKER_CONSECUTIVE_FAILURE_LIMIT,
                min_requests=s.BREAKER_MIN_REQUESTS,
                recovery_seconds=s.BREAKER_RECOVERY_SECONDS,
                monitoring_window_seconds=s.BREAKER_MONITORING_WINDOW_SECONDS,
                half_open_trials=s.BREAKER_HALF_OPEN_TRIALS,
            ),
            production_isolation=ProductionIsolation(
                allow_production_modification=s.ALLOW_PRODUCTION_MODIFICATION,
                shadow_only_mode=s.SHADOW_ONLY_MODE,
                database_isolation=s.DATABASE_ISOLATION,
                network_isolation=s.NETWORK_ISOLATION,
            ),
            emergency_stops=EmergencyStopConfig(
                max_latency_ms=s.EMERGENCY_MAX_LATENCY_MS,
                max_error_rate_percent=s.EMERGENCY_MAX_ERROR_RATE_PERCENT,
                max_resource_usage_percent=s.EMERGENCY_MAX_RESOURCE_USAGE_PERCENT,
                min_sample_size=s.EMERGENCY_MIN_SAMPLE_SIZE,
                error_window_seconds=s.EMERGENCY_ERROR_WINDOW_SECONDS,
            ),
            monitoring=MonitoringConfig(
                check_interval_seconds=s.SAFETY_CHECK_INTERVAL_SECONDS,
                resource_base_seconds=s.RESOURCE_MONITOR_BASE_SECONDS,
                resource_max_seconds=s.RESOURCE_MONITOR_MAX_SECONDS,
                active_experiments_ttl_seconds=s.ACTIVE_EXPERIMENTS_CACHE_TTL_SECONDS,
                decision_rate_ttl_seconds=s.DECISION_RATE_CACHE_TTL_SECONDS,
                history_limit=s.SAFETY_HISTORY_LIMIT,
            ),
        )
