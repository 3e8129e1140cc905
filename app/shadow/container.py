"""按配置装配影子实验的各个服务（启动时调用一次）"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from app.core.config import Settings
from app.core.redis_client import redis_client
from app.shadow.engine import ShadowDecisionEngine
from app.shadow.experiments import ExperimentService
from app.shadow.ips import IPSEvaluator
from app.shadow.monitoring import SafetyMonitor
from app.shadow.regret import RegretAnalyzer
from app.shadow.repository import InMemoryShadowRepository, ShadowRepository
from app.shadow.resources import PsutilResourceSampler, ResourceSampler
from app.shadow.safety import SafetyGovernor
from app.shadow.safety_config import SafetyConfig
from app.shadow.telemetry import NullTelemetryPublisher, RedisTelemetryPublisher, TelemetryPublisher


@dataclass
class ShadowServices:
    repository: ShadowRepository
    governor: SafetyGovernor
    engine: ShadowDecisionEngine
    experiments: ExperimentService
    ips: IPSEvaluator
    regret: RegretAnalyzer
    monitor: SafetyMonitor
    telemetry: TelemetryPublisher


def build_repository(settings: Settings) -> ShadowRepository:
    backend = settings.SHADOW_STORAGE_BACKEND.lower()
    if backend == "sql":
        from app.core.database import SessionLocal
        from app.shadow.sql_repository import SqlShadowRepository

        return SqlShadowRepository(SessionLocal)
    if backend != "memory":
        raise ValueError(f"unknown SHADOW_STORAGE_BACKEND: {settings.SHADOW_STORAGE_BACKEND}")
    return InMemoryShadowRepository()


def build_services(
    settings: Settings,
    *,
    repository: Optional[ShadowRepository] = None,
    sampler: Optional[ResourceSampler] = None,
    telemetry: Optional[TelemetryPublisher] = None,
) -> ShadowServices:
    repository = repository or build_repository(settings)
    if telemetry is None:
        if settings.TELEMETRY_ENABLED:
            telemetry = RedisTelemetryPublisher(redis_client, channel_prefix=settings.TELEMETRY_CHANNEL_PREFIX)
        else:
            telemetry = NullTelemetryPublisher()

    governor = SafetyGovernor(
        repository,
        config=SafetyConfig.from_settings(settings),
        sampler=sampler or PsutilResourceSampler(),
        telemetry=telemetry,
    )
    regret = RegretAnalyzer(
        repository,
        telemetry=telemetry,
        matching_window_seconds=settings.REGRET_MATCHING_WINDOW_SECONDS,
        default_production_value=settings.REGRET_DEFAULT_PRODUCTION_VALUE,
        value_range=settings.REGRET_VALUE_RANGE,
        early_stop_threshold=settings.REGRET_EARLY_STOP_THRESHOLD,
    )
    engine = ShadowDecisionEngine(
        repository,
        governor,
        regret_recorder=regret,
        execution_timeout_ms=settings.SHADOW_EXECUTION_TIMEOUT_MS,
        max_concurrent_executions=settings.SHADOW_MAX_CONCURRENT_EXECUTIONS,
        default_production_probability=settings.SHADOW_DEFAULT_PRODUCTION_PROBABILITY,
    )
    logger.info(
        f"影子实验服务已装配: storage={settings.SHADOW_STORAGE_BACKEND}, "
        f"telemetry={'redis' if settings.TELEMETRY_ENABLED else 'off'}"
    )
    return ShadowServices(
        repository=repository,
        governor=governor,
        engine=engine,
        experiments=ExperimentService(repository, governor),
        ips=IPSEvaluator(repository, telemetry=telemetry),
        regret=regret,
        monitor=SafetyMonitor(governor),
        telemetry=telemetry,
    )
