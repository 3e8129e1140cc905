"""
影子实验安全治理（Safety Governor）

唯一有权决定影子执行能否进行的地方，也是资源/错误信号汇总成停止决策的地方。

执行前检查顺序（第一个失败即返回）：
  紧急停止开关 -> 实验熔断器 -> 资源上限 -> 生产隔离
拒绝只影响影子路径，不会阻塞生产决策。

熔断器表与资源指标缓存是仅有的共享可变状态，只在 _state_lock 临界区里修改。
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from loguru import logger

from app.shadow.cache import AsyncTimedCache
from app.shadow.circuit_breaker import CircuitBreakerRegistry
from app.shadow.entities import utcnow
from app.shadow.enums import BreakerState, CheckStatus, ExperimentStatus, SafetyLevel
from app.shadow.errors import ExperimentNotFoundError, SafetyViolationError
from app.shadow.repository import ShadowRepository
from app.shadow.resources import ResourceMetrics, ResourceSampler
from app.shadow.safety_config import SafetyConfig
from app.shadow.telemetry import NullTelemetryPublisher, TelemetryPublisher, TelemetryTopic

EMERGENCY_STOP_REASON = "Emergency stop is active - all shadow testing suspended"


@dataclass(frozen=True)
class SafetyDecision:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


@dataclass
class SafetyCheck:
    name: str
    status: CheckStatus
    value: float
    threshold: float
    message: str
    last_checked: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "value": round(self.value, 4),
            "threshold": self.threshold,
            "message": self.message,
            "lastChecked": self.last_checked.isoformat(),
        }


@dataclass
class SafetyStatus:
    status: SafetyLevel
    checks: Dict[str, SafetyCheck]
    active_experiments: int
    recent_decisions: int
    emergency_stop_active: bool
    warnings: List[str] = field(default_factory=list)
    critical_issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": {name: c.to_dict() for name, c in self.checks.items()},
            "activeExperiments": self.active_experiments,
            "recentDecisions": self.recent_decisions,
            "emergencyStopActive": self.emergency_stop_active,
            "warnings": list(self.warnings),
            "criticalIssues": list(self.critical_issues),
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class _Outcome:
    experiment_id: str
    at: float
    success: bool
    duration_ms: float


_RECOMMENDATIONS = {
    "resource_usage": "Reduce concurrent shadow load or raise resource limits",
    "circuit_breakers": "Investigate experiments with open circuit breakers",
    "production_isolation": "Enable shadow-only mode and disable production modification",
    "performance": "Optimize shadow policy execution or lower the execution timeout",
    "error_rates": "Review recent failed shadow decisions",
}


class SafetyGovernor:
    def __init__(
        self,
        repository: ShadowRepository,
        *,
        config: Optional[SafetyConfig] = None,
        sampler: Optional[ResourceSampler] = None,
        telemetry: Optional[TelemetryPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._repo = repository
        self._config = config or SafetyConfig()
        self._sampler = sampler
        self._telemetry = telemetry or NullTelemetryPublisher()
        self._clock = clock

        self._state_lock = threading.Lock()
        self._breakers = CircuitBreakerRegistry(self._config.circuit_breaker, clock=clock)
        self._resource_metrics: Optional[ResourceMetrics] = None
        self._outcomes: Deque[_Outcome] = deque()
        self._emergency_stop_active = False
        self._last_level: Optional[SafetyLevel] = None

        self._history: Deque[SafetyStatus] = deque(maxlen=self._config.monitoring.history_limit)
        self.audit_trail: Deque[Dict[str, Any]] = deque(maxlen=1000)
        self._build_caches()

    # ========================================
    # 属性
    # ========================================
    @property
    def config(self) -> SafetyConfig:
        return self._config

    @property
    def emergency_stop_active(self) -> bool:
        return self._emergency_stop_active

    @property
    def resource_metrics(self) -> Optional[ResourceMetrics]:
        return self._resource_metrics

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    def _build_caches(self) -> None:
        mon = self._config.monitoring
        self._active_experiments_cache = AsyncTimedCache(
            mon.active_experiments_ttl_seconds,
            lambda: self._repo.count_experiments(ExperimentStatus.running),
        )
        self._decision_rate_cache = AsyncTimedCache(mon.decision_rate_ttl_seconds, self._load_decision_rate)

    async def _load_decision_rate(self) -> float:
        since = utcnow() - timedelta(seconds=60)
        count = await self._repo.count_shadow_decisions_since(since)
        return count / 60.0

    def invalidate_caches(self) -> None:
        self._active_experiments_cache.invalidate()
        self._decision_rate_cache.invalidate()

    # ========================================
    # 执行前检查
    # ========================================
    async def perform_pre_execution_safety_check(self, experiment_id: str, conversation_id: str) -> SafetyDecision:
        if self._emergency_stop_active:
            return SafetyDecision(False, EMERGENCY_STOP_REASON)

        with self._state_lock:
            allowed, reason = self._breakers.check(experiment_id)
        if not allowed:
            return SafetyDecision(False, reason)

        allowed, reason = await self._check_resource_limits()
        if not allowed:
            return SafetyDecision(False, reason)

        allowed, reason = self._check_production_isolation()
        if not allowed:
            return SafetyDecision(False, reason)

        # 资源检查有 await，这里重新确认并占用 half_open 试探名额
        if self._emergency_stop_active:
            return SafetyDecision(False, EMERGENCY_STOP_REASON)
        with self._state_lock:
            allowed, reason = self._breakers.try_acquire(experiment_id)
        if not allowed:
            return SafetyDecision(False, reason)

        logger.debug(f"[Safety] 放行影子执行 experiment={experiment_id} conversation={conversation_id}")
        return SafetyDecision(True)

    async def _check_resource_limits(self) -> Tuple[bool, Optional[str]]:
        limits = self._config.resource_limits

        active = await self._active_experiments_cache.get()
        if active > limits.max_concurrent_experiments:
            return False, f"Too many active experiments: {active}/{limits.max_concurrent_experiments}"

        rate = await self._decision_rate_cache.get()
        if rate > limits.max_decisions_per_second:
            return False, (
                f"Shadow decision rate too high: {rate:.1f}/s (limit {limits.max_decisions_per_second:.0f}/s)"
            )

        metrics = self._resource_metrics
        if metrics is not None:
            if metrics.memory_mb > limits.max_memory_mb:
                return False, f"Memory usage too high: {metrics.memory_mb:.1f}MB (limit {limits.max_memory_mb:.0f}MB)"
            if metrics.cpu_percent > limits.max_cpu_percent:
                return False, f"CPU usage too high: {metrics.cpu_percent:.1f}% (limit {limits.max_cpu_percent:.0f}%)"
        return True, None

    def _check_production_isolation(self) -> Tuple[bool, Optional[str]]:
        iso = self._config.production_isolation
        if not iso.shadow_only_mode:
            return False, "Production isolation violated: shadow-only mode is disabled"
        if iso.allow_production_modification:
            return False, "Production isolation violated: production modification is allowed"
        return True, None

    # ========================================
    # 结果回报
    # ========================================
    async def record_shadow_decision_outcome(
        self,
        experiment_id: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        now = self._clock()
        with self._state_lock:
            before = self._breakers.get(experiment_id).state
            after = self._breakers.record(experiment_id, success, at=now)
            self._outcomes.append(_Outcome(experiment_id, now, success, float(duration_ms)))
            self._prune_outcomes(now)

        if not success:
            logger.warning(f"[Safety] 影子执行失败 experiment={experiment_id} duration={duration_ms:.1f}ms error={error}")
        if before != BreakerState.open and after == BreakerState.open:
            self._audit(
                "circuit_breaker_opened",
                experimentId=experiment_id,
                error=error,
            )
            await self.evaluate_experiment_auto_stop(experiment_id, error)

        await self._check_emergency_stop_conditions(duration_ms)

    def _prune_outcomes(self, now: float) -> None:
        horizon = now - self._config.emergency_stops.error_window_seconds
        while self._outcomes and self._outcomes[0].at < horizon:
            self._outcomes.popleft()

    def _recent_stats(self, experiment_id: Optional[str] = None) -> Tuple[int, float, float]:
        """(样本数, 错误率%, 平均耗时ms)"""
        with self._state_lock:
            self._prune_outcomes(self._clock())
            items = [o for o in self._outcomes if experiment_id is None or o.experiment_id == experiment_id]
        if not items:
            return 0, 0.0, 0.0
        failures = sum(1 for o in items if not o.success)
        avg_ms = sum(o.duration_ms for o in items) / len(items)
        return len(items), failures / len(items) * 100, avg_ms

    async def _check_emergency_stop_conditions(self, duration_ms: float) -> None:
        if self._emergency_stop_active:
            return
        stops = self._config.emergency_stops

        if duration_ms > stops.max_latency_ms:
            await self.trigger_emergency_stop(
                f"Shadow execution latency {duration_ms:.0f}ms exceeded {stops.max_latency_ms:.0f}ms",
                "safety_governor",
            )
            return

        count, error_rate, _ = self._recent_stats()
        if count >= stops.min_sample_size and error_rate > stops.max_error_rate_percent:
            await self.trigger_emergency_stop(
                f"Shadow error rate {error_rate:.1f}% exceeded {stops.max_error_rate_percent:.1f}%",
                "safety_governor",
            )
            return

        metrics = self._resource_metrics
        if metrics is not None:
            usage = metrics.usage_percent(self._config.resource_limits.max_memory_mb)
            if usage > stops.max_resource_usage_percent:
                await self.trigger_emergency_stop(
                    f"Resource usage {usage:.1f}% exceeded {stops.max_resource_usage_percent:.0f}%",
                    "safety_governor",
                )

    async def evaluate_experiment_auto_stop(self, experiment_id: str, error_message: Optional[str] = None) -> bool:
        """评估实验是否应被自动停止；只记录候选事件供人工复核，不直接停止"""
        experiment = await self._repo.get_experiment(experiment_id)
        if experiment is None or experiment.status != ExperimentStatus.running:
            return False

        reasons: List[str] = []
        breaker = self._breakers.get(experiment_id)
        if breaker.state == BreakerState.open:
            reasons.append("Circuit breaker opened")

        count, error_rate, avg_ms = self._recent_stats(experiment_id)
        for cond in experiment.emergency_stop_conditions:
            if cond.metric == "error_rate" and count and error_rate / 100 > cond.threshold:
                reasons.append(f"error rate {error_rate:.1f}% above {cond.threshold:.2%}")
            elif cond.metric == "avg_execution_time_ms" and count and avg_ms > cond.threshold:
                reasons.append(f"avg execution time {avg_ms:.0f}ms above {cond.threshold:.0f}ms")

        if not reasons:
            return False
        logger.warning(f"⚠️ 实验 {experiment_id} 进入自动停止候选: {'; '.join(reasons)}")
        self._audit(
            "experiment_auto_stop_candidate",
            experimentId=experiment_id,
            reasons=reasons,
            errorMessage=error_message,
            failureCount=breaker.failure_count,
            errorRate=breaker.error_rate,
        )
        return True

    # ========================================
    # 紧急停止
    # ========================================
    async def trigger_emergency_stop(self, reason: str, triggered_by: str) -> int:
        """拉起全局紧急停止开关，并把所有 running 实验强制置为 stopped；返回被停止的实验数"""
        self._emergency_stop_active = True

        stopped = 0
        for experiment in await self._repo.list_experiments(ExperimentStatus.running):
            experiment.status = ExperimentStatus.stopped
            experiment.ended_at = utcnow()
            experiment.metadata["emergency_stop"] = {
                "triggered": True,
                "reason": reason,
                "triggeredBy": triggered_by,
                "timestamp": utcnow().isoformat(),
            }
            try:
                await self._repo.update_experiment(experiment)
                stopped += 1
            except Exception as exc:
                logger.error(f"紧急停止实验 {experiment.id} 失败: {exc}")
        self.invalidate_caches()

        logger.critical(f"🚨 紧急停止已触发: {reason} (by: {triggered_by})")
        self._audit("emergency_stop_triggered", reason=reason, triggeredBy=triggered_by, stoppedExperiments=stopped)
        await self._telemetry.publish(
            TelemetryTopic.emergency_stop,
            {"active": True, "reason": reason, "triggeredBy": triggered_by, "stoppedExperiments": stopped},
        )
        return stopped

    async def clear_emergency_stop(self, cleared_by: str, reason: str) -> SafetyStatus:
        """解除紧急停止；只要仍有 critical 检查就拒绝"""
        status = await self.get_comprehensive_safety_status()
        if not self._emergency_stop_active:
            logger.info("紧急停止未激活，无需解除")
            return status

        if status.critical_issues:
            self._audit(
                "emergency_stop_clear_rejected",
                clearedBy=cleared_by,
                reason=reason,
                criticalIssues=list(status.critical_issues),
            )
            raise SafetyViolationError(
                "Cannot clear emergency stop while critical issues remain: "
                + "; ".join(status.critical_issues),
                status.critical_issues,
            )

        self._emergency_stop_active = False
        logger.info(f"✅ 紧急停止已解除 (by: {cleared_by}, reason: {reason})")
        self._audit("emergency_stop_cleared", clearedBy=cleared_by, reason=reason)
        await self._telemetry.publish(
            TelemetryTopic.emergency_stop,
            {"active": False, "clearedBy": cleared_by, "reason": reason},
        )
        return await self.get_comprehensive_safety_status()

    # ========================================
    # 综合状态
    # ========================================
    async def refresh_resource_metrics(self) -> Optional[ResourceMetrics]:
        if self._sampler is None:
            return self._resource_metrics
        metrics = self._sampler.sample()
        with self._state_lock:
            self._resource_metrics = metrics
        return metrics

    async def get_comprehensive_safety_status(self) -> SafetyStatus:
        try:
            await self.refresh_resource_metrics()
        except Exception as exc:
            logger.warning(f"资源指标采集失败，沿用上一次读数: {exc}")

        count, error_rate, avg_ms = self._recent_stats()
        checks = {
            "resource_usage": self._check_resource_usage(),
            "circuit_breakers": self._check_circuit_breakers(),
            "production_isolation": self._check_isolation_status(),
            "performance": self._check_performance(avg_ms),
            "error_rates": self._check_error_rates(error_rate),
        }

        warnings = [c.message for c in checks.values() if c.status == CheckStatus.warning]
        critical = [c.message for c in checks.values() if c.status == CheckStatus.failed]
        recommendations = [
            _RECOMMENDATIONS[name] for name, c in checks.items() if c.status != CheckStatus.passed and name in _RECOMMENDATIONS
        ]

        if self._emergency_stop_active:
            level = SafetyLevel.emergency_stop
            recommendations.append("Resolve critical issues, then clear the emergency stop")
        elif critical:
            level = SafetyLevel.critical
        elif warnings:
            level = SafetyLevel.warning
        else:
            level = SafetyLevel.safe

        status = SafetyStatus(
            status=level,
            checks=checks,
            active_experiments=await self._active_experiments_cache.get(),
            recent_decisions=count,
            emergency_stop_active=self._emergency_stop_active,
            warnings=warnings,
            critical_issues=critical,
            recommendations=recommendations,
        )
        self._history.append(status)

        if level != self._last_level:
            self._last_level = level
            await self._telemetry.publish(TelemetryTopic.safety_status, status.to_dict())
        return status

    async def run_periodic_check(self) -> SafetyStatus:
        """定时自检：任一检查 critical 即自动触发紧急停止"""
        status = await self.get_comprehensive_safety_status()
        if status.critical_issues and not self._emergency_stop_active:
            await self.trigger_emergency_stop(
                "Periodic safety check: " + "; ".join(status.critical_issues),
                "periodic_safety_check",
            )
        return status

    def _check_resource_usage(self) -> SafetyCheck:
        metrics = self._resource_metrics
        if metrics is None:
            return SafetyCheck("resource_usage", CheckStatus.warning, 0.0, 0.0, "Resource metrics not available")

        max_mem = self._config.resource_limits.max_memory_mb
        mem_pct = metrics.memory_mb / max_mem * 100 if max_mem > 0 else 0.0
        usage = metrics.usage_percent(max_mem)
        detail = f"(Memory: {mem_pct:.1f}%, CPU: {metrics.cpu_percent:.1f}%)"
        if usage > 80:
            return SafetyCheck("resource_usage", CheckStatus.failed, usage, 80, f"Critical resource usage: {usage:.2f}% {detail}")
        if usage > 60:
            return SafetyCheck("resource_usage", CheckStatus.warning, usage, 80, f"High resource usage: {usage:.2f}% {detail}")
        return SafetyCheck("resource_usage", CheckStatus.passed, usage, 80, "Resource usage within limits")

    def _check_circuit_breakers(self) -> SafetyCheck:
        with self._state_lock:
            states = self._breakers.states()
        total = len(states)
        opened = sum(1 for s in states if s.state == BreakerState.open)
        pct = opened / total * 100 if total else 0.0
        if pct > 50:
            return SafetyCheck("circuit_breakers", CheckStatus.failed, pct, 50, f"{opened}/{total} circuit breakers open")
        if pct > 20:
            return SafetyCheck("circuit_breakers", CheckStatus.warning, pct, 50, f"{opened}/{total} circuit breakers open")
        return SafetyCheck("circuit_breakers", CheckStatus.passed, pct, 50, "All circuit breakers operational")

    def _check_isolation_status(self) -> SafetyCheck:
        iso = self._config.production_isolation
        score = sum(
            [
                iso.shadow_only_mode,
                not iso.allow_production_modification,
                iso.database_isolation,
                iso.network_isolation,
            ]
        )
        pct = score / 4 * 100
        if pct < 75:
            return SafetyCheck(
                "production_isolation", CheckStatus.failed, pct, 100,
                f"Insufficient production isolation: {score}/4 checks passing",
            )
        if pct < 100:
            return SafetyCheck(
                "production_isolation", CheckStatus.warning, pct, 100,
                f"Partial production isolation: {score}/4 checks passing",
            )
        return SafetyCheck("production_isolation", CheckStatus.passed, pct, 100, "Production isolation fully enabled")

    def _check_performance(self, avg_ms: float) -> SafetyCheck:
        if avg_ms > 1000:
            return SafetyCheck("performance", CheckStatus.failed, avg_ms, 1000, f"High shadow execution time: {avg_ms:.2f}ms")
        if avg_ms > 500:
            return SafetyCheck("performance", CheckStatus.warning, avg_ms, 1000, f"Elevated shadow execution time: {avg_ms:.2f}ms")
        return SafetyCheck("performance", CheckStatus.passed, avg_ms, 1000, "Performance impact minimal")

    def _check_error_rates(self, error_rate: float) -> SafetyCheck:
        if error_rate > 15:
            return SafetyCheck("error_rates", CheckStatus.failed, error_rate, 15, f"High error rate: {error_rate:.2f}%")
        if error_rate > 5:
            return SafetyCheck("error_rates", CheckStatus.warning, error_rate, 15, f"Elevated error rate: {error_rate:.2f}%")
        return SafetyCheck("error_rates", CheckStatus.passed, error_rate, 15, "Error rates within acceptable limits")

    # ========================================
    # 查询 / 运维
    # ========================================
    def get_safety_history(self, hours: float = 24) -> List[SafetyStatus]:
        cutoff = utcnow() - timedelta(hours=hours)
        return [s for s in self._history if s.timestamp >= cutoff]

    def get_circuit_breaker_states(self) -> List[dict]:
        with self._state_lock:
            return [s.to_dict() for s in self._breakers.states()]

    def get_circuit_breaker_state(self, experiment_id: str) -> BreakerState:
        with self._state_lock:
            return self._breakers.get(experiment_id).state

    async def get_experiment_breaker(self, experiment_id: str) -> dict:
        if await self._repo.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)
        with self._state_lock:
            return self._breakers.get(experiment_id).to_dict()

    def update_safety_config(self, config: SafetyConfig) -> None:
        """替换安全配置；所有熔断器重置，缓存按新 TTL 重建"""
        with self._state_lock:
            self._config = config
            self._breakers.reconfigure(config.circuit_breaker)
            self._history = deque(self._history, maxlen=config.monitoring.history_limit)
        self._build_caches()
        self._audit("safety_config_updated")
        logger.info("安全配置已更新，熔断器已重置")

    async def rebuild_circuit_breakers(self) -> int:
        """从监控窗口内的影子决策历史重建熔断器（进程重启后调用）"""
        window = self._config.circuit_breaker.monitoring_window_seconds
        since = datetime.fromtimestamp(self._clock() - window, tz=timezone.utc)
        decisions = await self._repo.list_shadow_decisions(since=since)
        with self._state_lock:
            replayed = self._breakers.rebuild_from_history(decisions)
        logger.info(f"熔断器已从历史重建: replayed={replayed}")
        return replayed

    def _audit(self, event: str, **details: Any) -> None:
        entry = {"event": event, "timestamp": utcnow().isoformat(), **details}
        self.audit_trail.append(entry)
        logger.bind(audit=True, event=event).warning(f"[SafetyEvent] {event}: {details}")
