"""
按实验维度的熔断器

closed --(连续失败达到上限 / 窗口错误率超阈值)--> open
open   --(恢复时间到，下一次检查)--> half_open
half_open --(试探成功)--> closed（计数清零）
half_open --(试探失败)--> open（重新计时）
half_open --(试探放行后超过恢复时间仍无回报)--> 重新放行试探

注意：本类不加锁，由 SafetyGovernor 在临界区内串行调用。
状态只保存在内存里，进程重启后可用 rebuild_from_history 从近期影子决策重建。
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from app.shadow.entities import ShadowDecision
from app.shadow.enums import BreakerState
from app.shadow.safety_config import CircuitBreakerConfig


def _ts(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


@dataclass
class CircuitBreakerState:
    experiment_id: str
    state: BreakerState = BreakerState.closed
    failure_count: int = 0  # 连续失败次数
    total_requests: int = 0  # 监控窗口内请求数
    error_rate: float = 0.0  # 监控窗口内错误率（百分比）
    last_failure_at: Optional[float] = None
    next_retry_at: Optional[float] = None
    half_open_trials: int = 0
    trial_started_at: Optional[float] = None  # 最近一次 half_open 试探的放行时间
    window: Deque[Tuple[float, bool]] = field(default_factory=deque, repr=False)

    def to_dict(self) -> dict:
        return {
            "experimentId": self.experiment_id,
            "state": self.state.value,
            "failureCount": self.failure_count,
            "totalRequests": self.total_requests,
            "errorRate": round(self.error_rate, 2),
            "lastFailureAt": _ts(self.last_failure_at),
            "nextRetryAt": _ts(self.next_retry_at),
        }


class CircuitBreakerRegistry:
    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.time):
        self._config = config
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def reconfigure(self, config: CircuitBreakerConfig) -> None:
        self._config = config
        self.reset_all()

    def get(self, experiment_id: str) -> CircuitBreakerState:
        st = self._states.get(experiment_id)
        if st is None:
            st = CircuitBreakerState(experiment_id=experiment_id)
            self._states[experiment_id] = st
        return st

    def states(self) -> List[CircuitBreakerState]:
        return list(self._states.values())

    def reset_all(self) -> None:
        self._states.clear()

    def check(self, experiment_id: str) -> Tuple[bool, Optional[str]]:
        """执行前检查（不占用试探名额）；open 且恢复时间已到时切到 half_open"""
        st = self.get(experiment_id)
        now = self._clock()

        if st.state == BreakerState.open:
            if st.next_retry_at is not None and now >= st.next_retry_at:
                st.state = BreakerState.half_open
                st.half_open_trials = 0
                st.trial_started_at = None
                logger.info(f"[CircuitBreaker] {experiment_id} open -> half_open")
            else:
                remaining = max(0.0, (st.next_retry_at or now) - now)
                return False, (
                    f"Circuit breaker open for experiment {experiment_id} "
                    f"(retry in {remaining:.0f}s)"
                )

        if st.state == BreakerState.half_open and st.half_open_trials >= self._config.half_open_trials:
            # 试探名额是有租期的：放行后迟迟没有回报结果，过了恢复时间就重新放行
            lease_at = st.trial_started_at
            if lease_at is not None and now - lease_at >= self._config.recovery_seconds:
                st.half_open_trials = 0
                st.trial_started_at = None
                logger.warning(f"[CircuitBreaker] {experiment_id} half_open trial lease expired, re-granting")
                return True, None
            return False, f"Circuit breaker half-open for experiment {experiment_id}: trial in progress"

        return True, None

    def try_acquire(self, experiment_id: str) -> Tuple[bool, Optional[str]]:
        """放行一次执行；half_open 下会占用一个试探名额"""
        allowed, reason = self.check(experiment_id)
        if not allowed:
            return allowed, reason
        st = self.get(experiment_id)
        if st.state == BreakerState.half_open:
            st.half_open_trials += 1
            st.trial_started_at = self._clock()
        return True, None

    def record(self, experiment_id: str, success: bool, at: Optional[float] = None) -> BreakerState:
        st = self.get(experiment_id)
        now = self._clock() if at is None else at
        self._push(st, now, success)

        if success:
            if st.state == BreakerState.half_open:
                self._close(st)
                logger.info(f"[CircuitBreaker] {experiment_id} half_open -> closed")
            elif st.state == BreakerState.closed:
                st.failure_count = 0
            return st.state

        st.failure_count += 1
        st.last_failure_at = now

        if st.state == BreakerState.half_open:
            self._open(st, now)
            logger.warning(f"[CircuitBreaker] {experiment_id} half_open -> open (trial failed)")
        elif st.state == BreakerState.closed and self._should_open(st):
            self._open(st, now)
            logger.warning(
                f"[CircuitBreaker] {experiment_id} closed -> open "
                f"(failures={st.failure_count}, errorRate={st.error_rate:.1f}%)"
            )
        return st.state

    def rebuild_from_history(self, decisions: Iterable[ShadowDecision]) -> int:
        """按时间顺序回放近期影子决策结果，重建熔断器状态"""
        self.reset_all()
        horizon = self._clock() - self._config.monitoring_window_seconds
        replayed = 0
        for d in sorted(decisions, key=lambda x: x.timestamp):
            at = d.timestamp.timestamp()
            if at < horizon:
                continue
            self.record(d.experiment_id, not d.error_occurred, at=at)
            replayed += 1
        return replayed

    # ---------- internal ----------
    def _push(self, st: CircuitBreakerState, now: float, success: bool) -> None:
        st.window.append((now, success))
        horizon = now - self._config.monitoring_window_seconds
        while st.window and st.window[0][0] < horizon:
            st.window.popleft()
        st.total_requests = len(st.window)
        failures = sum(1 for _, ok in st.window if not ok)
        st.error_rate = failures / st.total_requests * 100 if st.total_requests else 0.0

    def _should_open(self, st: CircuitBreakerState) -> bool:
        if st.failure_count >= self._config.consecutive_failure_limit:
            return True
        return (
            st.total_requests >= self._config.min_requests
            and st.error_rate >= self._config.error_threshold_percent
        )

    def _open(self, st: CircuitBreakerState, now: float) -> None:
        st.state = BreakerState.open
        st.next_retry_at = now + self._config.recovery_seconds
        st.half_open_trials = 0
        st.trial_started_at = None

    def _close(self, st: CircuitBreakerState) -> None:
        st.state = BreakerState.closed
        st.failure_count = 0
        st.error_rate = 0.0
        st.total_requests = 0
        st.next_retry_at = None
        st.half_open_trials = 0
        st.trial_started_at = None
        st.window.clear()
