from __future__ import annotations

from enum import Enum


class ExperimentStatus(str, Enum):
    draft = "draft"
    running = "running"
    paused = "paused"
    completed = "completed"
    stopped = "stopped"  # forced by emergency stop


class PolicyType(str, Enum):
    thompson_sampling = "thompson_sampling"
    epsilon_greedy = "epsilon_greedy"
    cultural_adaptive = "cultural_adaptive"
    budget_focused = "budget_focused"


class BreakerState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


class SafetyLevel(str, Enum):
    safe = "safe"
    warning = "warning"
    critical = "critical"
    emergency_stop = "emergency_stop"


class CheckStatus(str, Enum):
    passed = "pass"
    warning = "warning"
    failed = "fail"


class TruncationMethod(str, Enum):
    percentile = "percentile"
    threshold = "threshold"
    adaptive = "adaptive"
    none = "none"


class Severity(str, Enum):
    warning = "warning"
    error = "error"


class StopRecommendation(str, Enum):
    continue_ = "continue"
    stop_winning = "stop_winning"  # stop, adopt winning variant
    stop_losing = "stop_losing"  # stop, reject variant
