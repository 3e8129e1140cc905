"""影子实验的领域对象。

- Experiment / ExperimentVariant：运维创建，只允许状态流转这一种修改；
- ShadowDecision / PropensityScore / ShadowMetrics / RegretAnalysis：写入后不可变（append-only）；
- DecisionContext：生产决策上下文，影子执行前会被深拷贝成隔离快照。
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from app.shadow.enums import ExperimentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ========================================
# 实验与变体
# ========================================
@dataclass
class TargetPopulation:
    """目标人群谓词；空列表 / None 表示不限制"""

    conversation_stages: list[str] = field(default_factory=list)
    min_message_count: Optional[int] = None
    min_qualification_score: Optional[float] = None
    regions: list[str] = field(default_factory=list)
    industry_verticals: list[str] = field(default_factory=list)


@dataclass
class EmergencyStopCondition:
    """实验级自动停止条件，metric ∈ {error_rate, avg_execution_time_ms}"""

    metric: str
    threshold: float
    action: str = "stop"


@dataclass
class ExperimentResourceLimits:
    max_memory_mb: Optional[float] = None
    max_execution_time_ms: Optional[float] = None
    max_concurrent_decisions: Optional[int] = None


@dataclass
class Experiment:
    name: str
    id: str = field(default_factory=lambda: new_id("exp"))
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.draft
    target_population: TargetPopulation = field(default_factory=TargetPopulation)
    traffic_allocation: float = 0.1
    primary_metric: str = "qualification_score"
    secondary_metrics: list[str] = field(default_factory=list)
    minimum_sample_size: int = 100
    confidence_level: float = 0.95
    minimum_detectable_effect: float = 0.05
    emergency_stop_conditions: list[EmergencyStopCondition] = field(default_factory=list)
    resource_limits: ExperimentResourceLimits = field(default_factory=ExperimentResourceLimits)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class ExperimentVariant:
    experiment_id: str
    name: str
    policy_type: str
    id: str = field(default_factory=lambda: new_id("var"))
    policy_config: dict[str, Any] = field(default_factory=dict)
    allocation: float = 0.5
    is_control: bool = False
    is_active: bool = True
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)


# ========================================
# 决策上下文（生产侧输入）
# ========================================
@dataclass
class SituationState:
    """当前会话的态势快照：各维度得分 0-1，以及细分信号（例如 budget 强度）"""

    message_count: int = 0
    engagement: float = 0.0
    qualification: float = 0.0
    technical: float = 0.0
    emotional: float = 0.0
    cultural: float = 0.0
    signals: dict[str, float] = field(default_factory=dict)


@dataclass
class DecisionContext:
    conversation_id: str
    state: SituationState = field(default_factory=SituationState)
    conversation_stage: str = "discovery"
    message_history: list[dict[str, Any]] = field(default_factory=list)
    previous_questions: list[str] = field(default_factory=list)
    region: Optional[str] = None
    industry_vertical: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Question:
    """候选动作池里的一个问题；池是共享只读的"""

    id: str
    text: str
    category: str
    success_rate: float = 0.5
    usage_count: int = 0
    metrics: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class QuestionCandidate:
    question: Question
    utility_score: float
    exploration_value: float
    total_score: float
    reasoning: str
    confidence: float
    selected_action: str


@dataclass(frozen=True)
class ProductionDecision:
    """生产决策的轨迹引用（用于倾向得分与 regret 配对）"""

    id: str
    conversation_id: str
    action: str
    timestamp: datetime = field(default_factory=utcnow)
    action_probability: Optional[float] = None
    expected_value: Optional[float] = None
    qualification_score: Optional[float] = None


# ========================================
# 影子决策日志（写入后不可变）
# ========================================
@dataclass(frozen=True)
class PropensityScore:
    conversation_id: str
    experiment_id: str
    variant_id: str
    production_probability: float
    shadow_probability: float
    propensity_score: float
    model_confidence: float
    is_valid_for_ips: bool
    context_features: Mapping[str, Any] = field(default_factory=dict)
    validation_notes: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: new_id("ps"))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ShadowDecision:
    conversation_id: str
    experiment_id: str
    variant_id: str
    shadow_action: str
    shadow_reasoning: str
    execution_time_ms: float
    id: str = field(default_factory=lambda: new_id("sd"))
    timestamp: datetime = field(default_factory=utcnow)
    production_decision_id: Optional[str] = None
    shadow_question_id: Optional[str] = None
    utility_score: float = 0.0
    exploration_value: float = 0.0
    confidence: float = 0.0
    propensity_score: Optional[float] = None
    propensity_score_id: Optional[str] = None
    error_occurred: bool = False
    error_message: Optional[str] = None
    resource_usage: Mapping[str, float] = field(default_factory=dict)
    conversation_stage: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class ShadowMetrics:
    shadow_decision_id: str
    conversation_id: str
    experiment_id: str
    variant_id: str
    engagement_score: float
    qualification_score: float
    technical_score: float
    emotional_score: float
    cultural_score: float
    shadow_expected_value: float
    advance_probability: float
    counterfactual_scores: Mapping[str, float] = field(default_factory=dict)
    alternative_outcomes: tuple[Mapping[str, Any], ...] = ()
    id: str = field(default_factory=lambda: new_id("sm"))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RegretAnalysis:
    conversation_id: str
    experiment_id: str
    variant_id: str
    shadow_decision_id: str
    shadow_value: float
    production_value: float
    instantaneous_regret: float
    cumulative_regret: float
    normalized_regret: float
    lower_bound: float
    upper_bound: float
    production_decision_id: Optional[str] = None
    conversation_stage: Optional[str] = None
    region: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("rg"))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ShadowExecutionResult:
    shadow_decision: ShadowDecision
    execution_time_ms: float
    error_occurred: bool = False
    error_message: Optional[str] = None
    shadow_metrics: Optional[ShadowMetrics] = None
    propensity_score: Optional[PropensityScore] = None
