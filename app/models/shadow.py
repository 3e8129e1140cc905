from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class ShadowExperimentRow(Base):
    __tablename__ = "shadow_experiments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256))
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), index=True, default="draft")
    target_population: Mapped[dict] = mapped_column(JSON)
    traffic_allocation: Mapped[float] = mapped_column(Float, default=0.1)
    primary_metric: Mapped[str] = mapped_column(String(64), default="qualification_score")
    secondary_metrics: Mapped[list] = mapped_column(JSON)
    minimum_sample_size: Mapped[int] = mapped_column(Integer, default=100)
    confidence_level: Mapped[float] = mapped_column(Float, default=0.95)
    minimum_detectable_effect: Mapped[float] = mapped_column(Float, default=0.05)
    emergency_stop_conditions: Mapped[list] = mapped_column(JSON)
    resource_limits: Mapped[dict] = mapped_column(JSON)
    # metadata 是 declarative 保留名
    extra: Mapped[dict] = mapped_column("metadata", JSON)
    created_by: Mapped[str] = mapped_column(String(128), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ShadowVariantRow(Base):
    __tablename__ = "shadow_variants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256))
    policy_type: Mapped[str] = mapped_column(String(64))
    policy_config: Mapped[dict] = mapped_column(JSON)
    allocation: Mapped[float] = mapped_column(Float, default=0.5)
    is_control: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ShadowDecisionRow(Base):
    """影子决策日志，只追加"""

    __tablename__ = "shadow_decisions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), index=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    variant_id: Mapped[str] = mapped_column(String(64), index=True)
    production_decision_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shadow_action: Mapped[str] = mapped_column(Text)
    shadow_question_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shadow_reasoning: Mapped[str] = mapped_column(Text)
    utility_score: Mapped[float] = mapped_column(Float, default=0.0)
    exploration_value: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    propensity_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    propensity_score_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    execution_time_ms: Mapped[float] = mapped_column(Float)
    error_occurred: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    resource_usage: Mapped[dict] = mapped_column(JSON)
    conversation_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True, default=datetime.utcnow)


class PropensityScoreRow(Base):
    __tablename__ = "shadow_propensity_scores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), index=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    variant_id: Mapped[str] = mapped_column(String(64), index=True)
    production_probability: Mapped[float] = mapped_column(Float)
    shadow_probability: Mapped[float] = mapped_column(Float)
    propensity_score: Mapped[float] = mapped_column(Float)
    model_confidence: Mapped[float] = mapped_column(Float)
    is_valid_for_ips: Mapped[bool] = mapped_column(Boolean)
    context_features: Mapped[dict] = mapped_column(JSON)
    validation_notes: Mapped[list] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True, default=datetime.utcnow)


class ShadowMetricsRow(Base):
    __tablename__ = "shadow_metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    shadow_decision_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    conversation_id: Mapped[str] = mapped_column(String(128), index=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    variant_id: Mapped[str] = mapped_column(String(64), index=True)
    engagement_score: Mapped[float] = mapped_column(Float)
    qualification_score: Mapped[float] = mapped_column(Float)
    technical_score: Mapped[float] = mapped_column(Float)
    emotional_score: Mapped[float] = mapped_column(Float)
    cultural_score: Mapped[float] = mapped_column(Float)
    shadow_expected_value: Mapped[float] = mapped_column(Float)
    advance_probability: Mapped[float] = mapped_column(Float)
    counterfactual_scores: Mapped[dict] = mapped_column(JSON)
    alternative_outcomes: Mapped[list] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class RegretAnalysisRow(Base):
    __tablename__ = "shadow_regret_analyses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), index=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    variant_id: Mapped[str] = mapped_column(String(64), index=True)
    shadow_decision_id: Mapped[str] = mapped_column(String(64))
    production_decision_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shadow_value: Mapped[float] = mapped_column(Float)
    production_value: Mapped[float] = mapped_column(Float)
    instantaneous_regret: Mapped[float] = mapped_column(Float)
    cumulative_regret: Mapped[float] = mapped_column(Float)
    normalized_regret: Mapped[float] = mapped_column(Float)
    lower_bound: Mapped[float] = mapped_column(Float)
    upper_bound: Mapped[float] = mapped_column(Float)
    conversation_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True, default=datetime.utcnow)


class ProductionDecisionRow(Base):
    """生产决策轨迹（regret 配对用）"""

    __tablename__ = "shadow_production_decisions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), index=True)
    action: Mapped[str] = mapped_column(Text)
    action_probability: Mapped[float | None] = mapped_column(Float, nullable=True)
    expected_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    qualification_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True, default=datetime.utcnow)


class QuestionRow(Base):
    __tablename__ = "shadow_questions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    text: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(64), index=True)
    success_rate: Mapped[float] = mapped_column(Float, default=0.5)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    metrics: Mapped[dict] = mapped_column(JSON)
