"""
SQL 后端（SQLAlchemy 2.0 同步会话）

接口是 async 的；每次调用是一次短事务，丢到线程池里执行（asyncio.to_thread），
慢查询或慢提交不会卡住事件循环上的其它协程（包括影子策略的超时计时）；
数据库里统一存无时区的 UTC 时间，读出时补回 tzinfo。
"""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.shadow import (
    PropensityScoreRow,
    ProductionDecisionRow,
    QuestionRow,
    RegretAnalysisRow,
    ShadowDecisionRow,
    ShadowExperimentRow,
    ShadowMetricsRow,
    ShadowVariantRow,
)
from app.shadow.entities import (
    EmergencyStopCondition,
    Experiment,
    ExperimentResourceLimits,
    ExperimentVariant,
    ProductionDecision,
    PropensityScore,
    Question,
    RegretAnalysis,
    ShadowDecision,
    ShadowMetrics,
    TargetPopulation,
)
from app.shadow.enums import ExperimentStatus
from app.shadow.repository import ShadowRepository


def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


T = TypeVar("T")


def _offloaded(fn: Callable[..., T]) -> Callable[..., Awaitable[T]]:
    """把同步的会话方法包成协程，在默认线程池里执行"""

    @functools.wraps(fn)
    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, self, *args, **kwargs)

    return wrapper


# ========================================
# 行 <-> 领域对象
# ========================================
def _experiment_row(e: Experiment, row: Optional[ShadowExperimentRow] = None) -> ShadowExperimentRow:
    row = row or ShadowExperimentRow(id=e.id)
    row.name = e.name
    row.description = e.description
    row.status = e.status.value
    row.target_population = {
        "conversation_stages": list(e.target_population.conversation_stages),
        "min_message_count": e.target_population.min_message_count,
        "min_qualification_score": e.target_population.min_qualification_score,
        "regions": list(e.target_population.regions),
        "industry_verticals": list(e.target_population.industry_verticals),
    }
    row.traffic_allocation = e.traffic_allocation
    row.primary_metric = e.primary_metric
    row.secondary_metrics = list(e.secondary_metrics)
    row.minimum_sample_size = e.minimum_sample_size
    row.confidence_level = e.confidence_level
    row.minimum_detectable_effect = e.minimum_detectable_effect
    row.emergency_stop_conditions = [
        {"metric": c.metric, "threshold": c.threshold, "action": c.action} for c in e.emergency_stop_conditions
    ]
    row.resource_limits = {
        "max_memory_mb": e.resource_limits.max_memory_mb,
        "max_execution_time_ms": e.resource_limits.max_execution_time_ms,
        "max_concurrent_decisions": e.resource_limits.max_concurrent_decisions,
    }
    row.extra = dict(e.metadata)
    row.created_by = e.created_by
    row.created_at = _to_db(e.created_at)
    row.started_at = _to_db(e.started_at)
    row.ended_at = _to_db(e.ended_at)
    return row


def _experiment(row: ShadowExperimentRow) -> Experiment:
    return Experiment(
        id=row.id,
        name=row.name,
        description=row.description or "",
        status=ExperimentStatus(row.status),
        target_population=TargetPopulation(**(row.target_population or {})),
        traffic_allocation=row.traffic_allocation,
        primary_metric=row.primary_metric,
        secondary_metrics=list(row.secondary_metrics or []),
        minimum_sample_size=row.minimum_sample_size,
        confidence_level=row.confidence_level,
        minimum_detectable_effect=row.minimum_detectable_effect,
        emergency_stop_conditions=[EmergencyStopCondition(**c) for c in row.emergency_stop_conditions or []],
        resource_limits=ExperimentResourceLimits(**(row.resource_limits or {})),
        metadata=dict(row.extra or {}),
        created_by=row.created_by,
        created_at=_from_db(row.created_at),
        started_at=_from_db(row.started_at),
        ended_at=_from_db(row.ended_at),
    )


def _variant(row: ShadowVariantRow) -> ExperimentVariant:
    return ExperimentVariant(
        id=row.id,
        experiment_id=row.experiment_id,
        name=row.name,
        policy_type=row.policy_type,
        policy_config=dict(row.policy_config or {}),
        allocation=row.allocation,
        is_control=row.is_control,
        is_active=row.is_active,
        description=row.description or "",
        created_at=_from_db(row.created_at),
    )


def _decision(row: ShadowDecisionRow) -> ShadowDecision:
    return ShadowDecision(
        id=row.id,
        conversation_id=row.conversation_id,
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        production_decision_id=row.production_decision_id,
        shadow_action=row.shadow_action,
        shadow_question_id=row.shadow_question_id,
        shadow_reasoning=row.shadow_reasoning,
        utility_score=row.utility_score,
        exploration_value=row.exploration_value,
        confidence=row.confidence,
        propensity_score=row.propensity_score,
        propensity_score_id=row.propensity_score_id,
        execution_time_ms=row.execution_time_ms,
        error_occurred=row.error_occurred,
        error_message=row.error_message,
        resource_usage=dict(row.resource_usage or {}),
        conversation_stage=row.conversation_stage,
        region=row.region,
        timestamp=_from_db(row.timestamp),
    )


def _propensity(row: PropensityScoreRow) -> PropensityScore:
    return PropensityScore(
        id=row.id,
        conversation_id=row.conversation_id,
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        production_probability=row.production_probability,
        shadow_probability=row.shadow_probability,
        propensity_score=row.propensity_score,
        model_confidence=row.model_confidence,
        is_valid_for_ips=row.is_valid_for_ips,
        context_features=dict(row.context_features or {}),
        validation_notes=tuple(row.validation_notes or ()),
        timestamp=_from_db(row.timestamp),
    )


def _metrics(row: ShadowMetricsRow) -> ShadowMetrics:
    return ShadowMetrics(
        id=row.id,
        shadow_decision_id=row.shadow_decision_id,
        conversation_id=row.conversation_id,
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        engagement_score=row.engagement_score,
        qualification_score=row.qualification_score,
        technical_score=row.technical_score,
        emotional_score=row.emotional_score,
        cultural_score=row.cultural_score,
        shadow_expected_value=row.shadow_expected_value,
        advance_probability=row.advance_probability,
        counterfactual_scores=dict(row.counterfactual_scores or {}),
        alternative_outcomes=tuple(row.alternative_outcomes or ()),
        timestamp=_from_db(row.timestamp),
    )


def _regret(row: RegretAnalysisRow) -> RegretAnalysis:
    return RegretAnalysis(
        id=row.id,
        conversation_id=row.conversation_id,
        experiment_id=row.experiment_id,
        variant_id=row.variant_id,
        shadow_decision_id=row.shadow_decision_id,
        production_decision_id=row.production_decision_id,
        shadow_value=row.shadow_value,
        production_value=row.production_value,
        instantaneous_regret=row.instantaneous_regret,
        cumulative_regret=row.cumulative_regret,
        normalized_regret=row.normalized_regret,
        lower_bound=row.lower_bound,
        upper_bound=row.upper_bound,
        conversation_stage=row.conversation_stage,
        region=row.region,
        timestamp=_from_db(row.timestamp),
    )


def _production(row: ProductionDecisionRow) -> ProductionDecision:
    return ProductionDecision(
        id=row.id,
        conversation_id=row.conversation_id,
        action=row.action,
        action_probability=row.action_probability,
        expected_value=row.expected_value,
        qualification_score=row.qualification_score,
        timestamp=_from_db(row.timestamp),
    )


class SqlShadowRepository(ShadowRepository):
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ---------- experiments ----------
    @_offloaded
    def create_experiment(self, experiment: Experiment) -> Experiment:
        with self._session_factory() as db:
            row = _experiment_row(experiment)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _experiment(row)

    @_offloaded
    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._session_factory() as db:
            row = db.get(ShadowExperimentRow, experiment_id)
            return _experiment(row) if row else None

    @_offloaded
    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._session_factory() as db:
            stmt = select(ShadowExperimentRow).order_by(ShadowExperimentRow.created_at)
            if status is not None:
                stmt = stmt.where(ShadowExperimentRow.status == status.value)
            return [_experiment(r) for r in db.scalars(stmt).all()]

    @_offloaded
    def update_experiment(self, experiment: Experiment) -> Experiment:
        with self._session_factory() as db:
            row = db.get(ShadowExperimentRow, experiment.id)
            if row is None:
                raise KeyError(experiment.id)
            _experiment_row(experiment, row)
            db.commit()
            db.refresh(row)
            return _experiment(row)

    @_offloaded
    def count_experiments(self, status: ExperimentStatus) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(ShadowExperimentRow).where(ShadowExperimentRow.status == status.value)
            return int(db.scalar(stmt) or 0)

    # ---------- variants ----------
    @_offloaded
    def create_variant(self, variant: ExperimentVariant) -> ExperimentVariant:
        with self._session_factory() as db:
            row = ShadowVariantRow(
                id=variant.id,
                experiment_id=variant.experiment_id,
                name=variant.name,
                policy_type=variant.policy_type,
                policy_config=dict(variant.policy_config),
                allocation=variant.allocation,
                is_control=variant.is_control,
                is_active=variant.is_active,
                description=variant.description,
                created_at=_to_db(variant.created_at),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _variant(row)

    @_offloaded
    def get_variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        with self._session_factory() as db:
            row = db.get(ShadowVariantRow, variant_id)
            return _variant(row) if row else None

    @_offloaded
    def list_variants(self, experiment_id: str, *, active_only: bool = False) -> List[ExperimentVariant]:
        with self._session_factory() as db:
            stmt = (
                select(ShadowVariantRow)
                .where(ShadowVariantRow.experiment_id == experiment_id)
                .order_by(ShadowVariantRow.created_at)
            )
            if active_only:
                stmt = stmt.where(ShadowVariantRow.is_active.is_(True))
            return [_variant(r) for r in db.scalars(stmt).all()]

    # ---------- shadow decisions ----------
    @_offloaded
    def save_shadow_decision(self, decision: ShadowDecision) -> ShadowDecision:
        with self._session_factory() as db:
            db.add(
                ShadowDecisionRow(
                    id=decision.id,
                    conversation_id=decision.conversation_id,
                    experiment_id=decision.experiment_id,
                    variant_id=decision.variant_id,
                    production_decision_id=decision.production_decision_id,
                    shadow_action=decision.shadow_action,
                    shadow_question_id=decision.shadow_question_id,
                    shadow_reasoning=decision.shadow_reasoning,
                    utility_score=decision.utility_score,
                    exploration_value=decision.exploration_value,
                    confidence=decision.confidence,
                    propensity_score=decision.propensity_score,
                    propensity_score_id=decision.propensity_score_id,
                    execution_time_ms=decision.execution_time_ms,
                    error_occurred=decision.error_occurred,
                    error_message=decision.error_message,
                    resource_usage=dict(decision.resource_usage),
                    conversation_stage=decision.conversation_stage,
                    region=decision.region,
                    timestamp=_to_db(decision.timestamp),
                )
            )
            db.commit()
        return decision

    @_offloaded
    def get_shadow_decision(self, decision_id: str) -> Optional[ShadowDecision]:
        with self._session_factory() as db:
            row = db.get(ShadowDecisionRow, decision_id)
            return _decision(row) if row else None

    @_offloaded
    def list_shadow_decisions(
        self,
        *,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ShadowDecision]:
        if limit is not None and limit <= 0:
            return []
        with self._session_factory() as db:
            stmt = select(ShadowDecisionRow)
            if experiment_id is not None:
                stmt = stmt.where(ShadowDecisionRow.experiment_id == experiment_id)
            if variant_id is not None:
                stmt = stmt.where(ShadowDecisionRow.variant_id == variant_id)
            if conversation_id is not None:
                stmt = stmt.where(ShadowDecisionRow.conversation_id == conversation_id)
            if since is not None:
                stmt = stmt.where(ShadowDecisionRow.timestamp >= _to_db(since))
            if until is not None:
                stmt = stmt.where(ShadowDecisionRow.timestamp <= _to_db(until))
            if limit is not None:
                rows = db.scalars(stmt.order_by(ShadowDecisionRow.timestamp.desc()).limit(limit)).all()
                rows = list(reversed(rows))
            else:
                rows = db.scalars(stmt.order_by(ShadowDecisionRow.timestamp)).all()
            return [_decision(r) for r in rows]

    @_offloaded
    def count_shadow_decisions_since(self, since: datetime, experiment_id: Optional[str] = None) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(ShadowDecisionRow).where(ShadowDecisionRow.timestamp >= _to_db(since))
            if experiment_id is not None:
                stmt = stmt.where(ShadowDecisionRow.experiment_id == experiment_id)
            return int(db.scalar(stmt) or 0)

    # ---------- propensity / metrics ----------
    @_offloaded
    def save_propensity_score(self, score: PropensityScore) -> PropensityScore:
        with self._session_factory() as db:
            db.add(
                PropensityScoreRow(
                    id=score.id,
                    conversation_id=score.conversation_id,
                    experiment_id=score.experiment_id,
                    variant_id=score.variant_id,
                    production_probability=score.production_probability,
                    shadow_probability=score.shadow_probability,
                    propensity_score=score.propensity_score,
                    model_confidence=score.model_confidence,
                    is_valid_for_ips=score.is_valid_for_ips,
                    context_features=dict(score.context_features),
                    validation_notes=list(score.validation_notes),
                    timestamp=_to_db(score.timestamp),
                )
            )
            db.commit()
        return score

    @_offloaded
    def get_propensity_score(self, score_id: str) -> Optional[PropensityScore]:
        with self._session_factory() as db:
            row = db.get(PropensityScoreRow, score_id)
            return _propensity(row) if row else None

    @_offloaded
    def list_propensity_scores(self, experiment_id: str, variant_id: Optional[str] = None) -> List[PropensityScore]:
        with self._session_factory() as db:
            stmt = select(PropensityScoreRow).where(PropensityScoreRow.experiment_id == experiment_id)
            if variant_id is not None:
                stmt = stmt.where(PropensityScoreRow.variant_id == variant_id)
            return [_propensity(r) for r in db.scalars(stmt.order_by(PropensityScoreRow.timestamp)).all()]

    @_offloaded
    def save_shadow_metrics(self, metrics: ShadowMetrics) -> ShadowMetrics:
        with self._session_factory() as db:
            db.add(
                ShadowMetricsRow(
                    id=metrics.id,
                    shadow_decision_id=metrics.shadow_decision_id,
                    conversation_id=metrics.conversation_id,
                    experiment_id=metrics.experiment_id,
                    variant_id=metrics.variant_id,
                    engagement_score=metrics.engagement_score,
                    qualification_score=metrics.qualification_score,
                    technical_score=metrics.technical_score,
                    emotional_score=metrics.emotional_score,
                    cultural_score=metrics.cultural_score,
                    shadow_expected_value=metrics.shadow_expected_value,
                    advance_probability=metrics.advance_probability,
                    counterfactual_scores=dict(metrics.counterfactual_scores),
                    alternative_outcomes=[dict(o) for o in metrics.alternative_outcomes],
                    timestamp=_to_db(metrics.timestamp),
                )
            )
            db.commit()
        return metrics

    @_offloaded
    def get_shadow_metrics(self, shadow_decision_id: str) -> Optional[ShadowMetrics]:
        with self._session_factory() as db:
            stmt = select(ShadowMetricsRow).where(ShadowMetricsRow.shadow_decision_id == shadow_decision_id)
            row = db.scalars(stmt).first()
            return _metrics(row) if row else None

    # ---------- regret ----------
    @_offloaded
    def save_regret_analysis(self, record: RegretAnalysis) -> RegretAnalysis:
        with self._session_factory() as db:
            db.add(
                RegretAnalysisRow(
                    id=record.id,
                    conversation_id=record.conversation_id,
                    experiment_id=record.experiment_id,
                    variant_id=record.variant_id,
                    shadow_decision_id=record.shadow_decision_id,
                    production_decision_id=record.production_decision_id,
                    shadow_value=record.shadow_value,
                    production_value=record.production_value,
                    instantaneous_regret=record.instantaneous_regret,
                    cumulative_regret=record.cumulative_regret,
                    normalized_regret=record.normalized_regret,
                    lower_bound=record.lower_bound,
                    upper_bound=record.upper_bound,
                    conversation_stage=record.conversation_stage,
                    region=record.region,
                    timestamp=_to_db(record.timestamp),
                )
            )
            db.commit()
        return record

    @_offloaded
    def list_regret_analyses(
        self,
        *,
        experiment_id: str,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[RegretAnalysis]:
        with self._session_factory() as db:
            stmt = select(RegretAnalysisRow).where(RegretAnalysisRow.experiment_id == experiment_id)
            if variant_id is not None:
                stmt = stmt.where(RegretAnalysisRow.variant_id == variant_id)
            if conversation_id is not None:
                stmt = stmt.where(RegretAnalysisRow.conversation_id == conversation_id)
            return [_regret(r) for r in db.scalars(stmt.order_by(RegretAnalysisRow.timestamp)).all()]

    # ---------- production traces / candidate pool ----------
    @_offloaded
    def save_production_decision(self, decision: ProductionDecision) -> ProductionDecision:
        with self._session_factory() as db:
            # 同一个生产决策可能随多次影子调用重复上报
            row = db.get(ProductionDecisionRow, decision.id) or ProductionDecisionRow(id=decision.id)
            row.conversation_id = decision.conversation_id
            row.action = decision.action
            row.action_probability = decision.action_probability
            row.expected_value = decision.expected_value
            row.qualification_score = decision.qualification_score
            row.timestamp = _to_db(decision.timestamp)
            db.add(row)
            db.commit()
        return decision

    @_offloaded
    def list_production_decisions(self, conversation_id: str) -> List[ProductionDecision]:
        with self._session_factory() as db:
            stmt = (
                select(ProductionDecisionRow)
                .where(ProductionDecisionRow.conversation_id == conversation_id)
                .order_by(ProductionDecisionRow.timestamp)
            )
            return [_production(r) for r in db.scalars(stmt).all()]

    @_offloaded
    def save_question(self, question: Question) -> Question:
        with self._session_factory() as db:
            row = db.get(QuestionRow, question.id) or QuestionRow(id=question.id)
            row.text = question.text
            row.category = question.category
            row.success_rate = question.success_rate
            row.usage_count = question.usage_count
            row.metrics = dict(question.metrics)
            db.add(row)
            db.commit()
        return question

    @_offloaded
    def list_questions(self) -> List[Question]:
        with self._session_factory() as db:
            return [
                Question(
                    id=r.id,
                    text=r.text,
                    category=r.category,
                    success_rate=r.success_rate,
                    usage_count=r.usage_count,
                    metrics=dict(r.metrics or {}),
                )
                for r in db.scalars(select(QuestionRow).order_by(QuestionRow.id)).all()
            ]
