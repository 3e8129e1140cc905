"""
影子决策引擎

对每一个生产决策事件：
  1. 找出适用的实验（目标人群匹配 + 会话哈希落在流量比例内）；
  2. 对每个 (实验, 变体) 并行执行：安全放行 -> 隔离上下文 -> 带超时执行策略
     -> 计算倾向得分 -> 落库影子决策 -> 计算影子指标 -> 回报安全治理；
  3. 等所有分支结束（成功或失败互不影响）后返回结果。

对调用方（生产路径）永不抛异常。
"""

from __future__ import annotations

import asyncio
import copy
import math
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from app.shadow.entities import (
    DecisionContext,
    Experiment,
    ExperimentVariant,
    ProductionDecision,
    PropensityScore,
    Question,
    QuestionCandidate,
    ShadowDecision,
    ShadowExecutionResult,
    ShadowMetrics,
    TargetPopulation,
)
from app.shadow.enums import ExperimentStatus
from app.shadow.hashing import should_include_in_experiment
from app.shadow.policies import select_question
from app.shadow.repository import ShadowRepository
from app.shadow.safety import SafetyGovernor
from app.shadow.stats import clamp


class ProductionPolicyView(Protocol):
    """生产策略的只读视图：给出生产策略在该上下文下采取某动作的概率"""

    async def action_probability(self, context: DecisionContext, action: Optional[str]) -> float: ...


class MetricsProvider(Protocol):
    """指标计算服务：提供构造反事实影子指标所需的维度得分"""

    async def dimension_scores(self, context: DecisionContext) -> Dict[str, float]: ...


class ContextMetricsProvider:
    """默认实现：直接读取上下文里的态势快照"""

    async def dimension_scores(self, context: DecisionContext) -> Dict[str, float]:
        s = context.state
        return {
            "engagement": s.engagement,
            "qualification": s.qualification,
            "technical": s.technical,
            "emotional": s.emotional,
            "cultural": s.cultural,
        }


class RegretRecorder(Protocol):
    async def calculate_decision_regret(self, decision: ShadowDecision, metrics: ShadowMetrics) -> Any: ...


def matches_target_population(population: TargetPopulation, context: DecisionContext) -> bool:
    if population.conversation_stages and context.conversation_stage not in population.conversation_stages:
        return False
    if population.min_message_count is not None and context.state.message_count < population.min_message_count:
        return False
    if (
        population.min_qualification_score is not None
        and context.state.qualification < population.min_qualification_score
    ):
        return False
    if population.regions and context.region not in population.regions:
        return False
    if population.industry_verticals and context.industry_vertical not in population.industry_verticals:
        return False
    return True


def isolate_context(context: DecisionContext) -> DecisionContext:
    """结构化深拷贝：影子策略拿到的上下文与生产路径不共享任何引用"""
    return copy.deepcopy(context)


class ShadowDecisionEngine:
    def __init__(
        self,
        repository: ShadowRepository,
        governor: SafetyGovernor,
        *,
        regret_recorder: Optional[RegretRecorder] = None,
        metrics_provider: Optional[MetricsProvider] = None,
        production_policy: Optional[ProductionPolicyView] = None,
        execution_timeout_ms: float = 1000,
        max_concurrent_executions: int = 10,
        default_production_probability: float = 0.5,
    ):
        self._repo = repository
        self._governor = governor
        self._regret = regret_recorder
        self._metrics = metrics_provider or ContextMetricsProvider()
        self._production_policy = production_policy
        self.execution_timeout_ms = execution_timeout_ms
        self.max_concurrent_executions = max_concurrent_executions
        self._default_production_probability = default_production_probability
        self._active_executions = 0

    @property
    def active_executions(self) -> int:
        return self._active_executions

    # ========================================
    # 对外入口
    # ========================================
    async def execute_shadow_decisions(
        self,
        conversation_id: str,
        context: DecisionContext,
        production_decision: Optional[ProductionDecision] = None,
    ) -> List[ShadowExecutionResult]:
        try:
            if production_decision is not None:
                await self._repo.save_production_decision(production_decision)

            experiments = await self.get_applicable_experiments(conversation_id, context)
            if not experiments:
                return []

            pool = tuple(await self._repo.list_questions())
            pairs: List[tuple[Experiment, ExperimentVariant]] = []
            for experiment in experiments:
                for variant in await self._repo.list_variants(experiment.id, active_only=True):
                    pairs.append((experiment, variant))

            settled = await asyncio.gather(
                *(self._run_pair(exp, var, conversation_id, context, pool, production_decision) for exp, var in pairs),
                return_exceptions=True,
            )

            results: List[ShadowExecutionResult] = []
            for (exp, var), outcome in zip(pairs, settled):
                if isinstance(outcome, BaseException):
                    logger.error(f"影子执行分支异常 experiment={exp.id} variant={var.id}: {outcome!r}")
                    continue
                if outcome is not None:
                    results.append(outcome)
            return results
        except Exception as exc:
            logger.error(f"影子决策执行失败 conversation={conversation_id}: {exc}")
            return []

    async def get_applicable_experiments(self, conversation_id: str, context: DecisionContext) -> List[Experiment]:
        running = await self._repo.list_experiments(ExperimentStatus.running)
        return [
            e
            for e in running
            if matches_target_population(e.target_population, context)
            and should_include_in_experiment(conversation_id, e.traffic_allocation)
        ]

    # ========================================
    # 单个 (实验, 变体)
    # ========================================
    async def _run_pair(
        self,
        experiment: Experiment,
        variant: ExperimentVariant,
        conversation_id: str,
        context: DecisionContext,
        pool: Sequence[Question],
        production_decision: Optional[ProductionDecision],
    ) -> Optional[ShadowExecutionResult]:
        # 全局并发上限：满了直接跳过，不排队
        if self._active_executions >= self.max_concurrent_executions:
            logger.info(
                f"影子并发已达上限({self.max_concurrent_executions})，跳过 "
                f"experiment={experiment.id} variant={variant.id} conversation={conversation_id}"
            )
            return None
        self._active_executions += 1
        try:
            clearance = await self._governor.perform_pre_execution_safety_check(experiment.id, conversation_id)
            if not clearance.allowed:
                logger.warning(
                    f"影子执行被安全治理拒绝 experiment={experiment.id} variant={variant.id}: {clearance.reason}"
                )
                return None
            return await self.execute_shadow_decision(
                experiment, variant, conversation_id, context, pool, production_decision
            )
        finally:
            self._active_executions -= 1

    async def execute_shadow_decision(
        self,
        experiment: Experiment,
        variant: ExperimentVariant,
        conversation_id: str,
        context: DecisionContext,
        pool: Sequence[Question],
        production_decision: Optional[ProductionDecision] = None,
    ) -> ShadowExecutionResult:
        start = time.perf_counter()
        isolated = context
        timeout_s = self.execution_timeout_ms / 1000

        try:
            isolated = isolate_context(context)
            candidate = await asyncio.wait_for(
                select_question(variant.policy_type, isolated, variant.policy_config, pool),
                timeout=timeout_s,
            )
            propensity = await self.calculate_propensity_score(
                conversation_id=conversation_id,
                experiment_id=experiment.id,
                variant_id=variant.id,
                context=isolated,
                candidate=candidate,
                production_decision=production_decision,
            )
            await self._repo.save_propensity_score(propensity)

            elapsed_ms = (time.perf_counter() - start) * 1000
            decision = ShadowDecision(
                conversation_id=conversation_id,
                experiment_id=experiment.id,
                variant_id=variant.id,
                production_decision_id=production_decision.id if production_decision else None,
                shadow_action=candidate.selected_action if candidate else "no_action",
                shadow_question_id=candidate.question.id if candidate else None,
                shadow_reasoning=candidate.reasoning if candidate else "No eligible question available",
                utility_score=candidate.utility_score if candidate else 0.0,
                exploration_value=candidate.exploration_value if candidate else 0.0,
                confidence=candidate.confidence if candidate else 0.0,
                execution_time_ms=elapsed_ms,
                propensity_score=propensity.propensity_score,
                propensity_score_id=propensity.id,
                resource_usage=self._resource_snapshot(),
                conversation_stage=isolated.conversation_stage,
                region=isolated.region,
            )
            await self._repo.save_shadow_decision(decision)

            metrics = None
            if candidate is not None:
                metrics = await self.calculate_shadow_metrics(decision, candidate, isolated)
                await self._repo.save_shadow_metrics(metrics)
                await self._record_regret(decision, metrics)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            if isinstance(exc, asyncio.TimeoutError):
                message = f"Shadow policy timed out after {self.execution_timeout_ms:.0f}ms"
            else:
                message = f"{type(exc).__name__}: {exc}"
            logger.error(f"影子决策失败 experiment={experiment.id} variant={variant.id}: {message}")
            failed = await self._save_failed_decision(
                experiment, variant, conversation_id, isolated, production_decision, elapsed_ms, message
            )
            await self._report(experiment.id, False, elapsed_ms, message)
            return ShadowExecutionResult(
                shadow_decision=failed,
                execution_time_ms=elapsed_ms,
                error_occurred=True,
                error_message=message,
            )

        await self._report(experiment.id, True, elapsed_ms)
        return ShadowExecutionResult(
            shadow_decision=decision,
            execution_time_ms=elapsed_ms,
            shadow_metrics=metrics,
            propensity_score=propensity,
        )

    async def _save_failed_decision(
        self,
        experiment: Experiment,
        variant: ExperimentVariant,
        conversation_id: str,
        context: DecisionContext,
        production_decision: Optional[ProductionDecision],
        elapsed_ms: float,
        message: str,
    ) -> ShadowDecision:
        failed = ShadowDecision(
            conversation_id=conversation_id,
            experiment_id=experiment.id,
            variant_id=variant.id,
            production_decision_id=production_decision.id if production_decision else None,
            shadow_action="error",
            shadow_reasoning=f"Shadow decision failed: {message}",
            execution_time_ms=elapsed_ms,
            error_occurred=True,
            error_message=message,
            resource_usage=self._resource_snapshot(),
            conversation_stage=context.conversation_stage,
            region=context.region,
        )
        try:
            await self._repo.save_shadow_decision(failed)
        except Exception as exc:
            logger.error(f"失败影子决策落库失败 experiment={experiment.id}: {exc}")
        return failed

    async def _report(self, experiment_id: str, success: bool, elapsed_ms: float, error: Optional[str] = None) -> None:
        try:
            await self._governor.record_shadow_decision_outcome(experiment_id, success, elapsed_ms, error)
        except Exception as exc:
            logger.error(f"回报安全治理失败 experiment={experiment_id}: {exc}")

    async def _record_regret(self, decision: ShadowDecision, metrics: ShadowMetrics) -> None:
        if self._regret is None:
            return
        try:
            await self._regret.calculate_decision_regret(decision, metrics)
        except Exception as exc:
            logger.warning(f"regret 计算失败 decision={decision.id}: {exc}")

    def _resource_snapshot(self) -> Dict[str, float]:
        metrics = self._governor.resource_metrics
        snapshot: Dict[str, float] = {"activeExecutions": float(self._active_executions)}
        if metrics is not None:
            snapshot["memoryMb"] = round(metrics.memory_mb, 2)
            snapshot["cpuPercent"] = round(metrics.cpu_percent, 2)
        return snapshot

    # ========================================
    # 倾向得分 / 影子指标
    # ========================================
    async def calculate_propensity_score(
        self,
        *,
        conversation_id: str,
        experiment_id: str,
        variant_id: str,
        context: DecisionContext,
        candidate: Optional[QuestionCandidate],
        production_decision: Optional[ProductionDecision] = None,
    ) -> PropensityScore:
        features = {
            "messageCount": context.state.message_count,
            "engagementScore": context.state.engagement,
            "qualificationScore": context.state.qualification,
            "conversationStage": context.conversation_stage,
            "culturalScore": context.state.cultural,
        }
        try:
            production_p = await self._production_probability(context, production_decision)
            shadow_p = clamp(candidate.total_score, 0.1, 0.9) if candidate else 0.1
            propensity = production_p / shadow_p if shadow_p > 0 else 0.0

            notes: List[str] = []
            valid = math.isfinite(propensity) and 0 < propensity < 10
            if not valid:
                notes.append(f"Propensity {propensity:.4f} outside (0, 10); excluded from IPS")
            if candidate is None:
                notes.append("No candidate selected; shadow probability floored at 0.1")

            return PropensityScore(
                conversation_id=conversation_id,
                experiment_id=experiment_id,
                variant_id=variant_id,
                production_probability=production_p,
                shadow_probability=shadow_p,
                propensity_score=propensity,
                model_confidence=min(production_p, shadow_p),
                is_valid_for_ips=valid,
                context_features=features,
                validation_notes=tuple(notes),
            )
        except Exception as exc:
            logger.warning(f"倾向得分计算失败，使用中性默认值 experiment={experiment_id}: {exc}")
            return PropensityScore(
                conversation_id=conversation_id,
                experiment_id=experiment_id,
                variant_id=variant_id,
                production_probability=0.5,
                shadow_probability=0.5,
                propensity_score=1.0,
                model_confidence=0.5,
                is_valid_for_ips=False,
                context_features=features,
                validation_notes=(f"Propensity calculation failed: {exc}", "Using neutral default propensity"),
            )

    async def _production_probability(
        self, context: DecisionContext, production_decision: Optional[ProductionDecision]
    ) -> float:
        if production_decision is not None and production_decision.action_probability is not None:
            p = production_decision.action_probability
        elif self._production_policy is not None:
            action = production_decision.action if production_decision else None
            p = await self._production_policy.action_probability(context, action)
        else:
            p = self._default_production_probability
        if not 0 < p <= 1:
            raise ValueError(f"production probability out of range: {p}")
        return p

    async def calculate_shadow_metrics(
        self,
        decision: ShadowDecision,
        candidate: QuestionCandidate,
        context: DecisionContext,
    ) -> ShadowMetrics:
        scores = await self._metrics.dimension_scores(context)
        qualification = scores.get("qualification", 0.0)
        return ShadowMetrics(
            shadow_decision_id=decision.id,
            conversation_id=decision.conversation_id,
            experiment_id=decision.experiment_id,
            variant_id=decision.variant_id,
            engagement_score=scores.get("engagement", 0.0),
            qualification_score=qualification,
            technical_score=scores.get("technical", 0.0),
            emotional_score=scores.get("emotional", 0.0),
            cultural_score=scores.get("cultural", 0.0),
            shadow_expected_value=qualification * 10000 * (candidate.utility_score + 1),
            advance_probability=min(0.95, qualification + candidate.confidence * 0.2),
            counterfactual_scores={
                "no_action": qualification,
                "alternative_question": qualification * 0.9,
                "selected_action": candidate.total_score,
            },
            alternative_outcomes=(
                {"action": "no_action", "expectedOutcome": 0.0, "probability": 0.1},
                {"action": "standard_question", "expectedOutcome": 0.5, "probability": 0.6},
                {"action": candidate.selected_action, "expectedOutcome": candidate.total_score, "probability": 0.3},
            ),
            timestamp=decision.timestamp,
        )
