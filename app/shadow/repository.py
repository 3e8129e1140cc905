"""
影子实验持久化接口

引擎、安全治理、IPS 与 regret 分析都只通过这里读写数据；
每一次调用都是 async 边界，后端可以是进程内存储或 SQL。
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from app.shadow.entities import (
    Experiment,
    ExperimentVariant,
    ProductionDecision,
    PropensityScore,
    Question,
    RegretAnalysis,
    ShadowDecision,
    ShadowMetrics,
)
from app.shadow.enums import ExperimentStatus


class ShadowRepository(ABC):
    """持久化层接口"""

    # ---------- experiments ----------
    @abstractmethod
    async def create_experiment(self, experiment: Experiment) -> Experiment: ...

    @abstractmethod
    async def get_experiment(self, experiment_id: str) -> Optional[Experiment]: ...

    @abstractmethod
    async def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]: ...

    @abstractmethod
    async def update_experiment(self, experiment: Experiment) -> Experiment: ...

    async def count_experiments(self, status: ExperimentStatus) -> int:
        return len(await self.list_experiments(status))

    # ---------- variants ----------
    @abstractmethod
    async def create_variant(self, variant: ExperimentVariant) -> ExperimentVariant: ...

    @abstractmethod
    async def get_variant(self, variant_id: str) -> Optional[ExperimentVariant]: ...

    @abstractmethod
    async def list_variants(self, experiment_id: str, *, active_only: bool = False) -> List[ExperimentVariant]: ...

    # ---------- shadow decisions ----------
    @abstractmethod
    async def save_shadow_decision(self, decision: ShadowDecision) -> ShadowDecision: ...

    @abstractmethod
    async def get_shadow_decision(self, decision_id: str) -> Optional[ShadowDecision]: ...

    @abstractmethod
    async def list_shadow_decisions(
        self,
        *,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ShadowDecision]:
        """按 timestamp 升序返回；limit 取最新的 N 条（仍按升序排列）"""

    async def count_shadow_decisions_since(self, since: datetime, experiment_id: Optional[str] = None) -> int:
        return len(await self.list_shadow_decisions(experiment_id=experiment_id, since=since))

    # ---------- propensity / metrics ----------
    @abstractmethod
    async def save_propensity_score(self, score: PropensityScore) -> PropensityScore: ...

    @abstractmethod
    async def get_propensity_score(self, score_id: str) -> Optional[PropensityScore]: ...

    @abstractmethod
    async def list_propensity_scores(self, experiment_id: str, variant_id: Optional[str] = None) -> List[PropensityScore]: ...

    @abstractmethod
    async def save_shadow_metrics(self, metrics: ShadowMetrics) -> ShadowMetrics: ...

    @abstractmethod
    async def get_shadow_metrics(self, shadow_decision_id: str) -> Optional[ShadowMetrics]: ...

    # ---------- regret ----------
    @abstractmethod
    async def save_regret_analysis(self, record: RegretAnalysis) -> RegretAnalysis: ...

    @abstractmethod
    async def list_regret_analyses(
        self,
        *,
        experiment_id: str,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[RegretAnalysis]:
        """按 timestamp 升序返回"""

    # ---------- production traces / candidate pool ----------
    @abstractmethod
    async def save_production_decision(self, decision: ProductionDecision) -> ProductionDecision: ...

    @abstractmethod
    async def list_production_decisions(self, conversation_id: str) -> List[ProductionDecision]: ...

    @abstractmethod
    async def save_question(self, question: Question) -> Question: ...

    @abstractmethod
    async def list_questions(self) -> List[Question]: ...


class InMemoryShadowRepository(ShadowRepository):
    """进程内存储：默认后端，也用于测试。

    实验/变体读写时做深拷贝，调用方拿到的对象修改后必须显式 update 才会生效。
    """

    def __init__(self):
        self._experiments: Dict[str, Experiment] = {}
        self._variants: Dict[str, ExperimentVariant] = {}
        self._decisions: Dict[str, ShadowDecision] = {}
        self._propensities: Dict[str, PropensityScore] = {}
        self._metrics: Dict[str, ShadowMetrics] = {}  # key = shadow_decision_id
        self._regrets: List[RegretAnalysis] = []
        self._production: Dict[str, ProductionDecision] = {}
        self._questions: Dict[str, Question] = {}

    async def create_experiment(self, experiment: Experiment) -> Experiment:
        self._experiments[experiment.id] = copy.deepcopy(experiment)
        return copy.deepcopy(experiment)

    async def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        exp = self._experiments.get(experiment_id)
        return copy.deepcopy(exp) if exp else None

    async def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        items = [e for e in self._experiments.values() if status is None or e.status == status]
        items.sort(key=lambda e: e.created_at)
        return [copy.deepcopy(e) for e in items]

    async def update_experiment(self, experiment: Experiment) -> Experiment:
        if experiment.id not in self._experiments:
            raise KeyError(experiment.id)
        self._experiments[experiment.id] = copy.deepcopy(experiment)
        return copy.deepcopy(experiment)

    async def count_experiments(self, status: ExperimentStatus) -> int:
        return sum(1 for e in self._experiments.values() if e.status == status)

    async def create_variant(self, variant: ExperimentVariant) -> ExperimentVariant:
        self._variants[variant.id] = copy.deepcopy(variant)
        return copy.deepcopy(variant)

    async def get_variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        v = self._variants.get(variant_id)
        return copy.deepcopy(v) if v else None

    async def list_variants(self, experiment_id: str, *, active_only: bool = False) -> List[ExperimentVariant]:
        items = [
            v
            for v in self._variants.values()
            if v.experiment_id == experiment_id and (v.is_active or not active_only)
        ]
        items.sort(key=lambda v: v.created_at)
        return [copy.deepcopy(v) for v in items]

    async def save_shadow_decision(self, decision: ShadowDecision) -> ShadowDecision:
        self._decisions[decision.id] = decision
        return decision

    async def get_shadow_decision(self, decision_id: str) -> Optional[ShadowDecision]:
        return self._decisions.get(decision_id)

    async def list_shadow_decisions(
        self,
        *,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ShadowDecision]:
        items = [
            d
            for d in self._decisions.values()
            if (experiment_id is None or d.experiment_id == experiment_id)
            and (variant_id is None or d.variant_id == variant_id)
            and (conversation_id is None or d.conversation_id == conversation_id)
            and (since is None or d.timestamp >= since)
            and (until is None or d.timestamp <= until)
        ]
        items.sort(key=lambda d: d.timestamp)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    async def save_propensity_score(self, score: PropensityScore) -> PropensityScore:
        self._propensities[score.id] = score
        return score

    async def get_propensity_score(self, score_id: str) -> Optional[PropensityScore]:
        return self._propensities.get(score_id)

    async def list_propensity_scores(self, experiment_id: str, variant_id: Optional[str] = None) -> List[PropensityScore]:
        items = [
            p
            for p in self._propensities.values()
            if p.experiment_id == experiment_id and (variant_id is None or p.variant_id == variant_id)
        ]
        items.sort(key=lambda p: p.timestamp)
        return items

    async def save_shadow_metrics(self, metrics: ShadowMetrics) -> ShadowMetrics:
        self._metrics[metrics.shadow_decision_id] = metrics
        return metrics

    async def get_shadow_metrics(self, shadow_decision_id: str) -> Optional[ShadowMetrics]:
        return self._metrics.get(shadow_decision_id)

    async def save_regret_analysis(self, record: RegretAnalysis) -> RegretAnalysis:
        self._regrets.append(record)
        return record

    async def list_regret_analyses(
        self,
        *,
        experiment_id: str,
        variant_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[RegretAnalysis]:
        items = [
            r
            for r in self._regrets
            if r.experiment_id == experiment_id
            and (variant_id is None or r.variant_id == variant_id)
            and (conversation_id is None or r.conversation_id == conversation_id)
        ]
        items.sort(key=lambda r: r.timestamp)
        return items

    async def save_production_decision(self, decision: ProductionDecision) -> ProductionDecision:
        self._production[decision.id] = decision
        return decision

    async def list_production_decisions(self, conversation_id: str) -> List[ProductionDecision]:
        items = [p for p in self._production.values() if p.conversation_id == conversation_id]
        items.sort(key=lambda p: p.timestamp)
        return items

    async def save_question(self, question: Question) -> Question:
        self._questions[question.id] = question
        return question

    async def list_questions(self) -> List[Question]:
        return list(self._questions.values())
