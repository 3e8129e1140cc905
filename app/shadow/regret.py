"""
Regret 分析

- 瞬时 regret = 影子期望价值 - 生产期望价值（同会话内时间最近、且落在匹配窗口内的生产决策；
  匹配不到时使用默认生产价值）；
- 累积 regret = 同一会话（按实验、变体区分）内按时间顺序的累加；
- 归一化 regret = 瞬时 regret / 期望价值区间。

regret 为正表示影子策略更好。早停规则用 Hoeffding 界给累积 regret 加置信区间：
下界显著为正 -> stop_winning（采纳影子）；上界显著为负 -> stop_losing（放弃影子）；否则 continue。
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from app.shadow import stats
from app.shadow.entities import ProductionDecision, RegretAnalysis, ShadowDecision, ShadowMetrics
from app.shadow.enums import StopRecommendation
from app.shadow.errors import ExperimentNotFoundError, VariantNotFoundError
from app.shadow.repository import ShadowRepository
from app.shadow.telemetry import NullTelemetryPublisher, TelemetryPublisher, TelemetryTopic

TimeRange = Tuple[Optional[datetime], Optional[datetime]]

SHADOW_UNCERTAINTY_SCALE = 1000.0
MATCHED_PRODUCTION_UNCERTAINTY = 500.0
UNMATCHED_PRODUCTION_UNCERTAINTY = 1000.0


@dataclass(frozen=True)
class RegretPoint:
    shadow_decision_id: str
    conversation_id: str
    timestamp: datetime
    shadow_value: float
    production_value: float
    instantaneous_regret: float
    cumulative_regret: float
    normalized_regret: float
    matched: bool
    production_decision_id: Optional[str] = None
    conversation_stage: Optional[str] = None
    region: Optional[str] = None


@dataclass
class RegretReport:
    experiment_id: str
    variant_id: str
    sample_size: int
    total_regret: float
    average_regret: float
    median_regret: float
    regret_std: float
    cumulative_regret_bounds: Dict[str, float]
    regret_distribution: Dict[str, float]
    regret_over_time: List[Dict[str, Any]]
    regret_by_stage: Dict[str, Dict[str, float]]
    regret_by_context: Dict[str, Dict[str, float]]
    expected_value_analysis: Dict[str, float]
    assessment: Dict[str, Any]
    points: List[RegretPoint] = field(default_factory=list, repr=False)
    is_reliable: bool = True
    validation_notes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "experimentId": self.experiment_id,
            "variantId": self.variant_id,
            "sampleSize": self.sample_size,
            "totalRegret": self.total_regret,
            "averageRegret": self.average_regret,
            "medianRegret": self.median_regret,
            "regretStandardDeviation": self.regret_std,
            "cumulativeRegretBounds": self.cumulative_regret_bounds,
            "regretDistribution": self.regret_distribution,
            "regretOverTime": self.regret_over_time,
            "regretByStage": self.regret_by_stage,
            "regretByContext": self.regret_by_context,
            "expectedValueAnalysis": self.expected_value_analysis,
            "assessment": self.assessment,
            "isReliable": self.is_reliable,
            "validationNotes": list(self.validation_notes),
        }


@dataclass
class RegretBounds:
    lower_bound: float
    upper_bound: float
    current_regret: float
    projected_regret: float
    hoeffding_epsilon: float
    sample_size: int
    confidence_level: float
    stop_recommendation: StopRecommendation

    def to_dict(self) -> dict:
        return {
            "lowerBound": self.lower_bound,
            "upperBound": self.upper_bound,
            "currentRegret": self.current_regret,
            "projectedRegret": self.projected_regret,
            "hoeffdingEpsilon": self.hoeffding_epsilon,
            "sampleSize": self.sample_size,
            "confidenceLevel": self.confidence_level,
            "stopRecommendation": self.stop_recommendation.value,
        }


def _stage_significance(n: int) -> float:
    return 0.95 if n >= 30 else min(0.9, 0.5 + n / 60)


class RegretAnalyzer:
    def __init__(
        self,
        repository: ShadowRepository,
        *,
        telemetry: Optional[TelemetryPublisher] = None,
        matching_window_seconds: float = 60.0,
        default_production_value: float = 8000.0,
        value_range: float = 20000.0,
        early_stop_threshold: float = 1000.0,
    ):
        self._repo = repository
        self._telemetry = telemetry or NullTelemetryPublisher()
        self.matching_window = timedelta(seconds=matching_window_seconds)
        self.default_production_value = default_production_value
        self.value_range = value_range
        self.early_stop_threshold = early_stop_threshold

    # ========================================
    # 单条决策
    # ========================================
    async def match_production_decision(self, conversation_id: str, at: datetime) -> Optional[ProductionDecision]:
        """同会话内时间最近的生产决策；超出匹配窗口视为未匹配"""
        best: Optional[ProductionDecision] = None
        best_gap: Optional[timedelta] = None
        for p in await self._repo.list_production_decisions(conversation_id):
            gap = abs(p.timestamp - at)
            if gap > self.matching_window:
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = p, gap
        return best

    def production_value(self, decision: Optional[ProductionDecision]) -> float:
        if decision is None:
            return self.default_production_value
        if decision.expected_value is not None:
            return decision.expected_value
        if decision.qualification_score is not None:
            return decision.qualification_score * 10000
        return self.default_production_value

    async def calculate_decision_regret(self, decision: ShadowDecision, metrics: ShadowMetrics) -> RegretAnalysis:
        """计算并落库一条 RegretAnalysis；累积值接在同会话、同实验、同变体的上一条之后"""
        production = await self.match_production_decision(decision.conversation_id, decision.timestamp)
        shadow_value = metrics.shadow_expected_value
        production_value = self.production_value(production)
        instantaneous = shadow_value - production_value

        previous = [
            r
            for r in await self._repo.list_regret_analyses(
                experiment_id=decision.experiment_id,
                variant_id=decision.variant_id,
                conversation_id=decision.conversation_id,
            )
            if r.timestamp <= decision.timestamp
        ]
        cumulative = (previous[-1].cumulative_regret if previous else 0.0) + instantaneous

        shadow_sigma = decision.confidence * SHADOW_UNCERTAINTY_SCALE
        production_sigma = MATCHED_PRODUCTION_UNCERTAINTY if production else UNMATCHED_PRODUCTION_UNCERTAINTY
        half = 1.96 * math.sqrt(shadow_sigma ** 2 + production_sigma ** 2)

        record = RegretAnalysis(
            conversation_id=decision.conversation_id,
            experiment_id=decision.experiment_id,
            variant_id=decision.variant_id,
            shadow_decision_id=decision.id,
            production_decision_id=production.id if production else None,
            shadow_value=shadow_value,
            production_value=production_value,
            instantaneous_regret=instantaneous,
            cumulative_regret=cumulative,
            normalized_regret=instantaneous / self.value_range if self.value_range else 0.0,
            lower_bound=instantaneous - half,
            upper_bound=instantaneous + half,
            conversation_stage=decision.conversation_stage,
            region=decision.region,
            timestamp=decision.timestamp,
        )
        return await self._repo.save_regret_analysis(record)

    # ========================================
    # 汇总
    # ========================================
    async def _require(self, experiment_id: str, variant_id: str) -> None:
        if await self._repo.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)
        variant = await self._repo.get_variant(variant_id)
        if variant is None or variant.experiment_id != experiment_id:
            raise VariantNotFoundError(variant_id)

    async def compute_regret_series(
        self, experiment_id: str, variant_id: str, time_range: Optional[TimeRange] = None
    ) -> List[RegretPoint]:
        """按时间顺序重算每条成功影子决策的 regret；每个会话内累积值可加"""
        start, end = time_range or (None, None)
        decisions = await self._repo.list_shadow_decisions(
            experiment_id=experiment_id, variant_id=variant_id, since=start, until=end
        )

        running: Dict[str, float] = defaultdict(float)
        points: List[RegretPoint] = []
        for d in decisions:
            if d.error_occurred:
                continue
            metrics = await self._repo.get_shadow_metrics(d.id)
            if metrics is None:
                continue
            production = await self.match_production_decision(d.conversation_id, d.timestamp)
            production_value = self.production_value(production)
            instantaneous = metrics.shadow_expected_value - production_value
            running[d.conversation_id] += instantaneous
            points.append(
                RegretPoint(
                    shadow_decision_id=d.id,
                    conversation_id=d.conversation_id,
                    timestamp=d.timestamp,
                    shadow_value=metrics.shadow_expected_value,
                    production_value=production_value,
                    instantaneous_regret=instantaneous,
                    cumulative_regret=running[d.conversation_id],
                    normalized_regret=instantaneous / self.value_range if self.value_range else 0.0,
                    matched=production is not None,
                    production_decision_id=production.id if production else None,
                    conversation_stage=d.conversation_stage,
                    region=d.region,
                )
            )
        return points

    async def analyze_experiment_regret(
        self, experiment_id: str, variant_id: str, time_range: Optional[TimeRange] = None
    ) -> RegretReport:
        await self._require(experiment_id, variant_id)
        points = await self.compute_regret_series(experiment_id, variant_id, time_range)
        report = self._build_report(experiment_id, variant_id, points)
        logger.info(
            f"[Regret] experiment={experiment_id} variant={variant_id} n={report.sample_size} "
            f"avg={report.average_regret:.1f} level={report.assessment['overallRegretLevel']}"
        )
        await self._telemetry.publish(
            TelemetryTopic.regret_report,
            {
                "experimentId": experiment_id,
                "variantId": variant_id,
                "sampleSize": report.sample_size,
                "totalRegret": report.total_regret,
                "averageRegret": report.average_regret,
                "assessment": report.assessment,
            },
        )
        return report

    def _build_report(self, experiment_id: str, variant_id: str, points: Sequence[RegretPoint]) -> RegretReport:
        regrets = [p.instantaneous_regret for p in points]
        n = len(regrets)
        notes: List[str] = []
        if n == 0:
            notes.append("No successful shadow decisions with metrics in range")

        total = sum(regrets)
        average = total / n if n else 0.0
        sd = stats.stdev(regrets)
        half = 1.96 * sd * math.sqrt(n)
        sorted_regrets = sorted(regrets)

        over_time: List[Dict[str, Any]] = []
        cumulative = 0.0
        for i, p in enumerate(points):
            cumulative += p.instantaneous_regret
            over_time.append(
                {
                    "timestamp": p.timestamp.isoformat(),
                    "conversationId": p.conversation_id,
                    "cumulativeRegret": cumulative,
                    "instantaneousRegret": p.instantaneous_regret,
                    "regretRate": cumulative / (i + 1),
                }
            )

        by_stage: Dict[str, List[float]] = defaultdict(list)
        by_region: Dict[str, List[float]] = defaultdict(list)
        for p in points:
            by_stage[p.conversation_stage or "unknown"].append(p.instantaneous_regret)
            by_region[p.region or "unknown"].append(p.instantaneous_regret)

        production_avg = stats.mean([p.production_value for p in points]) if n else 0.0
        shadow_avg = stats.mean([p.shadow_value for p in points]) if n else 0.0
        expected_value = {
            "productionExpectedValue": production_avg,
            "shadowExpectedValue": shadow_avg,
            "potentialLift": (shadow_avg - production_avg) / production_avg if production_avg > 0 else 0.0,
            "liftSignificance": _stage_significance(n),
            "matchedRate": sum(1 for p in points if p.matched) / n if n else 0.0,
        }

        return RegretReport(
            experiment_id=experiment_id,
            variant_id=variant_id,
            sample_size=n,
            total_regret=total,
            average_regret=average,
            median_regret=stats.median(regrets),
            regret_std=sd,
            cumulative_regret_bounds={"lower": total - half, "upper": total + half, "confidenceLevel": 0.95},
            regret_distribution={
                f"p{int(q * 100)}": stats.percentile(sorted_regrets, q)
                for q in (0.10, 0.25, 0.50, 0.75, 0.90, 0.95, 0.99)
            },
            regret_over_time=over_time,
            regret_by_stage={
                stage: {
                    "averageRegret": stats.mean(values),
                    "sampleSize": len(values),
                    "significance": _stage_significance(len(values)),
                }
                for stage, values in by_stage.items()
            },
            regret_by_context={
                region: {"averageRegret": stats.mean(values), "sampleSize": len(values)}
                for region, values in by_region.items()
            },
            expected_value_analysis=expected_value,
            assessment=self._assess(total, average, n, expected_value),
            points=list(points),
            is_reliable=n > 0,
            validation_notes=notes,
        )

    @staticmethod
    def _assess(total: float, average: float, n: int, expected_value: Dict[str, float]) -> Dict[str, Any]:
        if abs(average) < 500:
            level = "low"
        elif abs(average) < 2000:
            level = "medium"
        else:
            level = "high"

        if average > 1000:
            action = "Consider implementing this shadow policy - significant potential value increase"
        elif average < -1000:
            action = "Current production policy appears superior - investigate shadow policy issues"
        else:
            action = "Continue monitoring - regret levels are within acceptable range"

        insights: List[str] = []
        if expected_value["potentialLift"] > 0.1:
            insights.append(f"Shadow policy shows {expected_value['potentialLift'] * 100:.1f}% potential lift in expected value")
        if abs(total) > 10000:
            insights.append(f"Cumulative regret of {abs(total):.0f} suggests significant policy difference")
        if level == "low":
            insights.append("Low regret indicates policies perform similarly - may not justify switching")

        limitations: List[str] = []
        if n < 100:
            limitations.append("Small sample size limits statistical confidence")
        if expected_value["liftSignificance"] < 0.8:
            limitations.append("Expected value lift has low statistical significance")
        limitations.append("Regret analysis based on estimated rather than observed outcomes")

        return {
            "overallRegretLevel": level,
            "recommendedAction": action,
            "keyInsights": insights,
            "limitations": limitations,
        }

    # ========================================
    # 早停 / 变体对比
    # ========================================
    async def calculate_regret_bounds(
        self,
        experiment_id: str,
        variant_id: str,
        confidence_level: float = 0.95,
        time_horizon: Optional[int] = None,
    ) -> RegretBounds:
        if not 0 < confidence_level < 1:
            raise ValueError(f"confidence_level 必须在 (0, 1) 之间: {confidence_level}")
        report = await self.analyze_experiment_regret(experiment_id, variant_id)
        n = report.sample_size
        current = report.total_regret

        if n == 0:
            return RegretBounds(0.0, 0.0, 0.0, 0.0, 0.0, 0, confidence_level, StopRecommendation.continue_)

        alpha = 1 - confidence_level
        epsilon = math.sqrt(math.log(2 / alpha) / (2 * n))
        spread = epsilon * n * report.regret_std
        lower, upper = current - spread, current + spread

        projected = current
        if time_horizon and time_horizon > n:
            projected = current + (time_horizon - n) * report.average_regret

        recommendation = StopRecommendation.continue_
        if lower > self.early_stop_threshold:
            recommendation = StopRecommendation.stop_winning
        elif upper < -self.early_stop_threshold:
            recommendation = StopRecommendation.stop_losing

        return RegretBounds(
            lower_bound=lower,
            upper_bound=upper,
            current_regret=current,
            projected_regret=projected,
            hoeffding_epsilon=epsilon,
            sample_size=n,
            confidence_level=confidence_level,
            stop_recommendation=recommendation,
        )

    async def compare_variant_regret(
        self, experiment_id: str, variant_ids: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        """按平均 regret 降序排名（越大越好）；最优变体与其它变体做 Cohen's d (> 0.5) 效应量检验"""
        if await self._repo.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)
        variants = await self._repo.list_variants(experiment_id)
        if variant_ids:
            wanted = set(variant_ids)
            variants = [v for v in variants if v.id in wanted]

        analyses = []
        for v in variants:
            report = await self.analyze_experiment_regret(experiment_id, v.id)
            if report.sample_size == 0:
                logger.info(f"变体 {v.name} 没有可用的 regret 样本，跳过排名")
                continue
            analyses.append((v, report))

        if not analyses:
            return {"experimentId": experiment_id, "variantComparison": [], "bestVariant": None, "worstVariant": None}

        analyses.sort(key=lambda item: item[1].average_regret, reverse=True)
        best_variant, best = analyses[0]
        best_regrets = [p.instantaneous_regret for p in best.points]

        comparison = []
        for rank, (v, report) in enumerate(analyses, start=1):
            if rank == 1:
                effect, better = 0.0, True
            else:
                effect = stats.cohens_d(best_regrets, [p.instantaneous_regret for p in report.points])
                better = effect > 0.5
            comparison.append(
                {
                    "variantId": v.id,
                    "variantName": v.name,
                    "totalRegret": report.total_regret,
                    "averageRegret": report.average_regret,
                    "sampleSize": report.sample_size,
                    "regretRank": rank,
                    "effectSize": effect,
                    "isStatisticallyBetter": better,
                    "confidenceLevel": 0.95,
                }
            )

        worst_variant, worst = analyses[-1]
        gap = best.average_regret - worst.average_regret
        return {
            "experimentId": experiment_id,
            "variantComparison": comparison,
            "bestVariant": {"variantId": best_variant.id, "variantName": best_variant.name, "regretAdvantage": gap},
            "worstVariant": {"variantId": worst_variant.id, "variantName": worst_variant.name, "regretDisadvantage": gap},
        }
