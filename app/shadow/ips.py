"""
倾向得分 / IPS 离线评估

把记录下来的 (倾向得分, 结果) 样本变成加权、截断、方差受控的效果估计：

    weight   = 1 / propensity
    estimate = Σ(w·y) / Σw
    variance = n·Σ(w·(y - estimate))² / (Σw)²   （单样本口径，置信区间与可靠性门槛都用它）
    effN     = (Σw)² / Σw²

截断在估计之前进行；截断率越高说明两个策略的支持集重叠越差。
统计上不可靠时返回带 is_reliable=False 和说明的结果，而不是抛异常。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from app.shadow import stats
from app.shadow.entities import ShadowMetrics
from app.shadow.enums import Severity, TruncationMethod
from app.shadow.errors import ExperimentNotFoundError, ExperimentValidationError, VariantNotFoundError
from app.shadow.repository import ShadowRepository
from app.shadow.telemetry import NullTelemetryPublisher, TelemetryPublisher, TelemetryTopic

MIN_EFFECTIVE_N = 30
WEIGHT_CONCENTRATION_RATIO = 10.0

OUTCOME_METRICS = {
    "qualification_score": lambda m: m.qualification_score,
    "expected_value": lambda m: m.shadow_expected_value,
    "advance_probability": lambda m: m.advance_probability,
    "engagement_score": lambda m: m.engagement_score,
    "technical_score": lambda m: m.technical_score,
    "emotional_score": lambda m: m.emotional_score,
    "cultural_score": lambda m: m.cultural_score,
}

DEFAULT_PRODUCTION_BASELINES = {
    "qualification_score": 0.6,
    "expected_value": 8000.0,
    "advance_probability": 0.45,
}


@dataclass
class TruncationConfig:
    method: TruncationMethod = TruncationMethod.percentile
    percentile: float = 0.05
    min_propensity: float = 0.01
    max_propensity: float = 10.0


@dataclass(frozen=True)
class IPSSample:
    propensity: float
    outcome: float


@dataclass
class IPSEstimate:
    estimate: float
    variance: float
    confidence_interval: Tuple[float, float]
    effective_n: float
    sample_size: int
    truncated_sample_size: int
    truncation_rate: float
    is_reliable: bool
    validation_notes: List[str] = field(default_factory=list)
    max_weight: float = 0.0
    mean_weight: float = 0.0
    confidence_level: float = 0.95

    def to_dict(self) -> dict:
        return {
            "estimate": self.estimate,
            "variance": self.variance,
            "confidenceInterval": list(self.confidence_interval),
            "confidenceLevel": self.confidence_level,
            "effectiveN": self.effective_n,
            "sampleSize": self.sample_size,
            "truncatedSampleSize": self.truncated_sample_size,
            "truncationRate": self.truncation_rate,
            "isReliable": self.is_reliable,
            "maxWeight": self.max_weight,
            "meanWeight": self.mean_weight,
            "validationNotes": list(self.validation_notes),
        }


def truncation_bounds(propensities: Sequence[float], config: TruncationConfig) -> Tuple[float, float]:
    if config.method == TruncationMethod.none or not propensities:
        return -math.inf, math.inf

    if config.method == TruncationMethod.percentile:
        s = sorted(propensities)
        return stats.percentile(s, config.percentile), stats.percentile(s, 1 - config.percentile)

    if config.method == TruncationMethod.threshold:
        return config.min_propensity, config.max_propensity

    if config.method == TruncationMethod.adaptive:
        m = stats.mean(propensities)
        sd = stats.stdev(propensities)
        return max(0.001, m - 2 * sd), m + 2 * sd

    raise ValueError(f"unknown truncation method: {config.method}")


def truncate_samples(samples: Sequence[IPSSample], config: TruncationConfig) -> List[IPSSample]:
    lower, upper = truncation_bounds([s.propensity for s in samples], config)
    return [s for s in samples if lower <= s.propensity <= upper]


def estimate_from_samples(
    samples: Sequence[IPSSample],
    truncation: Optional[TruncationConfig] = None,
    *,
    confidence_level: float = 0.95,
    variance_ceiling: float = 1.0,
) -> IPSEstimate:
    """对一组 (倾向得分, 结果) 样本做截断 + 自归一化 IPS 估计；同样的输入必然得到同样的输出"""
    truncation = truncation or TruncationConfig()
    notes: List[str] = []

    eligible = [s for s in samples if math.isfinite(s.propensity) and s.propensity > 0 and math.isfinite(s.outcome)]
    if len(eligible) < len(samples):
        notes.append(f"{len(samples) - len(eligible)} samples with non-positive or non-finite values ignored")

    kept = truncate_samples(eligible, truncation)
    n_total = len(eligible)
    n = len(kept)
    truncation_rate = (n_total - n) / n_total if n_total else 0.0

    if n == 0:
        notes.append("No eligible samples after truncation")
        return IPSEstimate(
            estimate=0.0,
            variance=0.0,
            confidence_interval=(0.0, 0.0),
            effective_n=0.0,
            sample_size=n_total,
            truncated_sample_size=0,
            truncation_rate=truncation_rate,
            is_reliable=False,
            validation_notes=notes,
            confidence_level=confidence_level,
        )

    weights = [1.0 / s.propensity for s in kept]
    w_sum = sum(weights)
    w_sq_sum = sum(w * w for w in weights)
    estimate = sum(w * s.outcome for w, s in zip(weights, kept)) / w_sum

    if n > 1:
        variance = n * sum((w * (s.outcome - estimate)) ** 2 for w, s in zip(weights, kept)) / (w_sum ** 2)
    else:
        variance = 0.0

    z = stats.z_for_confidence(confidence_level)
    half = z * math.sqrt(variance)
    effective_n = (w_sum ** 2) / w_sq_sum
    max_w = max(weights)
    mean_w = w_sum / n

    reliable = True
    if effective_n < MIN_EFFECTIVE_N:
        reliable = False
        notes.append(f"Effective sample size {effective_n:.1f} below {MIN_EFFECTIVE_N}")
    if variance > variance_ceiling:
        reliable = False
        notes.append(f"Variance {variance:.4f} exceeds ceiling {variance_ceiling}")
    if max_w > WEIGHT_CONCENTRATION_RATIO * mean_w:
        reliable = False
        notes.append(f"Weight concentration: max weight {max_w:.2f} > {WEIGHT_CONCENTRATION_RATIO:.0f}x mean {mean_w:.2f}")
    if truncation_rate > 0.2:
        notes.append(f"High truncation rate {truncation_rate:.1%} suggests poor policy overlap")

    return IPSEstimate(
        estimate=estimate,
        variance=variance,
        confidence_interval=(estimate - half, estimate + half),
        effective_n=effective_n,
        sample_size=n_total,
        truncated_sample_size=n,
        truncation_rate=truncation_rate,
        is_reliable=reliable,
        validation_notes=notes,
        max_weight=max_w,
        mean_weight=mean_w,
        confidence_level=confidence_level,
    )


def distribution_stats(values: Sequence[float]) -> Dict[str, float]:
    if not values:
        return {"mean": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "q25": 0.0, "q75": 0.0}
    s = sorted(values)
    return {
        "mean": stats.mean(s),
        "median": stats.median(s),
        "min": s[0],
        "max": s[-1],
        "q25": stats.percentile(s, 0.25),
        "q75": stats.percentile(s, 0.75),
    }


def support_overlap(probabilities: Sequence[float], lo: float = 0.05, hi: float = 0.95) -> float:
    """[lo, hi] 区间被观测到的概率范围覆盖的比例"""
    if not probabilities:
        return 0.0
    overlap_min = max(min(probabilities), lo)
    overlap_max = min(max(probabilities), hi)
    return max(0.0, (overlap_max - overlap_min) / (hi - lo))


def variance_inflation_factor(propensities: Sequence[float]) -> float:
    weights = [1.0 / p for p in propensities if p > 0]
    if not weights:
        return 1.0
    m = stats.mean(weights)
    return 1 + stats.var(weights) / (m * m)


class IPSEvaluator:
    def __init__(
        self,
        repository: ShadowRepository,
        *,
        telemetry: Optional[TelemetryPublisher] = None,
        variance_ceiling: float = 1.0,
        production_baselines: Optional[Mapping[str, float]] = None,
    ):
        self._repo = repository
        self._telemetry = telemetry or NullTelemetryPublisher()
        self.variance_ceiling = variance_ceiling
        self.production_baselines = dict(DEFAULT_PRODUCTION_BASELINES)
        if production_baselines:
            self.production_baselines.update(production_baselines)

    async def _require(self, experiment_id: str, variant_id: str):
        experiment = await self._repo.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        variant = await self._repo.get_variant(variant_id)
        if variant is None or variant.experiment_id != experiment_id:
            raise VariantNotFoundError(variant_id)
        return experiment, variant

    async def collect_samples(self, experiment_id: str, variant_id: str, metric: str) -> List[IPSSample]:
        extractor = OUTCOME_METRICS.get(metric)
        if extractor is None:
            raise ExperimentValidationError(f"unknown outcome metric: {metric}")

        samples: List[IPSSample] = []
        decisions = await self._repo.list_shadow_decisions(experiment_id=experiment_id, variant_id=variant_id)
        for d in decisions:
            if d.error_occurred or d.propensity_score is None:
                continue
            metrics: Optional[ShadowMetrics] = await self._repo.get_shadow_metrics(d.id)
            if metrics is None:
                continue
            samples.append(IPSSample(propensity=d.propensity_score, outcome=float(extractor(metrics))))
        return samples

    async def estimate_policy_performance(
        self,
        experiment_id: str,
        variant_id: str,
        metric: str,
        truncation: Optional[TruncationConfig] = None,
        *,
        confidence_level: float = 0.95,
    ) -> IPSEstimate:
        await self._require(experiment_id, variant_id)
        samples = await self.collect_samples(experiment_id, variant_id, metric)
        result = estimate_from_samples(
            samples,
            truncation,
            confidence_level=confidence_level,
            variance_ceiling=self.variance_ceiling,
        )
        logger.info(
            f"[IPS] experiment={experiment_id} variant={variant_id} metric={metric} "
            f"estimate={result.estimate:.4f} effN={result.effective_n:.1f} reliable={result.is_reliable}"
        )
        await self._telemetry.publish(
            TelemetryTopic.ips_estimate,
            {"experimentId": experiment_id, "variantId": variant_id, "metric": metric, **result.to_dict()},
        )
        return result

    async def _metric_comparison(
        self, experiment_id: str, variant_id: str, metric: str, confidence_level: float
    ) -> Dict[str, Any]:
        production_value = self.production_baselines.get(metric, 0.5)
        shadow = await self.estimate_policy_performance(
            experiment_id, variant_id, metric, confidence_level=confidence_level
        )
        lift = (shadow.estimate - production_value) / production_value if production_value > 0 else 0.0
        se = math.sqrt(shadow.variance)
        if se > 0:
            p_value = stats.two_sided_p_value((shadow.estimate - production_value) / se)
        else:
            p_value = 1.0 if shadow.estimate == production_value else 0.0
        return {
            "metric": metric,
            "productionValue": production_value,
            "shadowValue": shadow.to_dict(),
            "lift": lift,
            "significance": {
                "pValue": p_value,
                "isSignificant": shadow.is_reliable and p_value < (1 - confidence_level),
                "confidenceLevel": confidence_level,
            },
        }

    async def compare_to_production(
        self,
        experiment_id: str,
        variant_id: str,
        metrics: Optional[Sequence[str]] = None,
        *,
        confidence_level: float = 0.95,
    ) -> Dict[str, Any]:
        experiment, _ = await self._require(experiment_id, variant_id)
        decisions = [
            d
            for d in await self._repo.list_shadow_decisions(experiment_id=experiment_id, variant_id=variant_id)
            if not d.error_occurred and d.propensity_score is not None
        ]

        primary = await self._metric_comparison(experiment_id, variant_id, experiment.primary_metric, confidence_level)
        secondary_names = list(metrics) if metrics else list(experiment.secondary_metrics)
        secondary = [
            await self._metric_comparison(experiment_id, variant_id, m, confidence_level)
            for m in secondary_names
            if m != experiment.primary_metric
        ]

        propensities = [d.propensity_score for d in decisions]
        scores = await self._repo.list_propensity_scores(experiment_id, variant_id)
        overlap = support_overlap([p.shadow_probability for p in scores])
        weights = [1.0 / p for p in propensities if p > 0]
        truncated_w = [w for w in weights if 1 <= w <= 20]
        raw_var = stats.var(weights) if weights else 0.0
        trunc_var = stats.var(truncated_w) if truncated_w else 0.0
        variance_analysis = {
            "rawVariance": raw_var,
            "truncatedVariance": trunc_var,
            "varianceReductionFactor": trunc_var / raw_var if raw_var > 0 else 1.0,
        }
        overlap_diagnostics = {
            "minPropensity": min(propensities) if propensities else 0.0,
            "maxPropensity": max(propensities) if propensities else 0.0,
            "truncationThreshold": stats.percentile(sorted(propensities), 0.05),
            "supportOverlap": overlap,
        }

        return {
            "experimentId": experiment_id,
            "variantId": variant_id,
            "sampleSize": len(decisions),
            "timeRange": {
                "start": decisions[0].timestamp.isoformat() if decisions else None,
                "end": decisions[-1].timestamp.isoformat() if decisions else None,
            },
            "primaryMetric": primary,
            "secondaryMetrics": secondary,
            "propensityScoreDistribution": distribution_stats(propensities),
            "overlapDiagnostics": overlap_diagnostics,
            "varianceAnalysis": variance_analysis,
            "assessment": self._assess(len(decisions), overlap, variance_analysis, primary),
        }

    @staticmethod
    def _assess(sample_size: int, overlap: float, variance_analysis: Mapping[str, float], primary: Mapping[str, Any]) -> dict:
        score = 1.0
        limitations: List[str] = []
        if sample_size < 100:
            score *= 0.3
            limitations.append("Very small sample size limits reliability")
        elif sample_size < 500:
            score *= 0.7
            limitations.append("Small sample size may affect precision")
        if overlap < 0.6:
            score *= 0.5
            limitations.append("Limited support overlap between policies")
        if variance_analysis["varianceReductionFactor"] > 1.5:
            score *= 0.8
            limitations.append("High variance in IPS weights")
        if not primary["shadowValue"]["isReliable"]:
            score *= 0.6
            limitations.append("Primary metric estimate flagged as unreliable")

        if score >= 0.8:
            reliability = "high"
            recommendation = "IPS estimates are reliable and can be used for decision making"
        elif score >= 0.5:
            reliability = "medium"
            recommendation = "IPS estimates are moderately reliable but should be interpreted cautiously"
        else:
            reliability = "low"
            recommendation = "IPS estimates have low reliability and should not be used for critical decisions"
        return {
            "reliability": reliability,
            "score": score,
            "recommendation": recommendation,
            "limitations": limitations or ["No major limitations detected"],
        }

    async def batch_analyze_variants(
        self, experiment_id: str, metrics: Optional[Sequence[str]] = None, *, confidence_level: float = 0.95
    ) -> Dict[str, Dict[str, Any]]:
        if await self._repo.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)
        results: Dict[str, Dict[str, Any]] = {}
        for variant in await self._repo.list_variants(experiment_id):
            try:
                results[variant.id] = await self.compare_to_production(
                    experiment_id, variant.id, metrics, confidence_level=confidence_level
                )
            except ExperimentValidationError as exc:
                logger.error(f"变体 {variant.name} 分析失败: {exc}")
        return results

    async def validate_ips_assumptions(self, experiment_id: str, variant_id: str) -> Dict[str, Any]:
        await self._require(experiment_id, variant_id)
        scores = await self._repo.list_propensity_scores(experiment_id, variant_id)
        propensities = [p.propensity_score for p in scores if math.isfinite(p.propensity_score)]

        violations: List[Dict[str, str]] = []
        recommendations: List[str] = []

        def violate(assumption: str, severity: Severity, description: str, impact: str) -> None:
            violations.append(
                {"assumption": assumption, "severity": severity.value, "description": description, "impact": impact}
            )

        # positivity
        if propensities:
            min_p = min(propensities)
            if min_p < 0.01:
                violate(
                    "Positivity", Severity.error,
                    f"Minimum propensity score is very low ({min_p:.4f})",
                    "High variance in IPS estimates; may lead to unreliable results",
                )
                recommendations.append("Consider more restrictive truncation or larger sample size")
        overlap = support_overlap([p.shadow_probability for p in scores])
        if overlap < 0.8:
            violate(
                "Positivity", Severity.warning,
                f"Limited support overlap ({overlap * 100:.1f}%)",
                "IPS estimates may not generalize well",
            )

        # unconfoundedness proxy
        if scores:
            avg_features = sum(len(p.context_features) for p in scores) / len(scores)
            if avg_features < 5:
                violate(
                    "Unconfoundedness", Severity.warning,
                    f"Limited context features captured (avg: {avg_features:.1f})",
                    "May have unmeasured confounders affecting propensity estimation",
                )
                recommendations.append("Capture more context features for propensity modeling")

            low_conf = sum(1 for p in scores if p.model_confidence < 0.7) / len(scores)
            if low_conf > 0.3:
                violate(
                    "Propensity Model Quality", Severity.warning,
                    f"High rate of low-confidence propensity scores ({low_conf * 100:.1f}%)",
                    "Propensity model may be misspecified",
                )
                recommendations.append("Improve propensity model or collect better features")

        # sample size
        n = len(scores)
        if n < 100:
            violate(
                "Sample Size", Severity.error,
                f"Very small sample size ({n})",
                "Insufficient power for reliable IPS estimation",
            )
            recommendations.append("Collect more data before drawing conclusions")
        elif n < 500:
            violate("Sample Size", Severity.warning, f"Small sample size ({n})", "Limited statistical power")

        # variance inflation
        vif = variance_inflation_factor(propensities)
        if vif > 10:
            violate(
                "Variance Control", Severity.error,
                f"High variance inflation (factor: {vif:.1f})",
                "IPS estimates will have very high variance",
            )
            recommendations.append("Apply more aggressive truncation")

        if any(v["severity"] == Severity.error.value for v in violations):
            validity = "invalid"
        elif violations:
            validity = "questionable"
        else:
            validity = "valid"

        return {
            "experimentId": experiment_id,
            "variantId": variant_id,
            "violations": violations,
            "overallValidity": validity,
            "varianceInflationFactor": vif,
            "recommendations": recommendations or ["IPS assumptions appear to be satisfied"],
        }
