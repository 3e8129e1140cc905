from __future__ import annotations

import asyncio
import json
import math
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.shadow.entities import (
    Experiment,
    ExperimentVariant,
    ProductionDecision,
    ShadowDecision,
    ShadowMetrics,
)
from app.shadow.enums import ExperimentStatus, StopRecommendation
from app.shadow.errors import ExperimentNotFoundError, VariantNotFoundError
from app.shadow.regret import RegretAnalyzer
from app.shadow.repository import InMemoryShadowRepository
from app.shadow.telemetry import RedisTelemetryPublisher
from tests.fake_redis import FakeRedis, FakeRedisClient

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class RegretAnalyzerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = InMemoryShadowRepository()
        self.redis = FakeRedis()
        self.analyzer = RegretAnalyzer(
            self.repo, telemetry=RedisTelemetryPublisher(FakeRedisClient(self.redis), channel_prefix="test")
        )
        self.experiment = self._run(
            self.repo.create_experiment(Experiment(name="regret", status=ExperimentStatus.running))
        )
        self.variant = self._new_variant("main")

    def _run(self, coro):
        return asyncio.run(coro)

    def _new_variant(self, name: str) -> ExperimentVariant:
        return self._run(
            self.repo.create_variant(
                ExperimentVariant(experiment_id=self.experiment.id, name=name, policy_type="epsilon_greedy")
            )
        )

    def _shadow(
        self,
        conversation_id: str,
        seconds: float,
        shadow_value: float,
        *,
        variant: Optional[ExperimentVariant] = None,
        stage: str = "discovery",
        region: str = "emea",
        confidence: float = 0.5,
    ) -> tuple[ShadowDecision, ShadowMetrics]:
        variant = variant or self.variant
        decision = ShadowDecision(
            conversation_id=conversation_id, experiment_id=self.experiment.id, variant_id=variant.id,
            shadow_action="ask_question_budget", shadow_reasoning="", execution_time_ms=4,
            confidence=confidence, timestamp=BASE + timedelta(seconds=seconds),
            conversation_stage=stage, region=region,
        )
        metrics = ShadowMetrics(
            shadow_decision_id=decision.id, conversation_id=conversation_id,
            experiment_id=self.experiment.id, variant_id=variant.id,
            engagement_score=0.5, qualification_score=0.5, technical_score=0.5, emotional_score=0.5,
            cultural_score=0.5, shadow_expected_value=shadow_value, advance_probability=0.5,
            timestamp=decision.timestamp,
        )
        self._run(self.repo.save_shadow_decision(decision))
        self._run(self.repo.save_shadow_metrics(metrics))
        return decision, metrics

    def _production(self, conversation_id: str, seconds: float, **kwargs) -> ProductionDecision:
        decision = ProductionDecision(
            id=f"prod-{conversation_id}-{seconds}", conversation_id=conversation_id, action="ask_question_timeline",
            timestamp=BASE + timedelta(seconds=seconds), **kwargs,
        )
        return self._run(self.repo.save_production_decision(decision))

    def test_production_value_fallbacks(self) -> None:
        self.assertEqual(self.analyzer.production_value(None), 8000)
        self.assertEqual(
            self.analyzer.production_value(ProductionDecision(id="p", conversation_id="c", action="a", expected_value=6500)),
            6500,
        )
        self.assertEqual(
            self.analyzer.production_value(
                ProductionDecision(id="p", conversation_id="c", action="a", qualification_score=0.72)
            ),
            7200,
        )

    def test_matching_picks_nearest_within_window(self) -> None:
        self._production("c1", 0, expected_value=5000)
        self._production("c1", 40, expected_value=6000)
        match = self._run(self.analyzer.match_production_decision("c1", BASE + timedelta(seconds=30)))
        self.assertEqual(match.expected_value, 6000)

        self.assertIsNone(self._run(self.analyzer.match_production_decision("c1", BASE + timedelta(seconds=200))))
        self.assertIsNone(self._run(self.analyzer.match_production_decision("other", BASE)))

    def test_decision_regret_chains_cumulative(self) -> None:
        self._production("c1", 0, expected_value=7000)
        d1, m1 = self._shadow("c1", 1, 9000, confidence=0.4)
        d2, m2 = self._shadow("c1", 200, 6000)

        first = self._run(self.analyzer.calculate_decision_regret(d1, m1))
        self.assertEqual(first.instantaneous_regret, 2000)
        self.assertEqual(first.cumulative_regret, 2000)
        self.assertAlmostEqual(first.normalized_regret, 0.1)
        self.assertEqual(first.production_decision_id, "prod-c1-0")
        half = 1.96 * math.sqrt(400 ** 2 + 500 ** 2)
        self.assertAlmostEqual(first.upper_bound - first.instantaneous_regret, half)

        # 超出匹配窗口 -> 默认生产价值 8000，不确定度更大
        second = self._run(self.analyzer.calculate_decision_regret(d2, m2))
        self.assertIsNone(second.production_decision_id)
        self.assertEqual(second.instantaneous_regret, -2000)
        self.assertEqual(second.cumulative_regret, 0)
        self.assertAlmostEqual(second.upper_bound - second.lower_bound, 2 * 1.96 * math.sqrt(500 ** 2 + 1000 ** 2))

    def test_cumulative_regret_is_additive_per_conversation(self) -> None:
        values = {"c1": [9000, 7000, 8500], "c2": [6000, 10000]}
        for cid, shadow_values in values.items():
            for i, v in enumerate(shadow_values):
                self._shadow(cid, i * 100 + (1 if cid == "c2" else 0), v)

        points = self._run(self.analyzer.compute_regret_series(self.experiment.id, self.variant.id))
        self.assertEqual(len(points), 5)
        for cid, shadow_values in values.items():
            own = [p for p in points if p.conversation_id == cid]
            self.assertEqual([p.timestamp for p in own], sorted(p.timestamp for p in own))
            self.assertAlmostEqual(own[-1].cumulative_regret, sum(v - 8000 for v in shadow_values))
            self.assertAlmostEqual(own[-1].cumulative_regret, sum(p.instantaneous_regret for p in own))

    def test_failed_decisions_are_excluded(self) -> None:
        self._shadow("c1", 0, 9000)
        self._run(
            self.repo.save_shadow_decision(
                ShadowDecision(
                    conversation_id="c1", experiment_id=self.experiment.id, variant_id=self.variant.id,
                    shadow_action="error", shadow_reasoning="", execution_time_ms=4, error_occurred=True,
                    timestamp=BASE + timedelta(seconds=5),
                )
            )
        )
        points = self._run(self.analyzer.compute_regret_series(self.experiment.id, self.variant.id))
        self.assertEqual(len(points), 1)

    def test_report_sections(self) -> None:
        self._production("c1", 0, expected_value=8000)
        self._shadow("c1", 1, 9000, stage="discovery", region="emea")
        self._shadow("c2", 2, 11000, stage="closing", region="apac")
        report = self._run(self.analyzer.analyze_experiment_regret(self.experiment.id, self.variant.id))

        self.assertEqual(report.sample_size, 2)
        self.assertEqual(report.total_regret, 4000)
        self.assertEqual(report.average_regret, 2000)
        self.assertEqual(set(report.regret_by_stage), {"discovery", "closing"})
        self.assertEqual(report.regret_by_context["apac"]["averageRegret"], 3000)
        self.assertEqual(report.expected_value_analysis["matchedRate"], 0.5)
        self.assertEqual(report.regret_over_time[-1]["cumulativeRegret"], 4000)
        self.assertEqual(report.regret_over_time[-1]["regretRate"], 2000)
        self.assertEqual(report.assessment["overallRegretLevel"], "high")
        self.assertIn("Consider implementing this shadow policy", report.assessment["recommendedAction"])

        data = report.to_dict()
        self.assertEqual(set(data["regretDistribution"]), {"p10", "p25", "p50", "p75", "p90", "p95", "p99"})
        payload = json.loads(self.redis.messages("test:regret.report")[0])
        self.assertEqual(payload["totalRegret"], 4000)

    def test_time_range_filters_decisions(self) -> None:
        self._shadow("c1", 0, 9000)
        self._shadow("c1", 3600, 9000)
        report = self._run(
            self.analyzer.analyze_experiment_regret(
                self.experiment.id, self.variant.id, (BASE + timedelta(minutes=30), None)
            )
        )
        self.assertEqual(report.sample_size, 1)

    def test_empty_report_is_unreliable(self) -> None:
        report = self._run(self.analyzer.analyze_experiment_regret(self.experiment.id, self.variant.id))
        self.assertEqual(report.sample_size, 0)
        self.assertFalse(report.is_reliable)
        self.assertTrue(report.validation_notes)

    def test_bounds_recommend_adopting_winning_variant(self) -> None:
        # 影子 11000/11100 对默认生产 8000：regret 为正，影子更好
        for i in range(20):
            self._shadow(f"c{i}", i, 11000 + (i % 2) * 100)
        bounds = self._run(self.analyzer.calculate_regret_bounds(self.experiment.id, self.variant.id))

        self.assertEqual(bounds.sample_size, 20)
        self.assertAlmostEqual(bounds.current_regret, 61000)
        self.assertAlmostEqual(bounds.hoeffding_epsilon, math.sqrt(math.log(2 / 0.05) / 40))
        self.assertAlmostEqual(bounds.upper_bound - bounds.current_regret, bounds.hoeffding_epsilon * 20 * 50)
        self.assertEqual(bounds.stop_recommendation, StopRecommendation.stop_winning)

    def test_bounds_recommend_rejecting_losing_variant(self) -> None:
        for i in range(20):
            self._shadow(f"c{i}", i, 2000 + (i % 2) * 100)
        bounds = self._run(
            self.analyzer.calculate_regret_bounds(self.experiment.id, self.variant.id, time_horizon=40)
        )
        self.assertAlmostEqual(bounds.current_regret, -119000)
        self.assertEqual(bounds.stop_recommendation, StopRecommendation.stop_losing)
        self.assertAlmostEqual(bounds.projected_regret, bounds.current_regret * 2)

        report = self._run(self.analyzer.analyze_experiment_regret(self.experiment.id, self.variant.id))
        self.assertIn("production policy appears superior", report.assessment["recommendedAction"])

    def test_bounds_edge_cases(self) -> None:
        bounds = self._run(self.analyzer.calculate_regret_bounds(self.experiment.id, self.variant.id))
        self.assertEqual(bounds.sample_size, 0)
        self.assertEqual(bounds.stop_recommendation, StopRecommendation.continue_)
        with self.assertRaises(ValueError):
            self._run(self.analyzer.calculate_regret_bounds(self.experiment.id, self.variant.id, confidence_level=1.0))

    def test_compare_variants_ranks_by_average_regret(self) -> None:
        good = self._new_variant("good")
        idle = self._new_variant("idle")
        for i in range(10):
            self._shadow(f"m{i}", i, 8000 + (i % 2) * 200)
            self._shadow(f"g{i}", i, 11000 + (i % 2) * 200, variant=good)

        result = self._run(self.analyzer.compare_variant_regret(self.experiment.id))
        ranked = result["variantComparison"]
        self.assertEqual([r["variantId"] for r in ranked], [good.id, self.variant.id])
        self.assertNotIn(idle.id, [r["variantId"] for r in ranked])
        self.assertEqual(ranked[0]["regretRank"], 1)
        self.assertTrue(ranked[1]["isStatisticallyBetter"])
        self.assertGreater(ranked[1]["effectSize"], 0.5)
        self.assertEqual(result["bestVariant"]["variantId"], good.id)
        self.assertAlmostEqual(result["worstVariant"]["regretDisadvantage"], 3000)

    def test_compare_with_no_samples(self) -> None:
        result = self._run(self.analyzer.compare_variant_regret(self.experiment.id))
        self.assertEqual(result["variantComparison"], [])
        self.assertIsNone(result["bestVariant"])

    def test_unknown_ids(self) -> None:
        with self.assertRaises(ExperimentNotFoundError):
            self._run(self.analyzer.analyze_experiment_regret("missing", self.variant.id))
        with self.assertRaises(VariantNotFoundError):
            self._run(self.analyzer.analyze_experiment_regret(self.experiment.id, "missing"))
        with self.assertRaises(ExperimentNotFoundError):
            self._run(self.analyzer.compare_variant_regret("missing"))


if __name__ == "__main__":
    unittest.main()
