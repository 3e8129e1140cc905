from __future__ import annotations

import asyncio
import copy
import time
import unittest

from app.shadow.engine import ShadowDecisionEngine, matches_target_population
from app.shadow.entities import Experiment, ProductionDecision, TargetPopulation
from app.shadow.enums import BreakerState, ExperimentStatus
from app.shadow.policies import register_policy, unregister_policy
from app.shadow.regret import RegretAnalyzer
from app.shadow.repository import InMemoryShadowRepository
from app.shadow.safety_config import CircuitBreakerConfig
from tests.shadow_builders import make_context, make_governor, no_cache_config, seed_running_experiment

_TEST_POLICIES = (
    "test_slow_policy",
    "test_mutating_policy",
    "test_failing_policy",
    "test_sleepy_policy",
    "test_blocking_sync_policy",
)


@register_policy("test_slow_policy")
async def _slow_policy(context, config, pool):
    await asyncio.sleep(0.5)
    return None


@register_policy("test_sleepy_policy")
async def _sleepy_policy(context, config, pool):
    await asyncio.sleep(0.05)
    return None


@register_policy("test_mutating_policy")
def _mutating_policy(context, config, pool):
    context.state.engagement = 0.0
    context.previous_questions.append("q_injected")
    context.metadata["touched"] = True
    return None


@register_policy("test_failing_policy")
def _failing_policy(context, config, pool):
    raise RuntimeError("boom")


@register_policy("test_blocking_sync_policy")
def _blocking_sync_policy(context, config, pool):
    time.sleep(0.3)
    return None


class _Uncopyable:
    def __deepcopy__(self, memo):
        raise TypeError("cannot snapshot")


class _BrokenRepository(InMemoryShadowRepository):
    async def list_experiments(self, status=None):
        raise RuntimeError("storage offline")


def tearDownModule() -> None:
    for kind in _TEST_POLICIES:
        unregister_policy(kind)


class ShadowEngineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = InMemoryShadowRepository()
        self.governor = make_governor(self.repo)
        self.regret = RegretAnalyzer(self.repo)
        self.engine = ShadowDecisionEngine(self.repo, self.governor, regret_recorder=self.regret)

    def _run(self, coro):
        return asyncio.run(coro)

    def test_executes_every_variant_and_persists(self) -> None:
        exp, variants = self._run(seed_running_experiment(self.repo, ("epsilon_greedy", "budget_focused")))
        production = ProductionDecision(
            id="prod-1", conversation_id="conv-1", action="ask_question_budget",
            action_probability=0.4, expected_value=7000,
        )
        results = self._run(self.engine.execute_shadow_decisions("conv-1", make_context(), production))

        self.assertEqual(len(results), 2)
        self.assertEqual({r.shadow_decision.variant_id for r in results}, {v.id for v in variants})
        for r in results:
            self.assertFalse(r.error_occurred)
            self.assertEqual(r.shadow_decision.production_decision_id, "prod-1")
            self.assertIsNotNone(r.shadow_metrics)
            p = r.propensity_score
            self.assertEqual(p.production_probability, 0.4)
            self.assertGreaterEqual(p.shadow_probability, 0.1)
            self.assertLessEqual(p.shadow_probability, 0.9)
            self.assertAlmostEqual(p.propensity_score, 0.4 / p.shadow_probability)
            self.assertEqual(r.shadow_decision.propensity_score_id, p.id)

        self.assertEqual(len(self._run(self.repo.list_shadow_decisions(experiment_id=exp.id))), 2)
        self.assertEqual(len(self._run(self.repo.list_propensity_scores(exp.id))), 2)
        regrets = self._run(self.repo.list_regret_analyses(experiment_id=exp.id))
        self.assertEqual(len(regrets), 2)
        self.assertTrue(all(r.production_decision_id == "prod-1" for r in regrets))
        self.assertTrue(all(r.production_value == 7000 for r in regrets))

    def test_production_context_is_not_mutated(self) -> None:
        self._run(seed_running_experiment(self.repo, ("test_mutating_policy",)))
        context = make_context()
        snapshot = copy.deepcopy(context)

        results = self._run(self.engine.execute_shadow_decisions("conv-1", context))
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].shadow_decision.shadow_action, "no_action")
        self.assertEqual(context, snapshot)

    def test_failure_in_one_branch_does_not_affect_others(self) -> None:
        self._run(seed_running_experiment(self.repo, ("test_failing_policy", "epsilon_greedy")))
        results = self._run(self.engine.execute_shadow_decisions("conv-1", make_context()))

        self.assertEqual(len(results), 2)
        failed = [r for r in results if r.error_occurred]
        ok = [r for r in results if not r.error_occurred]
        self.assertEqual(len(failed), 1)
        self.assertEqual(len(ok), 1)
        self.assertEqual(failed[0].error_message, "RuntimeError: boom")
        self.assertEqual(failed[0].shadow_decision.shadow_action, "error")

    def test_repeated_timeouts_open_the_breaker(self) -> None:
        config = no_cache_config()
        config.circuit_breaker = CircuitBreakerConfig(consecutive_failure_limit=6)
        governor = make_governor(self.repo, config)
        engine = ShadowDecisionEngine(self.repo, governor, execution_timeout_ms=20)
        exp, _ = self._run(seed_running_experiment(self.repo, ("test_slow_policy",)))

        for i in range(6):
            results = self._run(engine.execute_shadow_decisions(f"conv-{i}", make_context(f"conv-{i}")))
            self.assertEqual(len(results), 1)
            self.assertTrue(results[0].error_occurred)
            self.assertEqual(results[0].error_message, "Shadow policy timed out after 20ms")

        self.assertEqual(governor.get_circuit_breaker_state(exp.id), BreakerState.open)
        self.assertEqual(self._run(engine.execute_shadow_decisions("conv-7", make_context("conv-7"))), [])
        decisions = self._run(self.repo.list_shadow_decisions(experiment_id=exp.id))
        self.assertEqual(len(decisions), 6)
        self.assertTrue(all(d.error_occurred for d in decisions))
        # 6 个样本未达到全局紧急停止的最小样本数
        self.assertFalse(governor.emergency_stop_active)

    def test_blocking_sync_policy_times_out(self) -> None:
        engine = ShadowDecisionEngine(self.repo, self.governor, execution_timeout_ms=20)
        exp, _ = self._run(seed_running_experiment(self.repo, ("test_blocking_sync_policy",)))

        results = self._run(engine.execute_shadow_decisions("conv-1", make_context()))

        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].error_occurred)
        self.assertEqual(results[0].error_message, "Shadow policy timed out after 20ms")
        self.assertLess(results[0].execution_time_ms, 250)
        self.assertEqual(self.governor.breakers.get(exp.id).failure_count, 1)

    def test_context_snapshot_failure_is_reported(self) -> None:
        exp, _ = self._run(seed_running_experiment(self.repo))
        context = make_context()
        context.metadata["handle"] = _Uncopyable()

        results = self._run(self.engine.execute_shadow_decisions("conv-1", context))

        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].error_occurred)
        self.assertEqual(results[0].error_message, "TypeError: cannot snapshot")
        self.assertEqual(self.governor.breakers.get(exp.id).failure_count, 1)

    def test_invalid_production_probability_falls_back_to_neutral_propensity(self) -> None:
        self._run(seed_running_experiment(self.repo))
        production = ProductionDecision(id="prod-x", conversation_id="conv-1", action="a", action_probability=1.5)
        results = self._run(self.engine.execute_shadow_decisions("conv-1", make_context(), production))

        p = results[0].propensity_score
        self.assertEqual(p.propensity_score, 1.0)
        self.assertFalse(p.is_valid_for_ips)
        self.assertTrue(any("failed" in note for note in p.validation_notes))

    def test_emergency_stop_blocks_execution(self) -> None:
        self._run(seed_running_experiment(self.repo))
        self._run(self.governor.trigger_emergency_stop("drill", "ops"))
        self.assertEqual(self._run(self.engine.execute_shadow_decisions("conv-1", make_context())), [])

    def test_concurrency_cap_skips_excess_branches(self) -> None:
        self._run(seed_running_experiment(self.repo, ("test_sleepy_policy", "test_sleepy_policy")))
        engine = ShadowDecisionEngine(self.repo, self.governor, max_concurrent_executions=1)
        results = self._run(engine.execute_shadow_decisions("conv-1", make_context()))
        self.assertEqual(len(results), 1)
        self.assertEqual(engine.active_executions, 0)

    def test_never_raises_on_storage_failure(self) -> None:
        repo = _BrokenRepository()
        engine = ShadowDecisionEngine(repo, make_governor(repo))
        self.assertEqual(self._run(engine.execute_shadow_decisions("conv-1", make_context())), [])

    def test_applicable_experiments_respect_allocation_and_population(self) -> None:
        self._run(seed_running_experiment(self.repo, name="everyone"))
        self._run(seed_running_experiment(self.repo, name="nobody", traffic_allocation=0.0))
        self._run(
            self.repo.create_experiment(
                Experiment(
                    name="apac-only",
                    status=ExperimentStatus.running,
                    traffic_allocation=1.0,
                    target_population=TargetPopulation(regions=["apac"]),
                )
            )
        )
        applicable = self._run(self.engine.get_applicable_experiments("conv-1", make_context()))
        self.assertEqual([e.name for e in applicable], ["everyone"])


class TargetPopulationTestCase(unittest.TestCase):
    def test_empty_population_matches_everything(self) -> None:
        self.assertTrue(matches_target_population(TargetPopulation(), make_context()))

    def test_each_filter(self) -> None:
        ctx = make_context(message_count=3, qualification=0.4)
        self.assertFalse(matches_target_population(TargetPopulation(conversation_stages=["closing"]), ctx))
        self.assertFalse(matches_target_population(TargetPopulation(min_message_count=5), ctx))
        self.assertFalse(matches_target_population(TargetPopulation(min_qualification_score=0.5), ctx))
        self.assertFalse(matches_target_population(TargetPopulation(industry_verticals=["fintech"]), ctx))
        self.assertTrue(matches_target_population(TargetPopulation(regions=["emea"], min_message_count=3), ctx))


if __name__ == "__main__":
    unittest.main()
