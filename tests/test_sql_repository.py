from __future__ import annotations

import asyncio
import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from app.core.database import Base, build_engine
from app.models import shadow as _shadow_models  # noqa: F401  注册表结构
from app.shadow.engine import ShadowDecisionEngine
from app.shadow.entities import (
    EmergencyStopCondition,
    Experiment,
    ExperimentVariant,
    ProductionDecision,
    ShadowDecision,
    TargetPopulation,
)
from app.shadow.enums import ExperimentStatus
from app.shadow.regret import RegretAnalyzer
from app.shadow.sql_repository import SqlShadowRepository
from tests.shadow_builders import QUESTION_POOL, make_context, make_governor, seed_running_experiment

BASE = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


class SqlShadowRepositoryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        # 仓储在工作线程里开会话，用文件库让每个线程拿到自己的连接
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'shadow.db')}")
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.repo = SqlShadowRepository(self.session_factory)

    def tearDown(self) -> None:
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _run(self, coro):
        return asyncio.run(coro)

    def test_experiment_round_trip(self) -> None:
        exp = Experiment(
            name="sql",
            target_population=TargetPopulation(regions=["emea"], min_message_count=3),
            emergency_stop_conditions=[EmergencyStopCondition(metric="error_rate", threshold=0.2)],
            metadata={"owner": "growth"},
            created_at=BASE,
        )
        self._run(self.repo.create_experiment(exp))

        loaded = self._run(self.repo.get_experiment(exp.id))
        self.assertEqual(loaded.target_population.regions, ["emea"])
        self.assertEqual(loaded.target_population.min_message_count, 3)
        self.assertEqual(loaded.emergency_stop_conditions[0].threshold, 0.2)
        self.assertEqual(loaded.metadata, {"owner": "growth"})
        self.assertEqual(loaded.created_at, BASE)
        self.assertIsNotNone(loaded.created_at.tzinfo)

        loaded.status = ExperimentStatus.running
        loaded.started_at = BASE + timedelta(minutes=5)
        loaded.metadata["emergency_stop"] = {"triggered": False}
        self._run(self.repo.update_experiment(loaded))

        again = self._run(self.repo.get_experiment(exp.id))
        self.assertEqual(again.status, ExperimentStatus.running)
        self.assertEqual(again.started_at, BASE + timedelta(minutes=5))
        self.assertIn("emergency_stop", again.metadata)
        self.assertEqual(self._run(self.repo.count_experiments(ExperimentStatus.running)), 1)
        self.assertEqual(len(self._run(self.repo.list_experiments(ExperimentStatus.draft))), 0)
        self.assertIsNone(self._run(self.repo.get_experiment("missing")))

        with self.assertRaises(KeyError):
            self._run(self.repo.update_experiment(Experiment(name="ghost")))

    def test_variants_active_filter(self) -> None:
        exp = self._run(self.repo.create_experiment(Experiment(name="v")))
        self._run(self.repo.create_variant(ExperimentVariant(experiment_id=exp.id, name="a", policy_type="epsilon_greedy")))
        self._run(
            self.repo.create_variant(
                ExperimentVariant(experiment_id=exp.id, name="b", policy_type="budget_focused", is_active=False)
            )
        )
        self.assertEqual(len(self._run(self.repo.list_variants(exp.id))), 2)
        active = self._run(self.repo.list_variants(exp.id, active_only=True))
        self.assertEqual([v.name for v in active], ["a"])

    def test_shadow_decision_queries(self) -> None:
        for i in range(5):
            self._run(
                self.repo.save_shadow_decision(
                    ShadowDecision(
                        conversation_id="c", experiment_id="e", variant_id="v", shadow_action=f"a{i}",
                        shadow_reasoning="", execution_time_ms=1, timestamp=BASE + timedelta(seconds=i),
                        resource_usage={"memoryMb": 12.5},
                    )
                )
            )
        latest = self._run(self.repo.list_shadow_decisions(experiment_id="e", limit=2))
        self.assertEqual([d.shadow_action for d in latest], ["a3", "a4"])
        self.assertEqual(latest[0].resource_usage, {"memoryMb": 12.5})
        self.assertEqual(latest[0].timestamp.tzinfo, timezone.utc)

        since = self._run(self.repo.list_shadow_decisions(since=BASE + timedelta(seconds=3)))
        self.assertEqual(len(since), 2)
        self.assertEqual(self._run(self.repo.count_shadow_decisions_since(BASE + timedelta(seconds=1), "e")), 4)
        self.assertEqual(self._run(self.repo.list_shadow_decisions(limit=0)), [])

    def test_upserts(self) -> None:
        p = ProductionDecision(id="p1", conversation_id="c", action="a", expected_value=100, timestamp=BASE)
        self._run(self.repo.save_production_decision(p))
        self._run(
            self.repo.save_production_decision(
                ProductionDecision(id="p1", conversation_id="c", action="a", expected_value=200, timestamp=BASE)
            )
        )
        stored = self._run(self.repo.list_production_decisions("c"))
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].expected_value, 200)

        for q in QUESTION_POOL:
            self._run(self.repo.save_question(q))
        self._run(self.repo.save_question(QUESTION_POOL[0]))
        questions = self._run(self.repo.list_questions())
        self.assertEqual(len(questions), len(QUESTION_POOL))
        self.assertEqual(
            {q.id: dict(q.metrics) for q in questions}["q_budget_big"], {"avg_budget_discovered": 9500.0}
        )

    def test_session_work_runs_off_the_event_loop_thread(self) -> None:
        threads = []

        def recording_factory():
            threads.append(threading.get_ident())
            return self.session_factory()

        repo = SqlShadowRepository(recording_factory)

        async def scenario():
            loop_thread = threading.get_ident()
            await repo.create_experiment(Experiment(name="threaded"))
            return loop_thread

        loop_thread = self._run(scenario())
        self.assertEqual(len(threads), 1)
        self.assertNotEqual(threads[0], loop_thread)

    def test_engine_over_sql_backend(self) -> None:
        governor = make_governor(self.repo)
        engine = ShadowDecisionEngine(self.repo, governor, regret_recorder=RegretAnalyzer(self.repo))
        exp, variants = self._run(seed_running_experiment(self.repo, ("epsilon_greedy", "cultural_adaptive")))
        production = ProductionDecision(id="prod-1", conversation_id="conv-1", action="a", qualification_score=0.5)

        results = self._run(engine.execute_shadow_decisions("conv-1", make_context(), production))
        self.assertEqual(len(results), 2)
        self.assertTrue(all(not r.error_occurred for r in results))

        for r in results:
            d = r.shadow_decision
            metrics = self._run(self.repo.get_shadow_metrics(d.id))
            self.assertEqual(metrics.shadow_expected_value, r.shadow_metrics.shadow_expected_value)
            self.assertEqual(len(metrics.alternative_outcomes), 3)
            score = self._run(self.repo.get_propensity_score(d.propensity_score_id))
            self.assertAlmostEqual(score.propensity_score, d.propensity_score)

        regrets = self._run(self.repo.list_regret_analyses(experiment_id=exp.id))
        self.assertEqual(len(regrets), 2)
        self.assertTrue(all(r.production_value == 5000 for r in regrets))


if __name__ == "__main__":
    unittest.main()
