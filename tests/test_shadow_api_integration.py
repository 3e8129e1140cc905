from __future__ import annotations

import asyncio
import unittest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import deps
from app.api.v1.router import api_router
from app.core.config import settings
from app.shadow.container import build_services
from app.shadow.repository import InMemoryShadowRepository
from app.shadow.resources import StaticResourceSampler
from app.shadow.telemetry import NullTelemetryPublisher
from tests.shadow_builders import QUESTION_POOL


def _experiment_payload(**overrides) -> dict:
    payload = {
        "name": "budget-first",
        "description": "budget focused vs epsilon greedy",
        "trafficAllocation": 1.0,
        "minimumSampleSize": 10,
        "variants": [
            {"name": "control", "policyType": "epsilon_greedy", "policyConfig": {"epsilon": 0.0}, "allocation": 0.5, "isControl": True},
            {"name": "budget", "policyType": "budget_focused", "allocation": 0.5},
        ],
    }
    payload.update(overrides)
    return payload


class ShadowApiIntegrationTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._sampler = StaticResourceSampler(memory_mb=64, cpu_percent=1)
        self._repo = InMemoryShadowRepository()
        self._services = build_services(
            settings, repository=self._repo, sampler=self._sampler, telemetry=NullTelemetryPublisher()
        )

        app = FastAPI()
        app.include_router(api_router, prefix="/api/v1")
        app.dependency_overrides[deps.get_services] = lambda: self._services
        self._client = TestClient(app)

        for q in QUESTION_POOL:
            asyncio.run(self._repo.save_question(q))

    def tearDown(self) -> None:
        self._client.close()

    def _create_running(self) -> dict:
        r = self._client.post("/api/v1/experiments", json=_experiment_payload())
        self.assertEqual(r.status_code, 200, r.text)
        exp = r.json()["data"]
        r = self._client.post(f"/api/v1/experiments/{exp['id']}/start")
        self.assertEqual(r.status_code, 200, r.text)
        return exp

    def _execute(self, conversation_id: str) -> dict:
        r = self._client.post(
            "/api/v1/shadow/execute",
            json={
                "conversationId": conversation_id,
                "context": {
                    "state": {"messageCount": 6, "engagement": 0.7, "qualification": 0.6, "cultural": 0.5},
                    "conversationStage": "discovery",
                    "region": "emea",
                },
                "productionDecision": {
                    "id": f"prod-{conversation_id}",
                    "action": "ask_question_timeline",
                    "actionProbability": 0.5,
                    "expectedValue": 7500,
                },
            },
        )
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()["data"]

    def test_experiment_lifecycle(self) -> None:
        r = self._client.post("/api/v1/experiments", json=_experiment_payload())
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertEqual(body["code"], 200)
        exp = body["data"]
        self.assertEqual(exp["status"], "draft")
        self.assertEqual(len(exp["variants"]), 2)
        self.assertEqual(exp["trafficAllocation"], 1.0)

        for action, expected in (("start", "running"), ("pause", "paused"), ("resume", "running"), ("stop", "completed")):
            r = self._client.post(f"/api/v1/experiments/{exp['id']}/{action}")
            self.assertEqual(r.status_code, 200, r.text)
            self.assertEqual(r.json()["data"]["status"], expected)

        r = self._client.post(f"/api/v1/experiments/{exp['id']}/start")
        self.assertEqual(r.status_code, 400, r.text)

        r = self._client.post(f"/api/v1/experiments/{exp['id']}/explode")
        self.assertEqual(r.status_code, 404, r.text)

        r = self._client.get("/api/v1/experiments?status=completed")
        self.assertEqual([e["id"] for e in r.json()["data"]], [exp["id"]])

    def test_create_validation_errors(self) -> None:
        payload = _experiment_payload(trafficAllocation=1.5)
        payload["variants"][1]["policyType"] = "unknown_policy"
        r = self._client.post("/api/v1/experiments", json=payload)
        self.assertEqual(r.status_code, 400, r.text)
        errors = r.json()["detail"]["errors"]
        self.assertEqual(len(errors), 2)

    def test_unknown_experiment_returns_404(self) -> None:
        self.assertEqual(self._client.get("/api/v1/experiments/missing").status_code, 404)
        self.assertEqual(self._client.get("/api/v1/experiments/missing/status").status_code, 404)
        self.assertEqual(self._client.get("/api/v1/safety/circuit-breakers/missing").status_code, 404)
        self.assertEqual(self._client.get("/api/v1/evaluation/regret/compare/missing").status_code, 404)

    def test_execute_and_evaluate(self) -> None:
        exp = self._create_running()
        control_id = exp["variants"][0]["id"]

        data = self._execute("conv-1")
        self.assertEqual(data["conversationId"], "conv-1")
        self.assertEqual(data["executed"], 2)
        self.assertTrue(all(not r["errorOccurred"] for r in data["results"]))
        for i in range(2, 6):
            self._execute(f"conv-{i}")

        status = self._client.get(f"/api/v1/experiments/{exp['id']}/status").json()["data"]
        self.assertEqual(status["totalDecisions"], 10)
        self.assertEqual(status["sampleProgress"], 1.0)

        r = self._client.post(
            "/api/v1/evaluation/ips/estimate",
            json={"experimentId": exp["id"], "variantId": control_id, "truncation": {"method": "none"}},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["sampleSize"], 5)

        r = self._client.post(
            "/api/v1/evaluation/ips/estimate",
            json={"experimentId": exp["id"], "variantId": control_id, "metric": "revenue"},
        )
        self.assertEqual(r.status_code, 400, r.text)

        r = self._client.post("/api/v1/evaluation/ips/batch", json={"experimentId": exp["id"]})
        self.assertEqual(len(r.json()["data"]), 2)

        r = self._client.get(f"/api/v1/evaluation/ips/assumptions/{exp['id']}/{control_id}")
        self.assertEqual(r.json()["data"]["overallValidity"], "invalid")

        r = self._client.post(
            "/api/v1/evaluation/regret/report", json={"experimentId": exp["id"], "variantId": control_id}
        )
        self.assertEqual(r.status_code, 200, r.text)
        report = r.json()["data"]
        self.assertEqual(report["sampleSize"], 5)
        self.assertEqual(report["expectedValueAnalysis"]["matchedRate"], 1.0)

        r = self._client.post(
            "/api/v1/evaluation/regret/bounds",
            json={"experimentId": exp["id"], "variantId": control_id, "timeHorizon": 100},
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertIn(r.json()["data"]["stopRecommendation"], {"continue", "stop_winning", "stop_losing"})

        r = self._client.get(f"/api/v1/evaluation/regret/compare/{exp['id']}")
        self.assertEqual(len(r.json()["data"]["variantComparison"]), 2)

    def test_emergency_stop_flow(self) -> None:
        exp = self._create_running()

        r = self._client.post("/api/v1/safety/emergency-stop", json={"reason": "drill"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["stoppedExperiments"], 1)

        r = self._client.post("/api/v1/safety/check", json={"experimentId": exp["id"], "conversationId": "c"})
        self.assertFalse(r.json()["data"]["allowed"])
        self.assertEqual(self._execute("conv-1")["executed"], 0)

        r = self._client.post(f"/api/v1/experiments/{exp['id']}/start")
        self.assertEqual(r.status_code, 400, r.text)

        self._sampler.memory_mb = 500
        r = self._client.post("/api/v1/safety/emergency-stop/clear", json={"clearedBy": "ops", "reason": "try"})
        self.assertEqual(r.status_code, 409, r.text)
        self.assertTrue(r.json()["detail"]["criticalIssues"])

        self._sampler.memory_mb = 64
        r = self._client.post("/api/v1/safety/emergency-stop/clear", json={"clearedBy": "ops", "reason": "ok"})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertFalse(r.json()["data"]["emergencyStopActive"])

        r = self._client.post(f"/api/v1/experiments/{exp['id']}/start")
        self.assertEqual(r.json()["data"]["status"], "running")

    def test_safety_status_and_outcomes(self) -> None:
        exp = self._create_running()
        r = self._client.get("/api/v1/safety/status")
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual(data["activeExperiments"], 1)
        self.assertIn("resource_usage", data["checks"])

        for _ in range(settings.BREAKER_CONSECUTIVE_FAILURE_LIMIT):
            r = self._client.post(
                "/api/v1/safety/outcome",
                json={"experimentId": exp["id"], "success": False, "durationMs": 12, "error": "boom"},
            )
        self.assertEqual(r.json()["data"]["breakerState"], "open")

        breakers = self._client.get("/api/v1/safety/circuit-breakers").json()["data"]
        self.assertEqual(len(breakers), 1)
        r = self._client.get(f"/api/v1/safety/circuit-breakers/{exp['id']}")
        self.assertEqual(r.status_code, 200, r.text)

        history = self._client.get("/api/v1/safety/history?hours=1").json()["data"]
        self.assertEqual(len(history), 1)


class ServicesNotReadyTestCase(unittest.TestCase):
    def test_returns_503_before_startup(self) -> None:
        app = FastAPI()
        app.include_router(api_router, prefix="/api/v1")
        with TestClient(app) as client:
            r = client.get("/api/v1/safety/status")
        self.assertEqual(r.status_code, 503, r.text)


if __name__ == "__main__":
    unittest.main()
