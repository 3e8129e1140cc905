"""
影子实验生命周期

draft -> running <-> paused -> completed
running -> stopped（紧急停止强制），紧急停止解除后 stopped 可以重新 start。
completed 是终态。
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from app.shadow.entities import Experiment, ExperimentVariant, utcnow
from app.shadow.enums import ExperimentStatus
from app.shadow.errors import ExperimentNotFoundError, ExperimentValidationError
from app.shadow.policies import is_registered, validate_policy_config
from app.shadow.repository import ShadowRepository
from app.shadow.safety import SafetyGovernor

ALLOCATION_TOLERANCE = 0.01


def _allocation_errors(variants: Sequence[ExperimentVariant]) -> List[str]:
    errors: List[str] = []
    if not variants:
        errors.append("experiment must have at least one variant")
        return errors
    controls = sum(1 for v in variants if v.is_control)
    if controls != 1:
        errors.append(f"experiment must have exactly one control variant (found {controls})")
    total = sum(v.allocation for v in variants)
    if abs(total - 1.0) > ALLOCATION_TOLERANCE:
        errors.append(f"variant allocations must sum to 1.0 (got {total:.3f})")
    return errors


class ExperimentService:
    def __init__(self, repository: ShadowRepository, governor: Optional[SafetyGovernor] = None):
        self._repo = repository
        self._governor = governor

    async def _get(self, experiment_id: str) -> Experiment:
        experiment = await self._repo.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    def _validate_config(self, experiment: Experiment) -> List[str]:
        errors: List[str] = []
        if not experiment.name or not experiment.name.strip():
            errors.append("experiment name is required")
        if not 0 < experiment.traffic_allocation <= 1:
            errors.append(f"traffic_allocation must be in (0, 1] (got {experiment.traffic_allocation})")
        if not 0 < experiment.confidence_level < 1:
            errors.append(f"confidence_level must be in (0, 1) (got {experiment.confidence_level})")
        if experiment.minimum_sample_size <= 0:
            errors.append(f"minimum_sample_size must be positive (got {experiment.minimum_sample_size})")
        return errors

    @staticmethod
    def _validate_variant(variant: ExperimentVariant) -> List[str]:
        errors: List[str] = []
        if not is_registered(variant.policy_type):
            errors.append(f"variant {variant.name}: unknown policy type {variant.policy_type}")
        else:
            errors.extend(f"variant {variant.name}: {e}" for e in validate_policy_config(variant.policy_type, variant.policy_config))
        if not 0 <= variant.allocation <= 1:
            errors.append(f"variant {variant.name}: allocation must be in [0, 1] (got {variant.allocation})")
        return errors

    def _touch(self) -> None:
        if self._governor is not None:
            self._governor.invalidate_caches()

    # ========================================
    # 创建
    # ========================================
    async def create_experiment(self, experiment: Experiment, variants: Sequence[ExperimentVariant]) -> Experiment:
        """校验并创建 draft 实验；分配比例之和不为 1 只记录告警，start 时再强制"""
        errors = self._validate_config(experiment)
        if not variants:
            errors.append("experiment must have at least one variant")
        else:
            controls = sum(1 for v in variants if v.is_control)
            if controls != 1:
                errors.append(f"experiment must have exactly one control variant (found {controls})")
        for v in variants:
            errors.extend(self._validate_variant(v))
        if errors:
            raise ExperimentValidationError("invalid experiment configuration", errors)

        warnings: List[str] = []
        total = sum(v.allocation for v in variants)
        if abs(total - 1.0) > ALLOCATION_TOLERANCE:
            warnings.append(f"variant allocations sum to {total:.3f}, must equal 1.0 before start")
            logger.warning(f"实验 {experiment.name} 分配比例之和为 {total:.3f}，启动前需要修正")

        experiment.status = ExperimentStatus.draft
        if warnings:
            experiment.metadata["validation_warnings"] = warnings
        created = await self._repo.create_experiment(experiment)
        for v in variants:
            await self._repo.create_variant(dataclasses.replace(v, experiment_id=created.id))

        logger.info(f"✅ 实验已创建: {created.name} ({created.id}), variants={len(variants)}")
        return created

    async def add_variant(self, experiment_id: str, variant: ExperimentVariant) -> ExperimentVariant:
        experiment = await self._get(experiment_id)
        if experiment.status != ExperimentStatus.draft:
            raise ExperimentValidationError(
                f"variants can only be added to draft experiments (status: {experiment.status.value})"
            )
        errors = self._validate_variant(variant)
        if variant.is_control and any(v.is_control for v in await self._repo.list_variants(experiment_id)):
            errors.append("experiment already has a control variant")
        if errors:
            raise ExperimentValidationError("invalid variant configuration", errors)
        return await self._repo.create_variant(dataclasses.replace(variant, experiment_id=experiment_id))

    # ========================================
    # 状态流转
    # ========================================
    async def start_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._get(experiment_id)
        if experiment.status == ExperimentStatus.running:
            return experiment
        if experiment.status not in (ExperimentStatus.draft, ExperimentStatus.stopped):
            raise ExperimentValidationError(f"cannot start experiment in status {experiment.status.value}")
        if (
            experiment.status == ExperimentStatus.stopped
            and self._governor is not None
            and self._governor.emergency_stop_active
        ):
            raise ExperimentValidationError("cannot restart experiment while emergency stop is active")

        errors = _allocation_errors(await self._repo.list_variants(experiment_id, active_only=True))
        if errors:
            raise ExperimentValidationError("experiment cannot be started", errors)

        experiment.status = ExperimentStatus.running
        experiment.started_at = utcnow()
        experiment.ended_at = None
        experiment.metadata.pop("validation_warnings", None)
        updated = await self._repo.update_experiment(experiment)
        self._touch()
        logger.info(f"🚀 实验已启动: {experiment.name} ({experiment.id})")
        return updated

    async def _transition(
        self, experiment_id: str, allowed: Sequence[ExperimentStatus], target: ExperimentStatus
    ) -> Experiment:
        experiment = await self._get(experiment_id)
        if experiment.status == target:
            return experiment
        if experiment.status not in allowed:
            raise ExperimentValidationError(
                f"cannot move experiment from {experiment.status.value} to {target.value}"
            )
        experiment.status = target
        if target == ExperimentStatus.completed:
            experiment.ended_at = utcnow()
        updated = await self._repo.update_experiment(experiment)
        self._touch()
        logger.info(f"实验 {experiment.id} 状态变更: {target.value}")
        return updated

    async def pause_experiment(self, experiment_id: str) -> Experiment:
        return await self._transition(experiment_id, (ExperimentStatus.running,), ExperimentStatus.paused)

    async def resume_experiment(self, experiment_id: str) -> Experiment:
        return await self._transition(experiment_id, (ExperimentStatus.paused,), ExperimentStatus.running)

    async def stop_experiment(self, experiment_id: str) -> Experiment:
        return await self._transition(
            experiment_id,
            (ExperimentStatus.running, ExperimentStatus.paused, ExperimentStatus.stopped),
            ExperimentStatus.completed,
        )

    # ========================================
    # 查询
    # ========================================
    async def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        return await self._repo.list_experiments(status)

    async def get_experiment(self, experiment_id: str) -> Experiment:
        return await self._get(experiment_id)

    async def get_experiment_status(self, experiment_id: str) -> Dict[str, Any]:
        experiment = await self._get(experiment_id)
        variants = await self._repo.list_variants(experiment_id)
        decisions = await self._repo.list_shadow_decisions(experiment_id=experiment_id)

        variant_stats: Dict[str, Dict[str, Any]] = {}
        for v in variants:
            rows = [d for d in decisions if d.variant_id == v.id]
            errors = sum(1 for d in rows if d.error_occurred)
            avg_ms = sum(d.execution_time_ms for d in rows) / len(rows) if rows else 0.0
            variant_stats[v.id] = {
                "variantName": v.name,
                "policyType": v.policy_type,
                "isControl": v.is_control,
                "decisionCount": len(rows),
                "errorCount": errors,
                "errorRate": errors / len(rows) if rows else 0.0,
                "avgExecutionTimeMs": avg_ms,
            }

        total = len(decisions)
        return {
            "experiment": experiment,
            "variants": variants,
            "variantStats": variant_stats,
            "totalDecisions": total,
            "sampleProgress": min(1.0, total / experiment.minimum_sample_size),
        }

    async def monitor_experiment(self, experiment_id: str) -> Dict[str, Any]:
        status = await self.get_experiment_status(experiment_id)
        experiment: Experiment = status["experiment"]

        alerts: List[Dict[str, Any]] = []
        for variant_id, s in status["variantStats"].items():
            if not s["decisionCount"]:
                continue
            if s["errorRate"] > 0.10:
                level = "error"
            elif s["errorRate"] > 0.05:
                level = "warning"
            else:
                continue
            alerts.append(
                {
                    "level": level,
                    "variantId": variant_id,
                    "message": f"Variant {s['variantName']} error rate {s['errorRate'] * 100:.1f}%",
                }
            )

        if status["sampleProgress"] < 1.0 and experiment.status == ExperimentStatus.running:
            alerts.append(
                {
                    "level": "info",
                    "variantId": None,
                    "message": (
                        f"Sample size {status['totalDecisions']}/{experiment.minimum_sample_size} "
                        f"({status['sampleProgress'] * 100:.0f}%)"
                    ),
                }
            )

        auto_stop = False
        if self._governor is not None:
            auto_stop = await self._governor.evaluate_experiment_auto_stop(experiment_id)

        return {
            "experimentId": experiment_id,
            "status": experiment.status.value,
            "alerts": alerts,
            "autoStopCandidate": auto_stop,
            "sampleProgress": status["sampleProgress"],
            "totalDecisions": status["totalDecisions"],
        }
