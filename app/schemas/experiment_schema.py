from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.shadow.entities import (
    EmergencyStopCondition,
    Experiment,
    ExperimentResourceLimits,
    ExperimentVariant,
    TargetPopulation,
)
from app.shadow.enums import ExperimentStatus


class TargetPopulationSchema(BaseModel):
    conversation_stages: List[str] = Field(default_factory=list, alias="conversationStages")
    min_message_count: Optional[int] = Field(default=None, alias="minMessageCount")
    min_qualification_score: Optional[float] = Field(default=None, alias="minQualificationScore")
    regions: List[str] = Field(default_factory=list)
    industry_verticals: List[str] = Field(default_factory=list, alias="industryVerticals")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class EmergencyStopConditionSchema(BaseModel):
    metric: str
    threshold: float
    action: str = "stop"

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ResourceLimitsSchema(BaseModel):
    max_memory_mb: Optional[float] = Field(default=None, alias="maxMemoryMb")
    max_execution_time_ms: Optional[float] = Field(default=None, alias="maxExecutionTimeMs")
    max_concurrent_decisions: Optional[int] = Field(default=None, alias="maxConcurrentDecisions")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class VariantCreateRequest(BaseModel):
    name: str
    policy_type: str = Field(..., alias="policyType")
    policy_config: Dict[str, Any] = Field(default_factory=dict, alias="policyConfig")
    allocation: float = 0.5
    is_control: bool = Field(default=False, alias="isControl")
    description: str = ""

    model_config = ConfigDict(populate_by_name=True)

    def to_entity(self, experiment_id: str = "") -> ExperimentVariant:
        return ExperimentVariant(
            experiment_id=experiment_id,
            name=self.name,
            policy_type=self.policy_type,
            policy_config=dict(self.policy_config),
            allocation=self.allocation,
            is_control=self.is_control,
            description=self.description,
        )


class ExperimentCreateRequest(BaseModel):
    """取值范围由服务层校验，失败时返回 400 + 全部错误"""

    name: str
    description: str = ""
    target_population: TargetPopulationSchema = Field(default_factory=TargetPopulationSchema, alias="targetPopulation")
    traffic_allocation: float = Field(default=0.1, alias="trafficAllocation")
    primary_metric: str = Field(default="qualification_score", alias="primaryMetric")
    secondary_metrics: List[str] = Field(default_factory=list, alias="secondaryMetrics")
    minimum_sample_size: int = Field(default=100, alias="minimumSampleSize")
    confidence_level: float = Field(default=0.95, alias="confidenceLevel")
    minimum_detectable_effect: float = Field(default=0.05, alias="minimumDetectableEffect")
    emergency_stop_conditions: List[EmergencyStopConditionSchema] = Field(
        default_factory=list, alias="emergencyStopConditions"
    )
    resource_limits: ResourceLimitsSchema = Field(default_factory=ResourceLimitsSchema, alias="resourceLimits")
    created_by: str = Field(default="system", alias="createdBy")
    variants: List[VariantCreateRequest] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def to_entity(self) -> Experiment:
        return Experiment(
            name=self.name,
            description=self.description,
            target_population=TargetPopulation(**self.target_population.model_dump()),
            traffic_allocation=self.traffic_allocation,
            primary_metric=self.primary_metric,
            secondary_metrics=list(self.secondary_metrics),
            minimum_sample_size=self.minimum_sample_size,
            confidence_level=self.confidence_level,
            minimum_detectable_effect=self.minimum_detectable_effect,
            emergency_stop_conditions=[EmergencyStopCondition(**c.model_dump()) for c in self.emergency_stop_conditions],
            resource_limits=ExperimentResourceLimits(**self.resource_limits.model_dump()),
            created_by=self.created_by,
        )


class VariantOut(BaseModel):
    id: str
    experiment_id: str = Field(..., alias="experimentId")
    name: str
    policy_type: str = Field(..., alias="policyType")
    policy_config: Dict[str, Any] = Field(..., alias="policyConfig")
    allocation: float
    is_control: bool = Field(..., alias="isControl")
    is_active: bool = Field(..., alias="isActive")
    description: str = ""
    created_at: datetime = Field(..., alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ExperimentOut(BaseModel):
    id: str
    name: str
    description: str = ""
    status: ExperimentStatus
    target_population: TargetPopulationSchema = Field(..., alias="targetPopulation")
    traffic_allocation: float = Field(..., alias="trafficAllocation")
    primary_metric: str = Field(..., alias="primaryMetric")
    secondary_metrics: List[str] = Field(..., alias="secondaryMetrics")
    minimum_sample_size: int = Field(..., alias="minimumSampleSize")
    confidence_level: float = Field(..., alias="confidenceLevel")
    minimum_detectable_effect: float = Field(..., alias="minimumDetectableEffect")
    emergency_stop_conditions: List[EmergencyStopConditionSchema] = Field(..., alias="emergencyStopConditions")
    resource_limits: ResourceLimitsSchema = Field(..., alias="resourceLimits")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field(..., alias="createdBy")
    created_at: datetime = Field(..., alias="createdAt")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


def experiment_dict(experiment: Experiment) -> dict:
    return ExperimentOut.model_validate(experiment).model_dump(by_alias=True, mode="json")


def variant_dict(variant: ExperimentVariant) -> dict:
    return VariantOut.model_validate(variant).model_dump(by_alias=True, mode="json")
