from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EmergencyStopRequest(BaseModel):
    reason: str
    triggered_by: str = Field(default="operator", alias="triggeredBy")

    model_config = ConfigDict(populate_by_name=True)


class ClearEmergencyStopRequest(BaseModel):
    cleared_by: str = Field(..., alias="clearedBy")
    reason: str

    model_config = ConfigDict(populate_by_name=True)


class PreExecutionCheckRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    conversation_id: str = Field(..., alias="conversationId")

    model_config = ConfigDict(populate_by_name=True)


class DecisionOutcomeRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    success: bool
    duration_ms: float = Field(..., alias="durationMs", ge=0)
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)
