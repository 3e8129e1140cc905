from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.shadow.entities import (
    DecisionContext,
    ProductionDecision,
    ShadowExecutionResult,
    SituationState,
    utcnow,
)


class SituationStateSchema(BaseModel):
    message_count: int = Field(default=0, alias="messageCount")
    engagement: float = 0.0
    qualification: float = 0.0
    technical: float = 0.0
    emotional: float = 0.0
    cultural: float = 0.0
    signals: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class DecisionContextSchema(BaseModel):
    state: SituationStateSchema = Field(default_factory=SituationStateSchema)
    conversation_stage: str = Field(default="discovery", alias="conversationStage")
    message_history: List[Dict[str, Any]] = Field(default_factory=list, alias="messageHistory")
    previous_questions: List[str] = Field(default_factory=list, alias="previousQuestions")
    region: Optional[str] = None
    industry_vertical: Optional[str] = Field(default=None, alias="industryVertical")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ProductionDecisionSchema(BaseModel):
    id: str
    action: str
    timestamp: Optional[datetime] = None
    action_probability: Optional[float] = Field(default=None, alias="actionProbability")
    expected_value: Optional[float] = Field(default=None, alias="expectedValue")
    qualification_score: Optional[float] = Field(default=None, alias="qualificationScore")

    model_config = ConfigDict(populate_by_name=True)


class ExecuteShadowRequest(BaseModel):
    conversation_id: str = Field(..., alias="conversationId")
    context: DecisionContextSchema = Field(default_factory=DecisionContextSchema)
    production_decision: Optional[ProductionDecisionSchema] = Field(default=None, alias="productionDecision")

    model_config = ConfigDict(populate_by_name=True)

    def to_context(self) -> DecisionContext:
        c = self.context
        return DecisionContext(
            conversation_id=self.conversation_id,
            state=SituationState(**c.state.model_dump()),
            conversation_stage=c.conversation_stage,
            message_history=list(c.message_history),
            previous_questions=list(c.previous_questions),
            region=c.region,
            industry_vertical=c.industry_vertical,
            metadata=dict(c.metadata),
        )

    def to_production_decision(self) -> Optional[ProductionDecision]:
        p = self.production_decision
        if p is None:
            return None
        return ProductionDecision(
            id=p.id,
            conversation_id=self.conversation_id,
            action=p.action,
            timestamp=p.timestamp or utcnow(),
            action_probability=p.action_probability,
            expected_value=p.expected_value,
            qualification_score=p.qualification_score,
        )


def execution_result_dict(result: ShadowExecutionResult) -> dict:
    d = result.shadow_decision
    out: Dict[str, Any] = {
        "shadowDecisionId": d.id,
        "experimentId": d.experiment_id,
        "variantId": d.variant_id,
        "shadowAction": d.shadow_action,
        "shadowQuestionId": d.shadow_question_id,
        "shadowReasoning": d.shadow_reasoning,
        "utilityScore": d.utility_score,
        "confidence": d.confidence,
        "propensityScore": d.propensity_score,
        "executionTimeMs": result.execution_time_ms,
        "errorOccurred": result.error_occurred,
        "errorMessage": result.error_message,
        "timestamp": d.timestamp.isoformat(),
    }
    if result.shadow_metrics is not None:
        out["expectedValue"] = result.shadow_metrics.shadow_expected_value
        out["advanceProbability"] = result.shadow_metrics.advance_probability
    return out
