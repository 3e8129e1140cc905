from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.shadow.enums import TruncationMethod
from app.shadow.ips import TruncationConfig


class TruncationSchema(BaseModel):
    method: TruncationMethod = TruncationMethod.percentile
    percentile: float = Field(default=0.05, ge=0, lt=0.5)
    min_propensity: float = Field(default=0.01, alias="minPropensity")
    max_propensity: float = Field(default=10.0, alias="maxPropensity")

    model_config = ConfigDict(populate_by_name=True)

    def to_config(self) -> TruncationConfig:
        return TruncationConfig(
            method=self.method,
            percentile=self.percentile,
            min_propensity=self.min_propensity,
            max_propensity=self.max_propensity,
        )


class IPSEstimateRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    variant_id: str = Field(..., alias="variantId")
    metric: str = "qualification_score"
    truncation: Optional[TruncationSchema] = None
    confidence_level: float = Field(default=0.95, alias="confidenceLevel", gt=0, lt=1)

    model_config = ConfigDict(populate_by_name=True)


class CompareToProductionRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    variant_id: str = Field(..., alias="variantId")
    metrics: Optional[List[str]] = None
    confidence_level: float = Field(default=0.95, alias="confidenceLevel", gt=0, lt=1)

    model_config = ConfigDict(populate_by_name=True)


class BatchAnalyzeRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    metrics: Optional[List[str]] = None
    confidence_level: float = Field(default=0.95, alias="confidenceLevel", gt=0, lt=1)

    model_config = ConfigDict(populate_by_name=True)


class RegretReportRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    variant_id: str = Field(..., alias="variantId")
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class RegretBoundsRequest(BaseModel):
    experiment_id: str = Field(..., alias="experimentId")
    variant_id: str = Field(..., alias="variantId")
    confidence_level: float = Field(default=0.95, alias="confidenceLevel", gt=0, lt=1)
    time_horizon: Optional[int] = Field(default=None, alias="timeHorizon", gt=0)

    model_config = ConfigDict(populate_by_name=True)
