from app.models.shadow import (
    PropensityScoreRow,
    ProductionDecisionRow,
    QuestionRow,
    RegretAnalysisRow,
    ShadowDecisionRow,
    ShadowExperimentRow,
    ShadowMetricsRow,
    ShadowVariantRow,
)

__all__ = [
    "ShadowExperimentRow",
    "ShadowVariantRow",
    "ShadowDecisionRow",
    "PropensityScoreRow",
    "ShadowMetricsRow",
    "RegretAnalysisRow",
    "ProductionDecisionRow",
    "QuestionRow",
]
