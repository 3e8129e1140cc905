from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api import deps
from app.schemas.common_schema import ApiResponse
from app.schemas.evaluation_schema import (
    BatchAnalyzeRequest,
    CompareToProductionRequest,
    IPSEstimateRequest,
    RegretBoundsRequest,
    RegretReportRequest,
)
from app.shadow.container import ShadowServices
from app.shadow.errors import ShadowLabError


router = APIRouter()


# ========================================
# IPS
# ========================================
@router.post("/ips/estimate", response_model=ApiResponse[dict])
async def ips_estimate(
    req: IPSEstimateRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        result = await services.ips.estimate_policy_performance(
            req.experiment_id,
            req.variant_id,
            req.metric,
            req.truncation.to_config() if req.truncation else None,
            confidence_level=req.confidence_level,
        )
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=result.to_dict())


@router.post("/ips/compare", response_model=ApiResponse[dict])
async def compare_to_production(
    req: CompareToProductionRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.ips.compare_to_production(
            req.experiment_id, req.variant_id, req.metrics, confidence_level=req.confidence_level
        )
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)


@router.post("/ips/batch", response_model=ApiResponse[dict])
async def batch_analyze(
    req: BatchAnalyzeRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.ips.batch_analyze_variants(
            req.experiment_id, req.metrics, confidence_level=req.confidence_level
        )
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)


@router.get("/ips/assumptions/{experiment_id}/{variant_id}", response_model=ApiResponse[dict])
async def validate_assumptions(
    experiment_id: str,
    variant_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.ips.validate_ips_assumptions(experiment_id, variant_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)


# ========================================
# Regret
# ========================================
@router.post("/regret/report", response_model=ApiResponse[dict])
async def regret_report(
    req: RegretReportRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    time_range = (req.start, req.end) if req.start or req.end else None
    try:
        report = await services.regret.analyze_experiment_regret(req.experiment_id, req.variant_id, time_range)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=report.to_dict())


@router.post("/regret/bounds", response_model=ApiResponse[dict])
async def regret_bounds(
    req: RegretBoundsRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        bounds = await services.regret.calculate_regret_bounds(
            req.experiment_id, req.variant_id, req.confidence_level, req.time_horizon
        )
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=bounds.to_dict())


@router.get("/regret/compare/{experiment_id}", response_model=ApiResponse[dict])
async def compare_variant_regret(
    experiment_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.regret.compare_variant_regret(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)
