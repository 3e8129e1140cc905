from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api import deps
from app.schemas.common_schema import ApiResponse
from app.schemas.safety_schema import (
    ClearEmergencyStopRequest,
    DecisionOutcomeRequest,
    EmergencyStopRequest,
    PreExecutionCheckRequest,
)
from app.shadow.container import ShadowServices
from app.shadow.errors import ShadowLabError


router = APIRouter()


@router.get("/status", response_model=ApiResponse[dict])
async def safety_status(services: ShadowServices = Depends(deps.get_services)) -> ApiResponse[dict]:
    status = await services.governor.get_comprehensive_safety_status()
    return ApiResponse(data=status.to_dict())


@router.get("/history", response_model=ApiResponse[list])
async def safety_history(
    hours: float = Query(default=24, gt=0),
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[list]:
    return ApiResponse(data=[s.to_dict() for s in services.governor.get_safety_history(hours)])


@router.post("/check", response_model=ApiResponse[dict])
async def pre_execution_check(
    req: PreExecutionCheckRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    decision = await services.governor.perform_pre_execution_safety_check(req.experiment_id, req.conversation_id)
    return ApiResponse(data=decision.to_dict())


@router.post("/outcome", response_model=ApiResponse[dict])
async def record_outcome(
    req: DecisionOutcomeRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    await services.governor.record_shadow_decision_outcome(req.experiment_id, req.success, req.duration_ms, req.error)
    return ApiResponse(
        data={
            "experimentId": req.experiment_id,
            "breakerState": services.governor.get_circuit_breaker_state(req.experiment_id).value,
            "emergencyStopActive": services.governor.emergency_stop_active,
        }
    )


@router.get("/circuit-breakers", response_model=ApiResponse[list])
async def circuit_breakers(services: ShadowServices = Depends(deps.get_services)) -> ApiResponse[list]:
    return ApiResponse(data=services.governor.get_circuit_breaker_states())


@router.get("/circuit-breakers/{experiment_id}", response_model=ApiResponse[dict])
async def circuit_breaker(
    experiment_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.governor.get_experiment_breaker(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)


@router.post("/emergency-stop", response_model=ApiResponse[dict])
async def emergency_stop(
    req: EmergencyStopRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    stopped = await services.governor.trigger_emergency_stop(req.reason, req.triggered_by)
    return ApiResponse(data={"emergencyStopActive": True, "stoppedExperiments": stopped, "reason": req.reason})


@router.post("/emergency-stop/clear", response_model=ApiResponse[dict])
async def clear_emergency_stop(
    req: ClearEmergencyStopRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        status = await services.governor.clear_emergency_stop(req.cleared_by, req.reason)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=status.to_dict())
