from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api import deps
from app.schemas.common_schema import ApiResponse
from app.schemas.experiment_schema import (
    ExperimentCreateRequest,
    VariantCreateRequest,
    experiment_dict,
    variant_dict,
)
from app.shadow.container import ShadowServices
from app.shadow.enums import ExperimentStatus
from app.shadow.errors import ShadowLabError


router = APIRouter()


@router.post("", response_model=ApiResponse[dict])
async def create_experiment(
    req: ExperimentCreateRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        experiment = await services.experiments.create_experiment(
            req.to_entity(), [v.to_entity() for v in req.variants]
        )
        variants = await services.repository.list_variants(experiment.id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    data = experiment_dict(experiment)
    data["variants"] = [variant_dict(v) for v in variants]
    return ApiResponse(data=data)


@router.get("", response_model=ApiResponse[list])
async def list_experiments(
    status: Optional[ExperimentStatus] = Query(default=None),
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[list]:
    items = await services.experiments.list_experiments(status)
    return ApiResponse(data=[experiment_dict(e) for e in items])


@router.get("/{experiment_id}", response_model=ApiResponse[dict])
async def get_experiment(
    experiment_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        experiment = await services.experiments.get_experiment(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    data = experiment_dict(experiment)
    data["variants"] = [variant_dict(v) for v in await services.repository.list_variants(experiment_id)]
    return ApiResponse(data=data)


@router.post("/{experiment_id}/variants", response_model=ApiResponse[dict])
async def add_variant(
    experiment_id: str,
    req: VariantCreateRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        variant = await services.experiments.add_variant(experiment_id, req.to_entity(experiment_id))
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=variant_dict(variant))


@router.post("/{experiment_id}/{action}", response_model=ApiResponse[dict])
async def change_status(
    experiment_id: str,
    action: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    """start / pause / resume / stop"""
    handlers = {
        "start": services.experiments.start_experiment,
        "pause": services.experiments.pause_experiment,
        "resume": services.experiments.resume_experiment,
        "stop": services.experiments.stop_experiment,
    }
    handler = handlers.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"unknown action: {action}")
    try:
        experiment = await handler(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=experiment_dict(experiment))


@router.get("/{experiment_id}/status", response_model=ApiResponse[dict])
async def experiment_status(
    experiment_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        status = await services.experiments.get_experiment_status(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    status["experiment"] = experiment_dict(status["experiment"])
    status["variants"] = [variant_dict(v) for v in status["variants"]]
    return ApiResponse(data=status)


@router.get("/{experiment_id}/monitor", response_model=ApiResponse[dict])
async def monitor_experiment(
    experiment_id: str,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    try:
        data = await services.experiments.monitor_experiment(experiment_id)
    except ShadowLabError as exc:
        raise deps.http_error(exc) from exc
    return ApiResponse(data=data)
