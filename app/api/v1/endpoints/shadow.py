from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api import deps
from app.schemas.common_schema import ApiResponse
from app.schemas.shadow_schema import ExecuteShadowRequest, execution_result_dict
from app.shadow.container import ShadowServices


router = APIRouter()


@router.post("/execute", response_model=ApiResponse[dict])
async def execute_shadow(
    req: ExecuteShadowRequest,
    services: ShadowServices = Depends(deps.get_services),
) -> ApiResponse[dict]:
    """生产路径旁路调用：对适用实验的每个变体跑一次影子决策，永不报错"""
    results = await services.engine.execute_shadow_decisions(
        req.conversation_id,
        req.to_context(),
        req.to_production_decision(),
    )
    return ApiResponse(
        data={
            "conversationId": req.conversation_id,
            "executed": len(results),
            "results": [execution_result_dict(r) for r in results],
        }
    )
