# 路由汇总
from fastapi import APIRouter
from app.api.v1.endpoints import evaluation, experiments, safety, shadow

api_router = APIRouter()

# 实验管理 (访问地址: /api/v1/experiments/...)
api_router.include_router(experiments.router, prefix="/experiments", tags=["实验管理模块"])

# 影子决策 (访问地址: /api/v1/shadow/...)
api_router.include_router(shadow.router, prefix="/shadow", tags=["影子决策模块"])

# 安全治理 (访问地址: /api/v1/safety/...)
api_router.include_router(safety.router, prefix="/safety", tags=["安全治理模块"])

# 离线评估：IPS / regret (访问地址: /api/v1/evaluation/...)
api_router.include_router(evaluation.router, prefix="/evaluation", tags=["离线评估模块"])
