# 依赖注入（影子实验服务、领域异常映射）
from fastapi import HTTPException, Request

from app.shadow.container import ShadowServices
from app.shadow.errors import (
    ExperimentNotFoundError,
    ExperimentValidationError,
    SafetyViolationError,
    ShadowLabError,
    VariantNotFoundError,
)


def get_services(request: Request) -> ShadowServices:
    """启动时装配好的服务挂在 app.state 上"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="shadow services not initialized")
    return services


def http_error(exc: ShadowLabError) -> HTTPException:
    """领域异常 -> HTTP 状态码"""
    if isinstance(exc, (ExperimentNotFoundError, VariantNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExperimentValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "errors": exc.errors})
    if isinstance(exc, SafetyViolationError):
        return HTTPException(status_code=409, detail={"message": str(exc), "criticalIssues": exc.critical_issues})
    return HTTPException(status_code=500, detail=str(exc))
