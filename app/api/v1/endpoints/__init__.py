"""
API 端点模块

包含所有 v1 版本的 API 端点定义
"""

from app.api.v1.endpoints import evaluation, experiments, safety, shadow

__all__ = ["evaluation", "experiments", "safety", "shadow"]
