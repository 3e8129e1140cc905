"""影子实验领域异常。

只有“硬前置条件”才会抛异常（实验/变体不存在、配置非法、状态流转非法）；
策略执行失败、安全拒绝、统计不可靠都以结构化结果返回。
"""

from __future__ import annotations


class ShadowLabError(Exception):
    """所有领域异常的基类"""


class ExperimentNotFoundError(ShadowLabError):
    def __init__(self, experiment_id: str):
        super().__init__(f"experiment not found: {experiment_id}")
        self.experiment_id = experiment_id


class VariantNotFoundError(ShadowLabError):
    def __init__(self, variant_id: str):
        super().__init__(f"variant not found: {variant_id}")
        self.variant_id = variant_id


class ExperimentValidationError(ShadowLabError, ValueError):
    """实验配置非法或状态流转非法"""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [message])


class SafetyViolationError(ShadowLabError):
    """安全约束拒绝了一次运维操作（例如存在 critical 检查时解除紧急停止）"""

    def __init__(self, message: str, critical_issues: list[str] | None = None):
        super().__init__(message)
        self.critical_issues = list(critical_issues or [])
