"""
影子策略实验模块

提供影子决策执行、安全治理（熔断/紧急停止/资源监控）、IPS 离线评估与 regret 分析的核心实现。
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.shadow.engine import ShadowDecisionEngine
    from app.shadow.experiments import ExperimentService
    from app.shadow.ips import IPSEvaluator
    from app.shadow.regret import RegretAnalyzer
    from app.shadow.repository import InMemoryShadowRepository, ShadowRepository
    from app.shadow.safety import SafetyGovernor

__all__ = [
    "ExperimentService",
    "InMemoryShadowRepository",
    "IPSEvaluator",
    "RegretAnalyzer",
    "SafetyGovernor",
    "ShadowDecisionEngine",
    "ShadowRepository",
]
