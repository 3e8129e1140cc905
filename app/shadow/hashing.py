"""会话入组判定：对会话 ID 做确定性哈希，不需要保存成员表。"""

from __future__ import annotations

import hashlib

_BUCKETS = 10_000


def _h64(s: str) -> int:
    d = hashlib.sha256(s.encode("utf-8")).digest()
    h = 0
    for i in range(8):
        h = (h << 8) | d[i]
    return h & ((1 << 63) - 1)


def traffic_bucket(conversation_id: str) -> float:
    """把会话映射到 [0, 1) 的固定位置"""
    return (_h64(conversation_id) % _BUCKETS) / _BUCKETS


def should_include_in_experiment(conversation_id: str, traffic_allocation: float) -> bool:
    """同一会话在实验生命周期内入组结果恒定"""
    if traffic_allocation <= 0:
        return False
    if traffic_allocation >= 1:
        return True
    return traffic_bucket(conversation_id) < traffic_allocation
