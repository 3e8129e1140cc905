import math
from statistics import NormalDist
from typing import List, Sequence

# 常用置信水平对应的双侧 z 值；其余水平走正态分位数
_Z_TABLE = {0.99: 2.576, 0.95: 1.96, 0.90: 1.645, 0.80: 1.28}


def mean(xs: Sequence[float]) -> float:
    if not xs:
        return float("nan")
    return sum(xs) / len(xs)


def var(xs: Sequence[float]) -> float:
    """总体方差"""
    if not xs:
        return float("nan")
    m = mean(xs)
    return sum((x - m) ** 2 for x in xs) / len(xs)


def stdev(xs: Sequence[float]) -> float:
    if not xs:
        return 0.0
    return math.sqrt(var(xs))


def median(xs: Sequence[float]) -> float:
    if not xs:
        return 0.0
    s = sorted(xs)
    mid = len(s) // 2
    if len(s) % 2:
        return s[mid]
    return (s[mid - 1] + s[mid]) / 2


def percentile(sorted_xs: Sequence[float], p: float) -> float:
    """下标取整的分位数：sorted[floor(n*p)]，与截断规则保持同一口径"""
    if not sorted_xs:
        return 0.0
    idx = min(len(sorted_xs) - 1, max(0, int(math.floor(len(sorted_xs) * p))))
    return sorted_xs[idx]


def normal_cdf(x: float) -> float:
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def z_for_confidence(confidence: float) -> float:
    for level, z in _Z_TABLE.items():
        if abs(confidence - level) < 1e-9:
            return z
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence 必须在 (0, 1) 之间: {confidence}")
    return NormalDist().inv_cdf(1 - (1 - confidence) / 2)


def two_sided_p_value(z: float) -> float:
    return 2.0 * (1.0 - normal_cdf(abs(z)))


def cohens_d(a: List[float], b: List[float]) -> float:
    """合并标准差口径的 Cohen's d；两组都无波动时返回 0"""
    if not a or not b:
        return 0.0
    pooled = math.sqrt((var(a) + var(b)) / 2)
    if pooled == 0:
        return 0.0
    return abs(mean(a) - mean(b)) / pooled


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))
