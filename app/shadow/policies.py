"""Shadow policy strategies.

Every strategy is a plain function registered under a policy-type tag:

    (context, config, pool) -> QuestionCandidate | None

Strategies are stateless apart from ``config`` and only read the shared
candidate pool. A strategy may also be ``async`` (e.g. a model lookup);
``select_question`` awaits it on the loop. Plain functions run in a worker
thread so that a caller's ``asyncio.wait_for`` can time them out; the thread
itself is not interrupted and its late result is discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from app.shadow.entities import DecisionContext, Question, QuestionCandidate
from app.shadow.enums import PolicyType

PolicyResult = Optional[QuestionCandidate]
PolicyFn = Callable[
    [DecisionContext, Mapping[str, Any], Sequence[Question]],
    Union[PolicyResult, Awaitable[PolicyResult]],
]

_REGISTRY: Dict[str, PolicyFn] = {}


def _key(kind: Union[str, PolicyType]) -> str:
    return kind.value if isinstance(kind, PolicyType) else str(kind)


def register_policy(kind: Union[str, PolicyType]) -> Callable[[PolicyFn], PolicyFn]:
    def decorator(fn: PolicyFn) -> PolicyFn:
        _REGISTRY[_key(kind)] = fn
        return fn

    return decorator


def unregister_policy(kind: Union[str, PolicyType]) -> None:
    _REGISTRY.pop(_key(kind), None)


def is_registered(kind: Union[str, PolicyType]) -> bool:
    return _key(kind) in _REGISTRY


def registered_policy_types() -> List[str]:
    return sorted(_REGISTRY)


def get_policy(kind: Union[str, PolicyType]) -> PolicyFn:
    try:
        return _REGISTRY[_key(kind)]
    except KeyError:
        raise ValueError(f"unknown policy type: {_key(kind)}") from None


async def select_question(
    kind: Union[str, PolicyType],
    context: DecisionContext,
    config: Mapping[str, Any],
    pool: Sequence[Question],
) -> PolicyResult:
    policy = get_policy(kind)
    if inspect.iscoroutinefunction(policy):
        return await policy(context, config, pool)
    # 同步策略放到线程里跑，外层 wait_for 才能按墙钟超时
    result = await asyncio.to_thread(policy, context, config, pool)
    if inspect.isawaitable(result):
        result = await result
    return result


def validate_policy_config(kind: Union[str, PolicyType], config: Mapping[str, Any]) -> List[str]:
    """Returns a list of human-readable problems; empty means valid."""
    errors: List[str] = []
    if not is_registered(kind):
        errors.append(f"unknown policy type: {_key(kind)}")

    for name in ("epsilon", "exploration_rate"):
        if name in config:
            value = config[name]
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1]")

    for name in ("alpha", "beta", "target_budget"):
        if name in config:
            value = config[name]
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{name} must be positive")

    weights = config.get("weights")
    if weights is not None:
        total = sum(float(w) for w in dict(weights).values())
        if abs(total - 1.0) > 0.01:
            errors.append(f"weights must sum to 1.0 (got {total:.3f})")
    return errors


# ========================================
# helpers
# ========================================
def _rng(config: Mapping[str, Any]) -> random.Random:
    seed = config.get("seed")
    return random.Random(seed) if seed is not None else random.Random()


def _available(context: DecisionContext, pool: Sequence[Question]) -> List[Question]:
    asked = set(context.previous_questions)
    return [q for q in pool if q.id not in asked]


def _candidate(
    question: Question,
    *,
    score: float,
    exploration_value: float,
    confidence: float,
    reasoning: str,
) -> QuestionCandidate:
    return QuestionCandidate(
        question=question,
        utility_score=score,
        exploration_value=exploration_value,
        total_score=score,
        reasoning=reasoning,
        confidence=max(0.0, min(1.0, confidence)),
        selected_action=f"ask_question_{question.category}",
    )


def _best(scored: List[tuple[Question, float]]) -> tuple[Question, float]:
    # first maximum wins, keeps selection stable for equal scores
    best = scored[0]
    for item in scored[1:]:
        if item[1] > best[1]:
            best = item
    return best


# ========================================
# built-in strategies
# ========================================
@register_policy(PolicyType.thompson_sampling)
def thompson_sampling(
    context: DecisionContext, config: Mapping[str, Any], pool: Sequence[Question]
) -> PolicyResult:
    questions = _available(context, pool)
    if not questions:
        return None

    rng = _rng(config)
    alpha = float(config.get("alpha", 1.0))
    beta = float(config.get("beta", 1.0))

    scored = []
    for q in questions:
        usage = max(1, q.usage_count)
        a = alpha + q.success_rate * usage
        b = beta + (1 - q.success_rate) * usage
        scored.append((q, rng.betavariate(a, b)))

    question, sample = _best(scored)
    return _candidate(
        question,
        score=sample,
        exploration_value=float(config.get("exploration_rate", 0.1)),
        confidence=sample,
        reasoning=f"Thompson sampling selected with score {sample:.3f}",
    )


@register_policy(PolicyType.epsilon_greedy)
def epsilon_greedy(
    context: DecisionContext, config: Mapping[str, Any], pool: Sequence[Question]
) -> PolicyResult:
    questions = _available(context, pool)
    if not questions:
        return None

    rng = _rng(config)
    epsilon = float(config.get("epsilon", 0.1))
    exploring = rng.random() < epsilon

    if exploring:
        question = questions[rng.randrange(len(questions))]
        reasoning = f"Epsilon-greedy exploration (eps={epsilon})"
    else:
        question, _ = _best([(q, q.success_rate) for q in questions])
        reasoning = f"Epsilon-greedy exploitation (best success rate: {question.success_rate:.3f})"

    utility = question.success_rate
    return _candidate(
        question,
        score=utility,
        exploration_value=1.0 if exploring else 0.0,
        confidence=0.5 if exploring else utility,
        reasoning=reasoning,
    )


@register_policy(PolicyType.cultural_adaptive)
def cultural_adaptive(
    context: DecisionContext, config: Mapping[str, Any], pool: Sequence[Question]
) -> PolicyResult:
    cultural = context.state.cultural
    low_rapport_threshold = float(config.get("low_rapport_threshold", 0.5))
    high_rapport_threshold = float(config.get("high_rapport_threshold", 0.7))
    relationship_boost = float(config.get("relationship_boost", 1.3))

    # budget questions are skipped while cultural rapport is low
    questions = [
        q
        for q in _available(context, pool)
        if not (cultural < low_rapport_threshold and q.category == "budget")
    ]
    if not questions:
        return None

    scored = []
    for q in questions:
        score = q.success_rate
        if q.category == "relationship" and cultural > high_rapport_threshold:
            score *= relationship_boost
        scored.append((q, score))

    question, score = _best(scored)
    return _candidate(
        question,
        score=score,
        exploration_value=0.1,
        confidence=min(0.9, score + cultural * 0.1),
        reasoning=f"Cultural adaptation: selected {question.category} (cultural score: {cultural:.2f})",
    )


@register_policy(PolicyType.budget_focused)
def budget_focused(
    context: DecisionContext, config: Mapping[str, Any], pool: Sequence[Question]
) -> PolicyResult:
    questions = _available(context, pool)
    if not questions:
        return None

    signal = float(context.state.signals.get("budget", 0.0))
    target = float(config.get("target_budget", 10000))
    weak_signal = signal < 0.3

    if weak_signal:
        budget_questions = [q for q in questions if q.category == "budget"]
        if budget_questions:
            questions = budget_questions

    scored = []
    for q in questions:
        score = q.success_rate
        if q.category == "budget":
            score *= 1.5
        discovered = q.metrics.get("avg_budget_discovered")
        if discovered is not None and math.isfinite(discovered) and abs(discovered - target) < target * 0.5:
            score *= 1.2
        scored.append((q, score))

    question, score = _best(scored)
    return _candidate(
        question,
        score=score,
        exploration_value=0.3 if weak_signal else 0.1,
        confidence=score,
        reasoning=f"Budget-focused: targeting {target:.0f} deals (current signal: {signal:.2f})",
    )
