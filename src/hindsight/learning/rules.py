"""Deterministic scoring rules for GRPO candidate groups.

A rule maps a candidate's result dict to a score; scores are clamped to
[0, 1] and averaged into the composite. Callers can pass their own rule
set, typically ``{**CLI_RULES, "coverage": lambda r: r.get("coverage", 0)}``.

CLI result keys: ``exit_code``, ``errors``, ``duration_ms``,
``command_length``, ``side_effects``.
Team result keys: ``task_count``, ``success_count``, ``completed_count``,
``duration_ms``, ``team_size``.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from hindsight.core.constants import SCORE_DECIMALS

Rule = Callable[[Mapping[str, Any]], float]
RuleSet = Mapping[str, Rule]


def clamp01(value: Any) -> float:
    """Clamp a rule output to [0, 1]; non-numbers and NaN score 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def round_score(value: float) -> float:
    return round(value, SCORE_DECIMALS)


def _number(result: Mapping[str, Any], key: str, default: float = 0.0) -> float:
    value = result.get(key)
    if value is None:
        return default
    return float(value)


# ─── CLI task rules ────────────────────────────────────────────────────


def exit_code_rule(result: Mapping[str, Any]) -> float:
    return 1.0 if result.get("exit_code") == 0 else 0.0


def error_free_rule(result: Mapping[str, Any]) -> float:
    return 1.0 if result.get("errors") == 0 else 0.0


def speed_rule(result: Mapping[str, Any]) -> float:
    return 1.0 / (1 + _number(result, "duration_ms") / 1000)


def brevity_rule(result: Mapping[str, Any]) -> float:
    return 1.0 / (1 + _number(result, "command_length") / 50)


def side_effects_rule(result: Mapping[str, Any]) -> float:
    return 1.0 if result.get("side_effects") == 0 else 0.5


CLI_RULES: RuleSet = MappingProxyType({
    "exit_code": exit_code_rule,
    "error_free": error_free_rule,
    "speed": speed_rule,
    "brevity": brevity_rule,
    "side_effects": side_effects_rule,
})
"""Default rules for ranking CLI task strategies."""


# ─── Team composition rules ────────────────────────────────────────────


def _ratio(result: Mapping[str, Any], numerator: str) -> float:
    tasks = _number(result, "task_count")
    if tasks <= 0:
        return 0.0
    return _number(result, numerator) / tasks


def team_success_rate_rule(result: Mapping[str, Any]) -> float:
    return _ratio(result, "success_count")


def team_efficiency_rule(result: Mapping[str, Any]) -> float:
    return 1.0 / (1 + _number(result, "duration_ms") / 60000)


def team_resource_use_rule(result: Mapping[str, Any]) -> float:
    return 1.0 / (1 + _number(result, "team_size", default=1.0) / 5)


def team_completeness_rule(result: Mapping[str, Any]) -> float:
    return _ratio(result, "completed_count")


TEAM_RULES: RuleSet = MappingProxyType({
    "success_rate": team_success_rate_rule,
    "efficiency": team_efficiency_rule,
    "resource_use": team_resource_use_rule,
    "completeness": team_completeness_rule,
})
"""Default rules for ranking team compositions."""


def score_result(result: Mapping[str, Any], rules: RuleSet) -> tuple[dict[str, float], float]:
    """Apply every rule to ``result``.

    Returns:
        Per-rule scores and their mean (the composite), both rounded.
    """
    scores: dict[str, float] = {}
    total = 0.0
    for name, rule in rules.items():
        score = clamp01(rule(result))
        scores[name] = round_score(score)
        total += score
    composite = total / len(rules) if rules else 0.0
    return scores, round_score(composite)
