"""
confidence.py
--------------
Per-violation confidence score (0.0 – 1.0) used to rank review queues.

Blends four signals:
    1. Rule quality: validator score / 100, plus a small boost per
       top-level AND condition (more signals, more confidence).
    2. Amount outlier: how far the violation amount sits from the dataset
       mean amount.
    3. Reviewer history: Bayesian precision (1 + tp) / (2 + tp + fp) from
       approved / false-positive review counts, weighted up as reviews
       accumulate.
    4. Severity: CRITICAL rules get a fixed boost.

Boosts and weights come from config.yaml (`confidence`).
"""

from core.models import CompoundCondition, Logic, Rule, Severity, Violation
from rules.quality_validator import validate_rule_quality
from config.config_loader import get_confidence_config


def calculate_confidence(
    violation: Violation,
    rule: Rule,
    mean_amount: float | None = None,
    quality_score: int | None = None,
) -> float:
    """
    Args:
        violation: The violation to score.
        rule: The rule that produced it.
        mean_amount: Mean transaction amount of the scanned dataset, if known.
        quality_score: The rule's validator score, when the caller already has it.
            Computed from the rule otherwise.
    """
    cfg = get_confidence_config()
    if quality_score is None:
        quality_score = validate_rule_quality(rule).score
    score = quality_score / 100

    # --- 1. Signal specificity ---
    if isinstance(rule.conditions, CompoundCondition) and rule.conditions.logic is Logic.AND:
        score += len(rule.conditions.children) * cfg["and_condition_boost"]

    # --- 2. Amount outlier ---
    if mean_amount and violation.amount:
        ratio = violation.amount / mean_amount
        for band in cfg["outlier_ratios"]:
            if ratio > band["min_ratio"]:
                score += band["boost"]
                break
        else:
            if ratio < cfg["small_ratio"]:
                score += cfg["small_ratio_boost"]

    # --- 3. Reviewer history ---
    tp = rule.approved_count
    fp = rule.false_positive_count
    historical_precision = (1 + tp) / (2 + tp + fp)
    history_weight = min(cfg["max_history_weight"], (tp + fp) / cfg["history_reviews_for_full_weight"])
    score = score * (1 - history_weight) + historical_precision * history_weight

    # --- 4. Severity ---
    if rule.severity is Severity.CRITICAL:
        score += cfg["critical_boost"]

    return round(max(0.0, min(1.0, score)), 4)
