"""
quality_validator.py
---------------------
Static linter for rule definitions. Estimates false-positive risk from the
rule's structure alone; it never looks at data.

The score starts at 100 and runs through an ordered list of named checks.
Each check is (name, predicate, weight, warning, suggestion): when the
predicate holds, the weight is added (negative = deduction, positive =
bonus) and the messages are recorded. Weights and thresholds live in
config.yaml under `rule_quality`.

The validator accepts a parsed Rule or a raw definition mapping and never
raises: a malformed definition still gets a (low) score.
"""

import numbers
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from core.fields import FieldRef
from core.models import Rule, RuleQualityResult
from config.config_loader import get_rule_quality_config


@dataclass(frozen=True)
class RuleProfile:
    """Structural facts about a rule definition, derived once per validation."""

    has_type_restriction: bool       # `type` field anywhere in the tree, or specific rule-type metadata
    has_type_metadata: bool
    has_threshold: bool
    threshold: Optional[float]
    has_time_window: bool
    explicit_conditions: int         # Top-level children of AND/OR, or 1 for a single leaf
    has_amount_signal: bool          # Threshold or a condition on amount
    has_behavioral_field: bool       # Any balance field in the tree
    signal_count: int                # threshold + explicit conditions + window + type metadata
    combined_signal_count: int       # Distinct dimensions among amount/type/window/behaviour


@dataclass(frozen=True)
class QualityCheck:
    name: str
    predicate: Callable[[RuleProfile, Dict[str, Any]], bool]
    warning: Optional[str] = None    # str.format'ed with the profile and config
    suggestion: Optional[str] = None


# Ordered. Deductions first, then bonuses.
QUALITY_CHECKS: List[QualityCheck] = [
    QualityCheck(
        name="no_type_restriction",
        predicate=lambda p, cfg: not p.has_type_restriction,
        warning="No transaction type restriction - will flag all transaction types",
        suggestion="Add transaction type filter (e.g., CASH_OUT, TRANSFER)",
    ),
    QualityCheck(
        name="few_signal_dimensions",
        predicate=lambda p, cfg: p.signal_count < cfg["min_signal_dimensions"],
        warning=(
            "Single-condition rule (has {signal_count}, needs {min_signal_dimensions}+) "
            "- high false positive risk"
        ),
        suggestion=(
            "Combine with account behavior conditions "
            "(e.g., account emptied, destination was empty)"
        ),
    ),
    QualityCheck(
        name="threshold_only",
        predicate=lambda p, cfg: p.has_threshold and not p.has_time_window and p.signal_count <= 1,
        warning="Threshold-only rule without context",
        suggestion="Add account behavior or transaction pattern context",
    ),
    QualityCheck(
        name="low_threshold",
        predicate=lambda p, cfg: p.threshold is not None and p.threshold < cfg["low_threshold"],
        warning="Low threshold (${threshold:,.0f}) may cause excessive false positives",
        suggestion="Consider raising threshold or adding context conditions",
    ),
    QualityCheck(
        name="window_without_context",
        predicate=lambda p, cfg: p.has_time_window and p.signal_count < cfg["min_windowed_conditions"],
        warning="Windowed rule needs more context conditions",
        suggestion="Add amount range or account behavior conditions",
    ),
    QualityCheck(
        name="behavioral_field",
        predicate=lambda p, cfg: p.has_behavioral_field,
    ),
    QualityCheck(
        name="combined_signals",
        predicate=lambda p, cfg: p.combined_signal_count >= 2,
    ),
]


# =============================================================================
# PUBLIC INTERFACE
# =============================================================================

def validate_rule_quality(rule: Union[Rule, Mapping[str, Any]]) -> RuleQualityResult:
    """
    Score a rule definition 0–100 for specificity. Input that is neither a
    Rule nor a mapping scores as an empty definition.

    Returns:
        RuleQualityResult; valid iff score >= rule_quality.valid_min_score.
    """
    cfg = get_rule_quality_config()
    profile = build_profile(rule, cfg)
    weights = cfg["weights"]
    fmt = {**cfg, **asdict(profile)}

    score = cfg["starting_score"]
    warnings: List[str] = []
    suggestions: List[str] = []

    for check in QUALITY_CHECKS:
        if not check.predicate(profile, cfg):
            continue
        score += weights[check.name]
        if check.warning:
            warnings.append(check.warning.format(**fmt))
        if check.suggestion:
            suggestions.append(check.suggestion)

    score = max(0, min(100, score))
    return RuleQualityResult(
        valid=score >= cfg["valid_min_score"],
        score=score,
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
    )


def suggest_rule_improvements(rule: Union[Rule, Mapping[str, Any]]) -> List[str]:
    """Concrete, author-facing suggestions. A rule with no warnings gets a pass."""
    quality = validate_rule_quality(rule)
    if not quality.warnings:
        return ["Rule looks good!"]

    cfg = get_rule_quality_config()
    profile = build_profile(rule, cfg)
    suggestions: List[str] = []

    if not profile.has_type_restriction:
        suggestions.append("Consider restricting to specific transaction types like CASH_OUT or TRANSFER")

    if profile.has_threshold and not profile.has_time_window and profile.signal_count <= 1:
        suggestions.append("Combine threshold with account behavior context:")
        suggestions.append("  - Check if origin account was emptied")
        suggestions.append("  - Check if destination account was empty before")
        suggestions.append("  - Check for unusual transaction velocity")

    if profile.threshold is not None and profile.threshold < 2 * cfg["low_threshold"]:
        suggestions.append("For lower thresholds, add more context conditions to reduce false positives")

    return suggestions


def score_rule_set(rules: Iterable[Union[Rule, Mapping[str, Any]]]) -> Dict[str, Any]:
    """Aggregate quality over a rule set: average, high/low counts, most common issues."""
    cfg = get_rule_quality_config()
    set_cfg = cfg["rule_set"]
    results = [validate_rule_quality(r) for r in rules]

    if not results:
        return {"average_score": 0.0, "high_quality_count": 0, "low_quality_count": 0, "common_issues": []}

    scores = [r.score for r in results]
    issues = Counter(w for r in results for w in r.warnings)

    return {
        "average_score": sum(scores) / len(scores),
        "high_quality_count": sum(1 for s in scores if s >= set_cfg["high_quality_min_score"]),
        "low_quality_count": sum(1 for s in scores if s < cfg["valid_min_score"]),
        "common_issues": [
            f"{issue} ({count} rules)"
            for issue, count in issues.most_common(set_cfg["common_issue_count"])
        ],
    }


# =============================================================================
# INTERNAL: PROFILE
# =============================================================================

def build_profile(rule: Any, cfg: Dict[str, Any]) -> RuleProfile:
    definition = rule.to_dict() if isinstance(rule, Rule) else rule
    if not isinstance(definition, Mapping):
        definition = {}

    conditions = definition.get("conditions")
    leaves = list(_iter_leaves(conditions))
    fields = {FieldRef.resolve(leaf.get("field")) for leaf in leaves}

    threshold = _as_number(definition.get("threshold"))
    has_threshold = threshold is not None
    has_time_window = definition.get("time_window") is not None

    rule_type = definition.get("type")
    generic_types = {t.lower() for t in cfg["generic_rule_types"]}
    has_type_metadata = isinstance(rule_type, str) and bool(rule_type.strip()) \
        and rule_type.strip().lower() not in generic_types
    has_type_restriction = has_type_metadata or FieldRef.TYPE in fields

    explicit_conditions = _count_top_level(conditions)
    signal_count = (
        int(has_threshold) + explicit_conditions + int(has_time_window) + int(has_type_metadata)
    )

    has_amount_signal = has_threshold or FieldRef.AMOUNT in fields
    has_behavioral_field = any(ref is not None and ref.is_behavioral for ref in fields)
    combined = sum([has_amount_signal, has_type_restriction, has_time_window, has_behavioral_field])

    return RuleProfile(
        has_type_restriction=has_type_restriction,
        has_type_metadata=has_type_metadata,
        has_threshold=has_threshold,
        threshold=threshold,
        has_time_window=has_time_window,
        explicit_conditions=explicit_conditions,
        has_amount_signal=has_amount_signal,
        has_behavioral_field=has_behavioral_field,
        signal_count=signal_count,
        combined_signal_count=combined,
    )


def _iter_leaves(node: Any, depth: int = 0):
    """Every leaf mapping in a raw condition tree. Tolerates any junk."""
    if depth > 50 or not isinstance(node, Mapping):
        return
    for key in ("AND", "OR"):
        children = node.get(key)
        if isinstance(children, list):
            for child in children:
                yield from _iter_leaves(child, depth + 1)
            return
    if "field" in node:
        yield node


def _count_top_level(node: Any) -> int:
    if not isinstance(node, Mapping):
        return 0
    for key in ("AND", "OR"):
        children = node.get(key)
        if isinstance(children, list):
            return len(children)
    return 1 if "field" in node else 0


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    return float(value)
