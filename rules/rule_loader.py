"""
rule_loader.py
---------------
Parses raw rule definitions (dicts from YAML, JSON or an extraction step)
into validated Rule objects.

All structural problems are caught here, before a scan starts:
    - missing rule_id, bad severity or scope
    - windowed rules without a time_window or group_by
    - unknown field names in the condition tree (strict mode)

In lenient mode an unknown field or malformed condition node is kept as an
always-False leaf and logged, so the rule degrades to a no-op for that
branch instead of failing the load. Structural rule errors (scope, window,
grouping) are always fatal.
"""

import logging
import numbers
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from core.exceptions import RuleConfigError
from core.fields import FieldRef
from core.models import (
    AggregateFunction,
    Aggregation,
    CompoundCondition,
    Condition,
    LeafCondition,
    Logic,
    Operator,
    Rule,
    RuleScope,
    Severity,
    TimeUnit,
    TimeWindow,
)
from config.config_loader import get_rule_pack

logger = logging.getLogger(__name__)


MAX_GROUP_BY_FIELDS = 2


# =============================================================================
# PUBLIC INTERFACE
# =============================================================================

def load_rules(definitions: Iterable[Mapping[str, Any]], strict: bool = True) -> List[Rule]:
    """
    Parse a list of rule definitions. Rule ids must be unique.

    Raises:
        RuleConfigError: On the first invalid definition.
    """
    rules: List[Rule] = []
    seen: set[str] = set()

    for definition in definitions:
        rule = parse_rule(definition, strict=strict)
        if rule.rule_id in seen:
            raise RuleConfigError(rule.rule_id, "duplicate rule_id")
        seen.add(rule.rule_id)
        rules.append(rule)

    logger.info(
        f"Loaded {len(rules)} rules "
        f"({sum(1 for r in rules if r.enabled)} enabled, "
        f"{sum(1 for r in rules if r.is_windowed)} windowed)."
    )
    return rules


def load_rule_pack(pack_name: str, strict: bool = True) -> List[Rule]:
    """Load a prebuilt rule pack from config.yaml."""
    return load_rules(get_rule_pack(pack_name), strict=strict)


def load_rules_file(path: str, strict: bool = True) -> List[Rule]:
    """
    Load rules from a YAML file. Accepts either a top-level list of
    definitions or a mapping with a `rules` key.
    """
    with open(path, "r") as f:
        content = yaml.safe_load(f)

    if isinstance(content, Mapping):
        content = content.get("rules")
    if not isinstance(content, list):
        raise RuleConfigError(None, f"{path} does not contain a list of rules")

    return load_rules(content, strict=strict)


def parse_rule(definition: Mapping[str, Any], strict: bool = True) -> Rule:
    """Parse and validate a single rule definition."""
    if not isinstance(definition, Mapping):
        raise RuleConfigError(None, f"expected a mapping, got {type(definition).__name__}")

    rule_id = definition.get("rule_id")
    if not isinstance(rule_id, str) or not rule_id.strip():
        raise RuleConfigError(None, "missing rule_id")
    rule_id = rule_id.strip()

    severity = _parse_enum(Severity, definition.get("severity"), rule_id, "severity")
    scope = _parse_enum(
        RuleScope, definition.get("scope", RuleScope.SINGLE_RECORD.value), rule_id, "scope"
    )

    raw_conditions = definition.get("conditions")
    if raw_conditions is None:
        # No conditions: the rule matches every record (its threshold/window does the work).
        conditions: Condition = CompoundCondition(Logic.AND, ())
    else:
        conditions = parse_condition(raw_conditions, strict=strict, rule_id=rule_id)

    threshold = _parse_threshold(definition.get("threshold"), rule_id)
    time_window = _parse_time_window(definition.get("time_window"), rule_id)
    group_by = _parse_group_by(
        definition.get("group_by", definition.get("group_by_field")), rule_id
    )
    aggregation = _parse_aggregation(definition.get("aggregation"), rule_id)

    min_records = definition.get("min_records", 1)
    if not isinstance(min_records, int) or isinstance(min_records, bool) or min_records < 1:
        raise RuleConfigError(rule_id, f"min_records must be a positive integer, got {min_records!r}")

    if scope is RuleScope.WINDOWED:
        if time_window is None:
            raise RuleConfigError(rule_id, "windowed rules require a time_window")
        if not group_by:
            raise RuleConfigError(rule_id, "windowed rules require group_by")

    return Rule(
        rule_id=rule_id,
        name=str(definition.get("name") or rule_id),
        severity=severity,
        scope=scope,
        conditions=conditions,
        threshold=threshold,
        time_window=time_window,
        group_by=group_by,
        aggregation=aggregation,
        min_records=min_records,
        enabled=bool(definition.get("enabled", definition.get("is_active", True))),
        rule_type=definition.get("type") or None,
        description=str(definition.get("description") or ""),
        policy_section=str(definition.get("policy_section") or ""),
        policy_excerpt=str(definition.get("policy_excerpt") or ""),
        approved_count=int(definition.get("approved_count") or 0),
        false_positive_count=int(definition.get("false_positive_count") or 0),
    )


def parse_condition(
    definition: Any, strict: bool = True, rule_id: Optional[str] = None
) -> Condition:
    """
    Parse a condition tree.

    Shapes:
        {"AND": [cond, ...]}  /  {"OR": [cond, ...]}
        {"field": name, "operator": symbol, "value": value}

    Unknown operators are always kept (they evaluate to False). Unknown
    fields and malformed nodes raise in strict mode.
    """
    if isinstance(definition, Mapping):
        for logic in Logic:
            if logic.value in definition:
                children = definition[logic.value]
                if not isinstance(children, list):
                    return _reject(rule_id, strict, f"{logic.value} must hold a list")
                return CompoundCondition(
                    logic,
                    tuple(parse_condition(c, strict=strict, rule_id=rule_id) for c in children),
                )

        if "field" in definition:
            return _parse_leaf(definition, strict, rule_id)

    return _reject(rule_id, strict, f"malformed condition node: {definition!r}")


# =============================================================================
# INTERNAL: CONDITIONS
# =============================================================================

def _parse_leaf(definition: Mapping[str, Any], strict: bool, rule_id: Optional[str]) -> LeafCondition:
    field_name = definition.get("field")
    raw_operator = definition.get("operator")
    field_ref = FieldRef.resolve(field_name)

    if field_ref is None:
        message = f"unknown field '{field_name}'"
        if strict:
            raise RuleConfigError(rule_id, message)
        logger.warning(f"Rule '{rule_id}': {message}; leaf will never match.")

    operator = Operator.from_symbol(raw_operator)
    if operator is None:
        logger.warning(f"Rule '{rule_id}': unsupported operator '{raw_operator}'; leaf will never match.")

    return LeafCondition(
        field=field_ref,
        operator=operator,
        value=_freeze(definition.get("value")),
        field_name=str(field_name),
        raw_operator=str(raw_operator),
    )


def _reject(rule_id: Optional[str], strict: bool, message: str) -> LeafCondition:
    if strict:
        raise RuleConfigError(rule_id, message)
    logger.warning(f"Rule '{rule_id}': {message}; branch will never match.")
    return LeafCondition(field=None, operator=None, value=None)


def _freeze(value: Any) -> Any:
    """Lists become tuples so parsed conditions stay immutable and hashable."""
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return frozenset(value)
    return value


# =============================================================================
# INTERNAL: RULE ATTRIBUTES
# =============================================================================

def _parse_enum(enum_cls, raw: Any, rule_id: str, attribute: str):
    if isinstance(raw, str):
        for member in enum_cls:
            if member.value.lower() == raw.strip().lower():
                return member
    allowed = [m.value for m in enum_cls]
    raise RuleConfigError(rule_id, f"invalid {attribute} {raw!r}; expected one of {allowed}")


def _parse_threshold(raw: Any, rule_id: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, numbers.Real):
        raise RuleConfigError(rule_id, f"threshold must be numeric, got {raw!r}")
    return float(raw)


def _parse_time_window(raw: Any, rule_id: str) -> Optional[TimeWindow]:
    """Accepts {"size": n, "unit": "hours"} or a bare number of hours."""
    if raw is None:
        return None

    if isinstance(raw, numbers.Real) and not isinstance(raw, bool):
        size, unit = raw, TimeUnit.HOURS
    elif isinstance(raw, Mapping):
        size = raw.get("size")
        unit = _parse_enum(TimeUnit, raw.get("unit", TimeUnit.HOURS.value), rule_id, "time_window unit")
    else:
        raise RuleConfigError(rule_id, f"invalid time_window {raw!r}")

    if isinstance(size, bool) or not isinstance(size, numbers.Real) or size <= 0:
        raise RuleConfigError(rule_id, f"time_window size must be a positive number, got {size!r}")

    return TimeWindow(size=float(size), unit=unit)


def _parse_group_by(raw: Any, rule_id: str) -> Tuple[FieldRef, ...]:
    if raw is None:
        return ()

    names = [raw] if isinstance(raw, str) else raw
    if not isinstance(names, (list, tuple)) or not 1 <= len(names) <= MAX_GROUP_BY_FIELDS:
        raise RuleConfigError(rule_id, f"group_by must be one field or a field pair, got {raw!r}")

    refs = []
    for name in names:
        ref = FieldRef.resolve(name)
        if ref is None:
            raise RuleConfigError(rule_id, f"unknown group_by field '{name}'")
        refs.append(ref)
    return tuple(refs)


def _parse_aggregation(raw: Any, rule_id: str) -> Optional[Aggregation]:
    if raw is None:
        return None

    if isinstance(raw, str):
        raw = {"function": raw}
    if not isinstance(raw, Mapping):
        raise RuleConfigError(rule_id, f"invalid aggregation {raw!r}")

    function = _parse_enum(
        AggregateFunction, raw.get("function", AggregateFunction.COUNT.value), rule_id, "aggregation function"
    )
    field_name = raw.get("field", FieldRef.AMOUNT.value)
    field_ref = FieldRef.resolve(field_name)
    if field_ref is None:
        raise RuleConfigError(rule_id, f"unknown aggregation field '{field_name}'")
    if function is not AggregateFunction.COUNT and not field_ref.is_numeric:
        raise RuleConfigError(rule_id, f"cannot {function.value} non-numeric field '{field_ref.value}'")

    return Aggregation(function=function, field=field_ref)


def rules_summary(rules: Iterable[Rule]) -> Dict[str, int]:
    """Counts by scope and severity, for logging and the CLI summary."""
    summary: Dict[str, int] = {}
    for rule in rules:
        for key in (rule.scope.value, rule.severity.value):
            summary[key] = summary.get(key, 0) + 1
    return summary
