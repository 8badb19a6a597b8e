"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Transaction: Canonical, typed record produced by the schema adapter.
  The only input the rule engine and evaluator ever see.

- Condition / Rule: Parsed rule definitions. Field names and operators are
  resolved at load time (see rules/rule_loader.py).

- Violation: One rule firing, with the record indices that triggered it.

- Case / EvaluationResult / RuleQualityResult: Derived reporting values.

Every model is a frozen dataclass: values are produced per run and never
mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from core.fields import FieldRef


# =============================================================================
# ENUMS
# =============================================================================

class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"

    @property
    def rank(self) -> int:
        """Strict ranking: CRITICAL > HIGH > MEDIUM."""
        return {"CRITICAL": 3, "HIGH": 2, "MEDIUM": 1}[self.value]


class RuleScope(Enum):
    SINGLE_RECORD = "single_record"
    WINDOWED = "windowed"


class Operator(Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    IN = "IN"
    BETWEEN = "BETWEEN"

    @classmethod
    def from_symbol(cls, symbol: Any) -> Optional["Operator"]:
        """Returns None for unknown symbols; such leaves evaluate to False."""
        if not isinstance(symbol, str):
            return None
        key = symbol.strip().upper()
        return _OPERATOR_SYMBOLS.get(key)


_OPERATOR_SYMBOLS = {op.value: op for op in Operator}
_OPERATOR_SYMBOLS.update({"EQ": Operator.EQ, "NEQ": Operator.NE, "=": Operator.EQ})


class Logic(Enum):
    AND = "AND"
    OR = "OR"


class TimeUnit(Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"

    @property
    def hours(self) -> float:
        return {"minutes": 1 / 60, "hours": 1.0, "days": 24.0, "weeks": 168.0}[self.value]


class AggregateFunction(Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"


# =============================================================================
# TRANSACTIONS
# =============================================================================

@dataclass(frozen=True)
class Transaction:
    """
    Canonical transaction record.

    `index` is the 0-based row position in the source dataset. It is assigned
    once by the normalizer and is the only identifier used downstream.
    """

    index: int
    timestamp_step: float            # Dataset-native time unit (see temporal_scale)
    type: str                        # e.g. CASH_OUT | TRANSFER | PAYMENT
    amount: float                    # Non-negative
    account: str                     # Origin identifier
    recipient: str                   # Destination identifier

    # Balances (0.0 when absent or unparsable)
    origin_balance_before: float = 0.0
    origin_balance_after: float = 0.0
    dest_balance_before: float = 0.0
    dest_balance_after: float = 0.0

    # Ground truth. Only present on labelled evaluation datasets.
    is_fraud: Optional[bool] = None


# =============================================================================
# CONDITIONS & RULES
# =============================================================================

@dataclass(frozen=True)
class LeafCondition:
    """A single comparison `field operator value`."""

    field: Optional[FieldRef]        # None when the authored name was not recognised
    operator: Optional[Operator]     # None when the authored symbol was not recognised
    value: Any
    field_name: str = ""             # As authored, for explanations and linting
    raw_operator: str = ""


@dataclass(frozen=True)
class CompoundCondition:
    """AND / OR over child conditions, evaluated left-to-right."""

    logic: Logic
    children: Tuple["Condition", ...] = ()


Condition = Union[LeafCondition, CompoundCondition]


@dataclass(frozen=True)
class TimeWindow:
    size: float
    unit: TimeUnit = TimeUnit.HOURS

    @property
    def hours(self) -> float:
        return self.size * self.unit.hours


@dataclass(frozen=True)
class Aggregation:
    function: AggregateFunction = AggregateFunction.COUNT
    field: FieldRef = FieldRef.AMOUNT


@dataclass(frozen=True)
class Rule:
    """
    A validated rule definition.

    Windowed rules always carry a time_window and a non-empty group_by; the
    loader rejects anything else before a scan starts.
    """

    rule_id: str
    name: str
    severity: Severity
    scope: RuleScope
    conditions: Condition

    # Windowed aggregation
    threshold: Optional[float] = None
    time_window: Optional[TimeWindow] = None
    group_by: Tuple[FieldRef, ...] = ()
    aggregation: Optional[Aggregation] = None
    min_records: int = 1

    # Metadata
    enabled: bool = True
    rule_type: Optional[str] = None  # e.g. "structuring", "fraud_indicator"
    description: str = ""
    policy_section: str = ""
    policy_excerpt: str = ""

    # Reviewer feedback (drives the confidence score)
    approved_count: int = 0
    false_positive_count: int = 0

    @property
    def is_windowed(self) -> bool:
        return self.scope is RuleScope.WINDOWED

    def to_dict(self) -> Dict[str, Any]:
        """Serialises back to the definition format accepted by the loader."""
        definition: Dict[str, Any] = {
            "rule_id": self.rule_id,
            "name": self.name,
            "severity": self.severity.value,
            "scope": self.scope.value,
            "conditions": condition_to_dict(self.conditions),
            "threshold": self.threshold,
            "time_window": (
                {"size": self.time_window.size, "unit": self.time_window.unit.value}
                if self.time_window else None
            ),
            "group_by": [ref.value for ref in self.group_by] or None,
            "min_records": self.min_records,
            "enabled": self.enabled,
            "type": self.rule_type,
            "description": self.description,
            "policy_section": self.policy_section,
            "policy_excerpt": self.policy_excerpt,
        }
        if self.aggregation is not None:
            definition["aggregation"] = {
                "function": self.aggregation.function.value,
                "field": self.aggregation.field.value,
            }
        return definition


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    if isinstance(condition, CompoundCondition):
        return {condition.logic.value: [condition_to_dict(c) for c in condition.children]}
    value = list(condition.value) if isinstance(condition.value, tuple) else condition.value
    return {
        "field": condition.field.value if condition.field else condition.field_name,
        "operator": condition.operator.value if condition.operator else condition.raw_operator,
        "value": value,
    }


# =============================================================================
# OUTPUTS
# =============================================================================

@dataclass(frozen=True)
class Violation:
    """One instance of a rule firing, with its evidence."""

    rule_id: str
    rule_name: str
    severity: Severity
    account: str
    amount: float                    # Single amount, or the bucket sum for windowed rules
    transaction_type: str
    record_indices: Tuple[int, ...]  # Transaction.index values, never bucket offsets

    threshold: Optional[float] = None
    actual_value: float = 0.0        # Measured value compared against threshold
    group_key: Tuple[str, ...] = ()
    window_key: Optional[int] = None
    explanation: str = ""

    def __post_init__(self):
        if not self.record_indices:
            raise ValueError(f"Violation for rule '{self.rule_id}' has no record indices")


@dataclass(frozen=True)
class Case:
    """All violations for one account. Derived fresh on every request."""

    account: str
    violation_count: int
    max_severity: Severity
    total_amount: float              # Summed per violation; shared evidence is double counted
    violations: Tuple[Violation, ...] = ()
    record_indices: Tuple[int, ...] = ()


@dataclass(frozen=True)
class RuleBreakdown:
    detected_count: int
    fraud_in_detected: int

    @property
    def precision(self) -> float:
        return self.fraud_in_detected / self.detected_count if self.detected_count else 0.0


@dataclass(frozen=True)
class EvaluationResult:
    tp: int
    fp: int
    tn: int
    fn: int
    precision: float
    recall: float
    f1: float
    accuracy: float
    fpr: float
    total_transactions: int
    fraud_count: int
    detected_count: int
    per_rule: Dict[str, RuleBreakdown] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return (
            f"Detected {round(self.recall * 100)}% of known fraud with "
            f"{round(self.fpr * 100)}% false positive rate"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tp": self.tp,
            "fp": self.fp,
            "tn": self.tn,
            "fn": self.fn,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "accuracy": self.accuracy,
            "fpr": self.fpr,
            "total_transactions": self.total_transactions,
            "fraud_count": self.fraud_count,
            "detected_count": self.detected_count,
            "summary": self.summary,
            "per_rule": {
                rule_id: {
                    "detected_count": b.detected_count,
                    "fraud_in_detected": b.fraud_in_detected,
                    "precision": b.precision,
                }
                for rule_id, b in self.per_rule.items()
            },
        }


@dataclass(frozen=True)
class RuleQualityResult:
    valid: bool
    score: int                       # 0 – 100
    warnings: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()
