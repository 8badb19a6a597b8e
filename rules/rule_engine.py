"""
rule_engine.py
---------------
Runs rules against a normalized transaction set and emits Violations.

Two strategies, chosen by rule scope:

    single_record  Evaluate the condition tree against every transaction.
                   Each match is one Violation with one record index.

    windowed       Keep the transactions that satisfy the condition tree
                   and have no blank group_by component, bucket them by
                   (group_by key, fixed window), and fire once per
                   bucket whose aggregate reaches the threshold.
                   The Violation carries every index in the bucket and the
                   bucket's summed amount.

Rules are independent of one another: each one reads the same immutable
transaction tuple and its violations are concatenated in declaration order.
There is no cross-rule deduplication; a transaction may appear in the
evidence of several rules.
"""

import logging
from typing import List, Optional, Sequence

import pandas as pd

from core.conditions import evaluate
from core.models import AggregateFunction, Aggregation, Rule, Transaction, Violation
from core.fields import FieldRef
from core.schema_adapter import transactions_to_frame
from core.temporal import bucket_by_window
from rules.explainability import explain_single, explain_windowed
from config.config_loader import get_engine_config

logger = logging.getLogger(__name__)


DEFAULT_AGGREGATION = Aggregation(AggregateFunction.COUNT, FieldRef.AMOUNT)


class RuleEngine:
    """
    Batch rule evaluator.

    Usage:
        engine = RuleEngine(temporal_scale=1.0)
        violations = engine.run(transactions, rules)
    """

    def __init__(self, temporal_scale: float | None = None, violation_cap: int | None = None):
        """
        Args:
            temporal_scale: Hours per dataset step. Defaults to config.
            violation_cap: Max violations kept per rule. Defaults to config
                (null = unlimited).
        """
        self.config = get_engine_config()
        self.temporal_scale = (
            temporal_scale if temporal_scale is not None
            else float(self.config["default_temporal_scale"])
        )
        self.violation_cap = (
            violation_cap if violation_cap is not None else self.config.get("violation_cap")
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, transactions: Sequence[Transaction], rules: Sequence[Rule]) -> List[Violation]:
        """
        Evaluate every enabled rule in declaration order.

        Returns:
            Concatenation of each rule's violations.
        """
        transactions = tuple(transactions)
        active = [r for r in rules if r.enabled]
        frame: Optional[pd.DataFrame] = None

        logger.info(
            f"Starting scan: {len(active)} active rules against {len(transactions):,} records "
            f"(temporal_scale={self.temporal_scale})."
        )

        violations: List[Violation] = []
        for rule in active:
            if rule.is_windowed and frame is None:
                frame = transactions_to_frame(transactions)

            try:
                rule_violations = self.run_rule(rule, transactions, frame)
            except Exception:
                logger.exception(f"Rule {rule.rule_id} failed; skipping it for this scan.")
                continue

            violations.extend(self._apply_cap(rule, rule_violations))

        logger.info(f"Scan complete. Total violations: {len(violations):,}.")
        return violations

    def run_rule(
        self,
        rule: Rule,
        transactions: Sequence[Transaction],
        frame: Optional[pd.DataFrame] = None,
    ) -> List[Violation]:
        """Evaluate a single rule. `frame` is reused across windowed rules when given."""
        if rule.is_windowed:
            if frame is None:
                frame = transactions_to_frame(transactions)
            violations = self._run_windowed(rule, transactions, frame)
        else:
            violations = self._run_single_record(rule, transactions)

        logger.info(f"Rule {rule.rule_id} ({rule.scope.value}) found {len(violations):,} violations.")
        return violations

    # -------------------------------------------------------------------------
    # INTERNAL: SINGLE RECORD
    # -------------------------------------------------------------------------

    def _run_single_record(self, rule: Rule, transactions: Sequence[Transaction]) -> List[Violation]:
        return [
            Violation(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                severity=rule.severity,
                account=t.account,
                amount=t.amount,
                transaction_type=t.type,
                record_indices=(t.index,),
                threshold=rule.threshold,
                actual_value=t.amount,
                group_key=(t.account,),
                explanation=explain_single(rule, t),
            )
            for t in transactions
            if evaluate(rule.conditions, t)
        ]

    # -------------------------------------------------------------------------
    # INTERNAL: WINDOWED
    # -------------------------------------------------------------------------

    def _run_windowed(
        self, rule: Rule, transactions: Sequence[Transaction], frame: pd.DataFrame
    ) -> List[Violation]:
        """
        Filter → bucket → aggregate. Positions in `frame` line up with
        `transactions`, so the condition mask is computed on the objects and
        applied to the frame.
        """
        mask = [_has_group_key(rule, t) and evaluate(rule.conditions, t) for t in transactions]
        if not any(mask):
            return []

        matching = frame[mask]
        by_index = {t.index: t for t in transactions}
        key_columns = [ref.value for ref in rule.group_by]
        aggregation = rule.aggregation or DEFAULT_AGGREGATION

        violations: List[Violation] = []
        for group_key, window, bucket in bucket_by_window(
            matching, key_columns, rule.time_window.hours, self.temporal_scale
        ):
            if len(bucket) < rule.min_records:
                continue

            actual_value = self._aggregate(bucket, aggregation)
            if rule.threshold is not None and actual_value < rule.threshold:
                continue

            indices = tuple(sorted(int(i) for i in bucket["index"]))
            evidence = [by_index[i] for i in indices]
            violations.append(
                Violation(
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    severity=rule.severity,
                    account=self._bucket_account(rule, group_key, evidence),
                    amount=float(sum(t.amount for t in evidence)),
                    transaction_type=evidence[0].type,
                    record_indices=indices,
                    threshold=rule.threshold,
                    actual_value=actual_value,
                    group_key=group_key,
                    window_key=window,
                    explanation=explain_windowed(rule, group_key, evidence, actual_value),
                )
            )

        return violations

    @staticmethod
    def _aggregate(bucket: pd.DataFrame, aggregation: Aggregation) -> float:
        if aggregation.function is AggregateFunction.COUNT:
            return float(len(bucket))

        values = pd.to_numeric(bucket[aggregation.field.value], errors="coerce").fillna(0.0)
        if aggregation.function is AggregateFunction.SUM:
            return float(values.sum())
        if aggregation.function is AggregateFunction.AVG:
            return float(values.mean())
        if aggregation.function is AggregateFunction.MAX:
            return float(values.max())
        return float(values.min())

    @staticmethod
    def _bucket_account(rule: Rule, group_key: Sequence[str], evidence: Sequence[Transaction]) -> str:
        """Owning account: the account component of the key, else the first key component."""
        if FieldRef.ACCOUNT in rule.group_by:
            return group_key[rule.group_by.index(FieldRef.ACCOUNT)]
        return group_key[0] if group_key else evidence[0].account

    # -------------------------------------------------------------------------
    # INTERNAL: NOISE GATE
    # -------------------------------------------------------------------------

    def _apply_cap(self, rule: Rule, violations: List[Violation]) -> List[Violation]:
        if self.violation_cap is None or len(violations) <= self.violation_cap:
            return violations
        logger.warning(
            f"Rule {rule.rule_id} is too noisy ({len(violations):,} hits). "
            f"Keeping the first {self.violation_cap:,}."
        )
        return violations[: self.violation_cap]


def _has_group_key(rule: Rule, transaction: Transaction) -> bool:
    """Rows with a blank group_by component belong to no account and are never bucketed."""
    for ref in rule.group_by:
        value = ref.read(transaction)
        if isinstance(value, str) and not value.strip():
            return False
    return True


def run_rules(
    transactions: Sequence[Transaction],
    rules: Sequence[Rule],
    temporal_scale: float | None = None,
) -> List[Violation]:
    """Functional entry point: RuleEngine(temporal_scale).run(transactions, rules)."""
    return RuleEngine(temporal_scale=temporal_scale).run(transactions, rules)
