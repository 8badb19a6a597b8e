"""
test_engine.py
---------------
Comprehensive test suite for the compliance rule engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config
    - Record Normalizer
    - Condition Evaluator
    - Temporal Windowing
    - Rule Loader
    - Rule Engine
    - Case Aggregator & Compliance Score
    - Rule Quality Validator & Confidence
    - Evaluator
    - Full Pipeline (integration)
"""

import sys
import os
import pytest
import pandas as pd

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import load_config, get_rule_pack, get_all_rule_packs, reset_config
from core.exceptions import RuleConfigError, SchemaError
from core.fields import FieldRef
from core.models import (
    CompoundCondition,
    LeafCondition,
    Logic,
    Operator,
    Rule,
    RuleScope,
    Severity,
    Transaction,
    Violation,
)
from core.schema_adapter import (
    detect_dataset,
    get_default_mapping,
    get_temporal_scale,
    normalize,
    transactions_to_frame,
)
from core.conditions import evaluate as evaluate_condition
from core.temporal import bucket_by_window, window_key, window_keys, within_window
from rules.rule_loader import load_rule_pack, load_rules, load_rules_file, parse_condition, parse_rule
from rules.rule_engine import RuleEngine, run_rules
from rules.quality_validator import score_rule_set, suggest_rule_improvements, validate_rule_quality
from rules.confidence import calculate_confidence
from reporting.case_aggregator import aggregate_cases
from reporting.compliance_score import calculate_compliance_score, get_score_status, get_violation_summary
from evaluation.evaluator import evaluate
from pipeline import CompliancePipeline, VIOLATION_COLUMNS


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_txn(
    index: int = 0,
    step: float = 1,
    txn_type: str = "CASH_OUT",
    amount: float = 1000.0,
    account: str = "C1",
    recipient: str = "M1",
    origin_before: float = 0.0,
    origin_after: float = 0.0,
    dest_before: float = 0.0,
    dest_after: float = 0.0,
    is_fraud=None,
) -> Transaction:
    """Helper: creates a canonical Transaction directly for engine tests."""
    return Transaction(
        index=index,
        timestamp_step=step,
        type=txn_type,
        amount=amount,
        account=account,
        recipient=recipient,
        origin_balance_before=origin_before,
        origin_balance_after=origin_after,
        dest_balance_before=dest_before,
        dest_balance_after=dest_after,
        is_fraud=is_fraud,
    )


def _make_paysim_frame(rows) -> pd.DataFrame:
    """Helper: PaySim-shaped raw rows. Unspecified columns get harmless defaults."""
    defaults = {
        "step": 1,
        "type": "PAYMENT",
        "amount": 100.0,
        "nameOrig": "C0",
        "oldbalanceOrg": 1000.0,
        "newbalanceOrig": 900.0,
        "nameDest": "M0",
        "oldbalanceDest": 0.0,
        "newbalanceDest": 0.0,
        "isFraud": 0,
    }
    return pd.DataFrame([{**defaults, **row} for row in rows])


def _make_violation(
    rule_id: str = "R1",
    severity: Severity = Severity.HIGH,
    account: str = "C1",
    amount: float = 100.0,
    indices=(0,),
) -> Violation:
    """Helper: creates a Violation directly for aggregation and scoring tests."""
    return Violation(
        rule_id=rule_id,
        rule_name=rule_id,
        severity=severity,
        account=account,
        amount=amount,
        transaction_type="TRANSFER",
        record_indices=tuple(indices),
    )


def _pack_rule(rule_id: str) -> Rule:
    """Helper: one rule from the prebuilt aml_optimized pack."""
    return next(r for r in load_rule_pack("aml_optimized") if r.rule_id == rule_id)


def _leaf(field: FieldRef, operator: Operator, value) -> LeafCondition:
    return LeafCondition(field=field, operator=operator, value=value)


# =============================================================================
# CONFIG TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        assert "engine" in config
        assert "dataset_profiles" in config
        assert "rule_quality" in config
        assert "rule_packs" in config

    def test_default_rule_pack_present(self):
        config = load_config()
        assert config["engine"]["default_rule_pack"] in get_all_rule_packs()

    def test_missing_rule_pack_raises(self):
        with pytest.raises(KeyError):
            get_rule_pack("Nonexistent Pack")


# =============================================================================
# RECORD NORMALIZER TESTS
# =============================================================================

class TestNormalizer:
    def test_paysim_rows_normalized(self):
        df = _make_paysim_frame([
            {"nameOrig": "C1", "type": "CASH_OUT", "amount": 5000.0, "isFraud": 1},
            {"nameOrig": "C2", "type": "PAYMENT", "amount": 12.5, "isFraud": 0},
        ])
        txns = normalize(df, get_default_mapping("paysim"))

        assert [t.index for t in txns] == [0, 1]
        assert txns[0].account == "C1"
        assert txns[0].type == "CASH_OUT"
        assert txns[0].amount == pytest.approx(5000.0)
        assert txns[0].origin_balance_before == pytest.approx(1000.0)
        assert txns[0].is_fraud is True
        assert txns[1].is_fraud is False

    def test_missing_required_field_raises(self):
        df = pd.DataFrame([{"amount": 10.0, "type": "PAYMENT"}])
        with pytest.raises(SchemaError, match="account") as exc:
            normalize(df, {"amount": "amount", "type": "type"})
        assert exc.value.missing_fields == ["account"]

    def test_mapped_column_absent_from_data_counts_as_missing(self):
        df = pd.DataFrame([{"amount": 10.0, "type": "PAYMENT"}])
        with pytest.raises(SchemaError):
            normalize(df, {"acct": "account", "amount": "amount", "type": "type"})

    def test_unparsable_cells_coerced(self):
        rows = [
            {"acct": "C1", "amt": "not-a-number", "kind": "PAYMENT", "bal": None},
            {"acct": None, "amt": "250.5", "kind": " TRANSFER ", "bal": "oops"},
        ]
        mapping = {"acct": "account", "amt": "amount", "kind": "type", "bal": "oldbalanceOrg"}
        txns = normalize(rows, mapping)

        assert txns[0].amount == 0.0
        assert txns[0].origin_balance_before == 0.0
        assert txns[1].account == ""
        assert txns[1].amount == pytest.approx(250.5)
        assert txns[1].type == "TRANSFER"

    def test_negative_amounts_clipped(self):
        rows = [{"account": "C1", "amount": -50.0, "type": "PAYMENT"}]
        txns = normalize(rows, {"account": "account", "amount": "amount", "type": "type"})
        assert txns[0].amount == 0.0

    def test_unmapped_label_is_none(self):
        rows = [{"account": "C1", "amount": 1.0, "type": "PAYMENT"}]
        txns = normalize(rows, {"account": "account", "amount": "amount", "type": "type"})
        assert txns[0].is_fraud is None

    def test_empty_input_returns_empty(self):
        assert normalize([], get_default_mapping("paysim")) == []

    def test_empty_input_still_requires_mapping(self):
        with pytest.raises(SchemaError) as exc:
            normalize([], {})
        assert exc.value.missing_fields == ["account", "amount", "type"]

        with pytest.raises(SchemaError, match="type"):
            normalize([], {"acct": "account", "amt": "amount"})

    def test_index_is_positional_not_content(self):
        df = _make_paysim_frame([{"nameOrig": "C1"}, {"nameOrig": "C2"}, {"nameOrig": "C3"}])
        df.index = [10, 20, 30]
        txns = normalize(df, get_default_mapping("paysim"))
        assert [t.index for t in txns] == [0, 1, 2]

    def test_dataset_detection(self):
        assert detect_dataset(_make_paysim_frame([{}]).columns) == "paysim"
        assert detect_dataset(["orig_acct", "bene_acct", "base_amt", "tx_type"]) == "ibm_aml"
        assert detect_dataset(["foo", "bar"]) == "generic"

    def test_temporal_scale_by_profile(self):
        assert get_temporal_scale("paysim") == 1.0
        assert get_temporal_scale("ibm_aml") == 24.0
        assert get_temporal_scale("unknown_profile") == 1.0

    def test_frame_conversion_keeps_columns_when_empty(self):
        frame = transactions_to_frame([])
        assert frame.empty
        assert {"index", "account", "amount", "timestamp_step"}.issubset(frame.columns)


# =============================================================================
# CONDITION EVALUATOR TESTS
# =============================================================================

class TestConditions:
    def test_empty_and_is_true_empty_or_is_false(self):
        txn = _make_txn()
        assert evaluate_condition(CompoundCondition(Logic.AND, ()), txn) is True
        assert evaluate_condition(CompoundCondition(Logic.OR, ()), txn) is False

    def test_in_operator(self):
        cond = _leaf(FieldRef.TYPE, Operator.IN, ("CASH_OUT", "TRANSFER"))
        assert evaluate_condition(cond, _make_txn(txn_type="CASH_OUT"))
        assert not evaluate_condition(cond, _make_txn(txn_type="PAYMENT"))
        # Case-sensitive
        assert not evaluate_condition(cond, _make_txn(txn_type="cash_out"))

    def test_in_with_non_list_value_is_false(self):
        cond = _leaf(FieldRef.TYPE, Operator.IN, "CASH_OUT")
        assert not evaluate_condition(cond, _make_txn(txn_type="CASH_OUT"))

    def test_between_is_inclusive(self):
        cond = _leaf(FieldRef.AMOUNT, Operator.BETWEEN, (8000, 10000))
        assert evaluate_condition(cond, _make_txn(amount=8000.0))
        assert evaluate_condition(cond, _make_txn(amount=10000.0))
        assert not evaluate_condition(cond, _make_txn(amount=10000.01))

    def test_malformed_between_is_false(self):
        assert not evaluate_condition(
            _leaf(FieldRef.AMOUNT, Operator.BETWEEN, (8000,)), _make_txn(amount=9000.0)
        )
        assert not evaluate_condition(
            _leaf(FieldRef.AMOUNT, Operator.BETWEEN, ("low", "high")), _make_txn(amount=9000.0)
        )

    def test_relational_on_non_numeric_is_false(self):
        assert not evaluate_condition(_leaf(FieldRef.TYPE, Operator.GT, 5), _make_txn())
        assert not evaluate_condition(_leaf(FieldRef.AMOUNT, Operator.GT, "5"), _make_txn())

    def test_numeric_equality(self):
        txn = _make_txn(origin_after=0.0)
        assert evaluate_condition(_leaf(FieldRef.ORIGIN_BALANCE_AFTER, Operator.EQ, 0), txn)
        assert not evaluate_condition(_leaf(FieldRef.ORIGIN_BALANCE_AFTER, Operator.NE, 0), txn)

    def test_unknown_operator_is_false(self):
        cond = parse_condition({"field": "amount", "operator": "~=", "value": 1000})
        assert cond.operator is None
        assert not evaluate_condition(cond, _make_txn(amount=1000.0))

    def test_unresolved_field_is_false(self):
        cond = LeafCondition(field=None, operator=Operator.EQ, value=1)
        assert not evaluate_condition(cond, _make_txn())

    def test_nested_tree(self):
        cond = parse_condition({
            "OR": [
                {"field": "amount", "operator": ">", "value": 1_000_000},
                {"AND": [
                    {"field": "type", "operator": "==", "value": "TRANSFER"},
                    {"field": "oldbalanceOrg", "operator": ">", "value": 0},
                ]},
            ]
        })
        assert evaluate_condition(cond, _make_txn(txn_type="TRANSFER", origin_before=10.0))
        assert not evaluate_condition(cond, _make_txn(txn_type="TRANSFER", origin_before=0.0))


# =============================================================================
# TEMPORAL WINDOWING TESTS
# =============================================================================

class TestTemporal:
    def test_window_key_boundaries(self):
        assert window_key(0, 24) == 0
        assert window_key(23.9, 24) == 0
        assert window_key(24, 24) == 1

    def test_window_key_applies_temporal_scale(self):
        # IBM AML: one step is one day
        assert window_key(1, 24, temporal_scale=24.0) == 1
        assert window_key(1, 24, temporal_scale=1.0) == 0

    def test_window_key_monotonic(self):
        steps = [0, 1, 5, 23, 24, 25, 47, 48, 100, 743]
        keys = [window_key(s, 24) for s in steps]
        assert keys == sorted(keys)

    def test_vectorised_matches_scalar(self):
        steps = [0, 3.5, 24, 49, 100]
        assert list(window_keys(steps, 12, 2.0)) == [window_key(s, 12, 2.0) for s in steps]

    def test_non_positive_window_raises(self):
        with pytest.raises(ValueError):
            window_key(1, 0)

    def test_within_window(self):
        assert within_window(1, 10, 24)
        assert not within_window(1, 30, 24)

    def test_bucket_by_window_groups_and_sorts(self):
        txns = [
            _make_txn(index=0, step=30, account="B"),
            _make_txn(index=1, step=1, account="A"),
            _make_txn(index=2, step=2, account="A"),
            _make_txn(index=3, step=5, account="B"),
        ]
        buckets = list(bucket_by_window(transactions_to_frame(txns), ["account"], 24))

        keys = [(group_key, window) for group_key, window, _ in buckets]
        assert keys == [(("A",), 0), (("B",), 0), (("B",), 1)]
        assert list(buckets[0][2]["index"]) == [1, 2]

    def test_bucket_by_window_empty_frame(self):
        assert list(bucket_by_window(transactions_to_frame([]), ["account"], 24)) == []


# =============================================================================
# RULE LOADER TESTS
# =============================================================================

class TestRuleLoader:
    def test_rule_pack_loads(self):
        rules = load_rule_pack("aml_optimized")
        ids = [r.rule_id for r in rules]
        assert "HIGH_RISK_PATTERN" in ids
        assert "STRUCTURING_PATTERN" in ids
        assert len(ids) == len(set(ids))

    def test_missing_rule_id_raises(self):
        with pytest.raises(RuleConfigError, match="rule_id"):
            parse_rule({"severity": "HIGH"})

    def test_invalid_severity_raises(self):
        with pytest.raises(RuleConfigError, match="severity"):
            parse_rule({"rule_id": "R1", "severity": "EXTREME"})

    def test_windowed_requires_time_window(self):
        with pytest.raises(RuleConfigError, match="time_window"):
            parse_rule({"rule_id": "R1", "severity": "HIGH", "scope": "windowed", "group_by": "account"})

    def test_windowed_requires_group_by(self):
        with pytest.raises(RuleConfigError, match="group_by"):
            parse_rule({
                "rule_id": "R1", "severity": "HIGH", "scope": "windowed",
                "time_window": {"size": 24, "unit": "hours"},
            })

    def test_unknown_field_rejected_in_strict_mode(self):
        definition = {
            "rule_id": "R1", "severity": "HIGH",
            "conditions": {"field": "velocity_score", "operator": ">", "value": 3},
        }
        with pytest.raises(RuleConfigError, match="unknown field"):
            parse_rule(definition)

    def test_unknown_field_degrades_in_lenient_mode(self):
        definition = {
            "rule_id": "R1", "severity": "HIGH",
            "conditions": {"field": "velocity_score", "operator": ">", "value": 3},
        }
        rule = parse_rule(definition, strict=False)
        assert rule.conditions.field is None
        assert run_rules([_make_txn()], [rule]) == []

    def test_duplicate_rule_ids_rejected(self):
        definition = {"rule_id": "R1", "severity": "HIGH"}
        with pytest.raises(RuleConfigError, match="duplicate"):
            load_rules([definition, definition])

    def test_dataset_aliases_resolve(self):
        rule = parse_rule({
            "rule_id": "R1", "severity": "MEDIUM",
            "conditions": {"field": "oldbalanceOrg", "operator": ">", "value": 0},
        })
        assert rule.conditions.field is FieldRef.ORIGIN_BALANCE_BEFORE

    def test_list_values_frozen_to_tuples(self):
        rule = parse_rule({
            "rule_id": "R1", "severity": "MEDIUM",
            "conditions": {"field": "type", "operator": "IN", "value": ["CASH_OUT", "TRANSFER"]},
        })
        assert rule.conditions.value == ("CASH_OUT", "TRANSFER")

    def test_time_window_units(self):
        rule = parse_rule({
            "rule_id": "R1", "severity": "HIGH", "scope": "windowed",
            "time_window": {"size": 1, "unit": "days"}, "group_by": ["account", "recipient"],
        })
        assert rule.time_window.hours == 24.0
        assert rule.group_by == (FieldRef.ACCOUNT, FieldRef.RECIPIENT)

    def test_rules_file_loads(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - rule_id: BIG_TRANSFER\n"
            "    severity: HIGH\n"
            "    conditions:\n"
            "      AND:\n"
            "        - {field: type, operator: '==', value: TRANSFER}\n"
            "        - {field: amount, operator: '>', value: 100000}\n"
        )
        rules = load_rules_file(str(path))
        assert [r.rule_id for r in rules] == ["BIG_TRANSFER"]
        assert rules[0].scope is RuleScope.SINGLE_RECORD


# =============================================================================
# RULE ENGINE TESTS
# =============================================================================

class TestRuleEngine:
    def test_high_risk_pattern_fires(self):
        txn = _make_txn(txn_type="CASH_OUT", amount=15000.0, origin_before=15000.0,
                        origin_after=0.0, dest_before=0.0)
        violations = run_rules([txn], [_pack_rule("HIGH_RISK_PATTERN")])

        assert len(violations) == 1
        assert violations[0].severity is Severity.CRITICAL
        assert violations[0].record_indices == (0,)
        assert violations[0].amount == pytest.approx(15000.0)

    def test_structuring_fires_once_per_bucket(self):
        txns = [
            _make_txn(index=i, step=step, txn_type="TRANSFER", amount=9000.0, account="C1")
            for i, step in enumerate([1, 5, 10])
        ]
        violations = run_rules(txns, [_pack_rule("STRUCTURING_PATTERN")], temporal_scale=1.0)

        assert len(violations) == 1
        v = violations[0]
        assert v.amount == pytest.approx(27000.0)
        assert v.record_indices == (0, 1, 2)
        assert v.actual_value == 3.0
        assert v.account == "C1"
        assert v.window_key == 0

    def test_structuring_split_across_window_boundary(self):
        # Fixed-origin windows: steps 20, 23 fall in window 0; step 25 in window 1
        txns = [
            _make_txn(index=i, step=step, amount=9000.0, account="C1")
            for i, step in enumerate([20, 23, 25])
        ]
        assert run_rules(txns, [_pack_rule("STRUCTURING_PATTERN")]) == []

    def test_structuring_ignores_out_of_range_amounts(self):
        txns = [
            _make_txn(index=0, step=1, amount=9000.0),
            _make_txn(index=1, step=2, amount=9500.0),
            _make_txn(index=2, step=3, amount=12000.0),
        ]
        assert run_rules(txns, [_pack_rule("STRUCTURING_PATTERN")]) == []

    def test_pairwise_grouping(self):
        txns = [
            _make_txn(index=0, step=1, txn_type="TRANSFER", amount=6000.0, account="C1", recipient="M1"),
            _make_txn(index=1, step=2, txn_type="TRANSFER", amount=6000.0, account="C1", recipient="M1"),
            _make_txn(index=2, step=3, txn_type="TRANSFER", amount=6000.0, account="C1", recipient="M2"),
        ]
        violations = run_rules(txns, [_pack_rule("CTR_AGGREGATION")])

        assert len(violations) == 1
        assert violations[0].group_key == ("C1", "M1")
        assert violations[0].account == "C1"
        assert violations[0].actual_value == pytest.approx(12000.0)

    def test_min_records_enforced(self):
        txns = [_make_txn(index=0, txn_type="TRANSFER", amount=50000.0)]
        assert run_rules(txns, [_pack_rule("CTR_AGGREGATION")]) == []

    def test_blank_accounts_never_bucketed_together(self):
        rows = [
            {"acct": None, "amt": 9000.0, "kind": "TRANSFER", "step": step}
            for step in (1, 2, 3)
        ]
        mapping = {"acct": "account", "amt": "amount", "kind": "type", "step": "timestamp_step"}
        txns = normalize(rows, mapping)

        assert [t.account for t in txns] == ["", "", ""]
        assert run_rules(txns, [_pack_rule("STRUCTURING_PATTERN")]) == []

    def test_blank_recipient_skipped_in_pairwise_grouping(self):
        txns = [
            _make_txn(index=0, step=1, txn_type="TRANSFER", amount=6000.0, account="C1", recipient=""),
            _make_txn(index=1, step=2, txn_type="TRANSFER", amount=6000.0, account="C1", recipient=" "),
            _make_txn(index=2, step=3, txn_type="TRANSFER", amount=6000.0, account="C1", recipient="M1"),
            _make_txn(index=3, step=4, txn_type="TRANSFER", amount=6000.0, account="C1", recipient="M1"),
        ]
        violations = run_rules(txns, [_pack_rule("CTR_AGGREGATION")])

        assert len(violations) == 1
        assert violations[0].record_indices == (2, 3)

    def test_temporal_scale_changes_buckets(self):
        rule = parse_rule({
            "rule_id": "TWO_IN_A_DAY", "severity": "MEDIUM", "scope": "windowed",
            "threshold": 2, "time_window": {"size": 24, "unit": "hours"}, "group_by": "account",
        })
        txns = [_make_txn(index=0, step=0), _make_txn(index=1, step=1)]

        assert len(run_rules(txns, [rule], temporal_scale=1.0)) == 1
        assert run_rules(txns, [rule], temporal_scale=24.0) == []

    def test_windowed_without_threshold_fires_every_bucket(self):
        rule = parse_rule({
            "rule_id": "ANY_ACTIVITY", "severity": "MEDIUM", "scope": "windowed",
            "time_window": 24, "group_by": "account",
        })
        txns = [_make_txn(index=0, account="A"), _make_txn(index=1, account="B")]
        assert len(run_rules(txns, [rule])) == 2

    def test_single_record_matches_condition_filter(self):
        rule = _pack_rule("CTR_CASHOUT_TRANSFER")
        txns = [
            _make_txn(index=i, txn_type=t, amount=a)
            for i, (t, a) in enumerate([
                ("CASH_OUT", 15000.0), ("PAYMENT", 20000.0), ("TRANSFER", 9999.0), ("TRANSFER", 10000.0),
            ])
        ]
        violations = run_rules(txns, [rule])
        expected = [t.index for t in txns if evaluate_condition(rule.conditions, t)]
        assert [v.record_indices[0] for v in violations] == expected == [0, 3]

    def test_empty_inputs(self):
        rules = load_rule_pack("aml_optimized")
        assert run_rules([], rules) == []
        assert run_rules([_make_txn()], []) == []

    def test_disabled_rules_skipped(self):
        rule = parse_rule({"rule_id": "ALL", "severity": "MEDIUM", "enabled": False})
        assert run_rules([_make_txn()], [rule]) == []

    def test_idempotent(self):
        rules = load_rule_pack("aml_optimized")
        txns = [
            _make_txn(index=i, step=i, txn_type="TRANSFER", amount=9000.0 + i,
                      origin_before=9000.0, origin_after=0.0)
            for i in range(6)
        ]
        assert run_rules(txns, rules) == run_rules(txns, rules)

    def test_failing_rule_does_not_abort_scan(self, monkeypatch):
        engine = RuleEngine()
        original = engine.run_rule

        def flaky(rule, transactions, frame=None):
            if rule.rule_id == "BAD":
                raise RuntimeError("boom")
            return original(rule, transactions, frame)

        monkeypatch.setattr(engine, "run_rule", flaky)
        bad = parse_rule({"rule_id": "BAD", "severity": "HIGH"})
        good = parse_rule({"rule_id": "GOOD", "severity": "HIGH"})

        violations = engine.run([_make_txn()], [bad, good])
        assert [v.rule_id for v in violations] == ["GOOD"]

    def test_violation_cap(self):
        rule = parse_rule({"rule_id": "ALL", "severity": "MEDIUM"})
        txns = [_make_txn(index=i) for i in range(5)]
        assert len(RuleEngine(violation_cap=2).run(txns, [rule])) == 2

    def test_explanation_attached(self):
        txn = _make_txn(amount=5000.0, origin_before=5000.0)
        violation = run_rules([txn], [_pack_rule("HIGH_RISK_PATTERN")])[0]
        assert "HIGH_RISK_PATTERN" in violation.explanation
        assert "Amount: $5,000.00" in violation.explanation

    def test_violation_requires_indices(self):
        with pytest.raises(ValueError):
            _make_violation(indices=())


# =============================================================================
# CASE AGGREGATOR & COMPLIANCE SCORE TESTS
# =============================================================================

class TestCases:
    def test_cases_grouped_and_ordered(self):
        violations = [
            _make_violation("R1", Severity.HIGH, "C2", 1000.0, (5,)),
            _make_violation("R2", Severity.MEDIUM, "C3", 50.0, (7,)),
            _make_violation("R3", Severity.CRITICAL, "C1", 100.0, (3, 1)),
            _make_violation("R1", Severity.HIGH, "C1", 500.0, (1, 2)),
        ]
        cases = aggregate_cases(violations)

        assert [c.account for c in cases] == ["C1", "C2", "C3"]
        assert cases[0].max_severity is Severity.CRITICAL
        assert cases[0].violation_count == 2
        assert cases[0].total_amount == pytest.approx(600.0)
        assert cases[0].record_indices == (1, 2, 3)

    def test_ties_broken_by_amount_then_account(self):
        violations = [
            _make_violation(severity=Severity.HIGH, account="C2", amount=1000.0),
            _make_violation(severity=Severity.HIGH, account="C4", amount=2000.0),
            _make_violation(severity=Severity.HIGH, account="C3", amount=1000.0),
        ]
        assert [c.account for c in aggregate_cases(violations)] == ["C4", "C2", "C3"]

    def test_no_violations_no_cases(self):
        assert aggregate_cases([]) == []


class TestComplianceScore:
    def test_empty_scan_scores_100(self):
        assert calculate_compliance_score(0, []) == 100.0
        assert calculate_compliance_score(500, []) == 100.0

    def test_severity_weighted(self):
        violations = [
            _make_violation(severity=Severity.CRITICAL),
            _make_violation(severity=Severity.MEDIUM),
            _make_violation(severity=Severity.MEDIUM),
        ]
        assert calculate_compliance_score(100, violations) == pytest.approx(98.0)

    def test_score_clamped_at_zero(self):
        violations = [_make_violation(severity=Severity.CRITICAL) for _ in range(5)]
        assert calculate_compliance_score(1, violations) == 0.0

    def test_score_status(self):
        assert get_score_status(40)["status"] == "critical"
        assert get_score_status(60)["status"] == "warning"
        assert get_score_status(90)["status"] == "good"

    def test_violation_summary(self):
        violations = [
            _make_violation(severity=Severity.CRITICAL),
            _make_violation(severity=Severity.HIGH),
            _make_violation(severity=Severity.HIGH),
        ]
        assert get_violation_summary(violations) == {"critical": 1, "high": 2, "medium": 0}


# =============================================================================
# RULE QUALITY & CONFIDENCE TESTS
# =============================================================================

class TestRuleQuality:
    def test_threshold_only_rule_is_low_quality(self):
        result = validate_rule_quality({"threshold": 100})

        assert result.score == 30
        assert result.valid is False
        assert "No transaction type restriction - will flag all transaction types" in result.warnings
        assert "Low threshold ($100) may cause excessive false positives" in result.warnings
        assert "Threshold-only rule without context" in result.warnings

    def test_behavioral_rule_is_high_quality(self):
        result = validate_rule_quality(_pack_rule("HIGH_RISK_PATTERN"))
        assert result.valid is True
        assert result.score == 100
        assert result.warnings == ()

    def test_accepts_raw_definition_and_rule_equally(self):
        rule = _pack_rule("STRUCTURING_PATTERN")
        assert validate_rule_quality(rule) == validate_rule_quality(rule.to_dict())

    def test_deterministic(self):
        definition = {"threshold": 7500, "conditions": {"field": "amount", "operator": ">", "value": 7500}}
        assert validate_rule_quality(definition) == validate_rule_quality(definition)

    def test_garbage_input_does_not_raise(self):
        result = validate_rule_quality("not a rule")
        assert 0 <= result.score <= 100

    def test_suggestions(self):
        assert suggest_rule_improvements(_pack_rule("HIGH_RISK_PATTERN")) == ["Rule looks good!"]
        suggestions = suggest_rule_improvements({"threshold": 100})
        assert any("CASH_OUT or TRANSFER" in s for s in suggestions)
        assert "Combine threshold with account behavior context:" in suggestions

    def test_rule_set_score(self):
        summary = score_rule_set([{"threshold": 100}, _pack_rule("HIGH_RISK_PATTERN")])
        assert summary["average_score"] == pytest.approx(65.0)
        assert summary["high_quality_count"] == 1
        assert summary["low_quality_count"] == 1
        assert len(summary["common_issues"]) == 3


class TestConfidence:
    def test_clamped_to_one(self):
        rule = _pack_rule("HIGH_RISK_PATTERN")
        violation = _make_violation(rule_id=rule.rule_id, severity=rule.severity, amount=5000.0)
        assert calculate_confidence(violation, rule) == 1.0

    def test_outlier_boost(self):
        rule = parse_rule({"rule_id": "R1", "severity": "MEDIUM", "threshold": 100})
        violation = _make_violation(rule_id="R1", severity=Severity.MEDIUM, amount=1000.0)
        # quality 0.30 + outlier (ratio 10 is not > 10, but > 5) 0.10
        assert calculate_confidence(violation, rule, mean_amount=100.0) == pytest.approx(0.4)

    def test_review_history_blended(self):
        rule = parse_rule({
            "rule_id": "R1", "severity": "MEDIUM", "threshold": 100, "approved_count": 20,
        })
        violation = _make_violation(rule_id="R1", severity=Severity.MEDIUM, amount=1000.0)
        # 0.4 * 0.3 + (21 / 22) * 0.7
        assert calculate_confidence(violation, rule, mean_amount=100.0) == pytest.approx(0.7882, abs=1e-4)

    def test_precomputed_quality_score_used(self, monkeypatch):
        rule = parse_rule({"rule_id": "R1", "severity": "MEDIUM", "threshold": 100})
        violation = _make_violation(rule_id="R1", severity=Severity.MEDIUM, amount=1000.0)

        def fail(_rule):
            raise AssertionError("quality should not be recomputed")

        monkeypatch.setattr("rules.confidence.validate_rule_quality", fail)
        assert calculate_confidence(violation, rule, mean_amount=100.0, quality_score=30) == pytest.approx(0.4)


# =============================================================================
# EVALUATOR TESTS
# =============================================================================

class TestEvaluator:
    def _transactions(self):
        return [
            _make_txn(index=0, is_fraud=True),
            _make_txn(index=1, is_fraud=True),
            _make_txn(index=2, is_fraud=False),
            _make_txn(index=3, is_fraud=None),
        ]

    def test_confusion_matrix(self):
        violations = [_make_violation("R1", indices=(0, 2, 99))]
        result = evaluate(violations, self._transactions())

        assert (result.tp, result.fp, result.fn, result.tn) == (1, 1, 1, 1)
        assert result.tp + result.fp + result.fn + result.tn == result.total_transactions == 4
        assert result.precision == pytest.approx(0.5)
        assert result.recall == pytest.approx(0.5)
        assert result.f1 == pytest.approx(0.5)
        assert result.accuracy == pytest.approx(0.5)
        assert result.fpr == pytest.approx(0.5)
        assert result.fraud_count == 2
        assert result.detected_count == 2
        assert result.summary == "Detected 50% of known fraud with 50% false positive rate"

    def test_unknown_indices_ignored_in_per_rule_breakdown(self):
        violations = [_make_violation("R1", indices=(0, 2, 99))]
        result = evaluate(violations, self._transactions())

        assert result.per_rule["R1"].detected_count == 2
        assert result.per_rule["R1"].fraud_in_detected == 1
        assert result.per_rule["R1"].precision == pytest.approx(0.5)

    def test_flagged_once_across_rules(self):
        violations = [
            _make_violation("R1", indices=(0, 2)),
            _make_violation("R2", indices=(0,)),
        ]
        result = evaluate(violations, self._transactions())

        assert result.detected_count == 2
        assert result.per_rule["R1"].detected_count == 2
        assert result.per_rule["R1"].fraud_in_detected == 1
        assert result.per_rule["R2"].precision == pytest.approx(1.0)

    def test_no_violations(self):
        result = evaluate([], self._transactions())
        assert result.tp == result.fp == 0
        assert result.fn == 2
        assert result.precision == 0.0
        assert result.recall == 0.0
        assert result.f1 == 0.0

    def test_empty_dataset(self):
        result = evaluate([], [])
        assert result.total_transactions == 0
        assert result.accuracy == 0.0
        assert result.to_dict()["per_rule"] == {}


# =============================================================================
# FULL PIPELINE INTEGRATION TESTS
# =============================================================================

class TestPipeline:
    def _frame(self):
        return _make_paysim_frame([
            {"nameOrig": "C1", "type": "PAYMENT", "amount": 100.0},
            {"nameOrig": "C2", "type": "CASH_OUT", "amount": 5000.0, "oldbalanceOrg": 5000.0,
             "newbalanceOrig": 0.0, "oldbalanceDest": 0.0, "isFraud": 1},
            {"nameOrig": "C3", "type": "TRANSFER", "amount": 200.0, "oldbalanceOrg": 1000.0,
             "newbalanceOrig": 800.0, "oldbalanceDest": 500.0},
        ])

    def test_pipeline_runs_end_to_end(self):
        result = CompliancePipeline().run(self._frame())

        assert result.dataset_profile == "paysim"
        assert len(result.transactions) == 3
        assert sorted(v.rule_id for v in result.violations) == ["ACCOUNT_DRAINED", "HIGH_RISK_PATTERN"]
        assert [c.account for c in result.cases] == ["C2"]
        assert result.compliance_score == pytest.approx(41.67)
        assert result.score_status["status"] == "critical"

    def test_violation_table_ranked_by_severity(self):
        df = CompliancePipeline().run(self._frame()).violations_df

        assert list(df.columns) == VIOLATION_COLUMNS
        assert df.iloc[0]["rule_id"] == "HIGH_RISK_PATTERN"
        assert df["confidence"].between(0, 1).all()

    def test_labelled_data_is_evaluated(self):
        result = CompliancePipeline().run(self._frame())
        assert result.is_labelled
        assert (result.evaluation.tp, result.evaluation.fp) == (1, 0)
        assert result.evaluation.recall == pytest.approx(1.0)

    def test_sample_limit(self):
        result = CompliancePipeline(sample_limit=1).run(self._frame())
        assert len(result.transactions) == 1
        assert result.violations == []
        assert result.violations_df.empty

    def test_rule_quality_computed_once_per_rule(self, monkeypatch):
        calls = []

        def counting(rule):
            calls.append(rule.rule_id)
            return validate_rule_quality(rule)

        monkeypatch.setattr("pipeline.validate_rule_quality", counting)
        frame = pd.concat([self._frame(), self._frame()], ignore_index=True)
        result = CompliancePipeline().run(frame)

        fired = {v.rule_id for v in result.violations}
        assert len(result.violations) > len(fired)
        assert sorted(calls) == sorted(fired)

    def test_custom_rules(self):
        rules = [{
            "rule_id": "ANY_TRANSFER", "severity": "MEDIUM",
            "conditions": {"field": "type", "operator": "==", "value": "TRANSFER"},
        }]
        result = CompliancePipeline(rules=rules).run(self._frame())
        assert [v.record_indices for v in result.violations] == [(2,)]

    def test_unmappable_input_raises(self):
        with pytest.raises(SchemaError):
            CompliancePipeline().run(pd.DataFrame([{"foo": 1, "bar": 2}]))

    def test_invalid_rules_raise_on_construction(self):
        with pytest.raises(RuleConfigError):
            CompliancePipeline(rules=[{"rule_id": "R1", "severity": "HIGH", "scope": "windowed"}])
