"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. Record normalizer   →  raw rows to canonical Transactions
    2. Rule engine         →  Violations per rule
    3. Case aggregator     →  Violations grouped per account
    4. Evaluator           →  confusion matrix (labelled datasets only)
    5. Output serialization →  violation and case tables

This is the single entry point for running a scan. Everything else is
internal machinery.

Usage:
    from pipeline import CompliancePipeline

    pipeline = CompliancePipeline(rule_pack="aml_optimized")
    result = pipeline.run(transactions_df)
    result.violations_df.to_csv("violations.csv", index=False)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from core.models import Case, EvaluationResult, Rule, Transaction, Violation
from core.schema_adapter import detect_dataset, get_default_mapping, get_temporal_scale, normalize
from rules.rule_loader import load_rule_pack, load_rules, rules_summary
from rules.rule_engine import RuleEngine
from rules.confidence import calculate_confidence
from rules.quality_validator import validate_rule_quality
from reporting.case_aggregator import aggregate_cases
from reporting.compliance_score import calculate_compliance_score, get_score_status
from evaluation.evaluator import evaluate
from config.config_loader import load_config

logger = logging.getLogger(__name__)


VIOLATION_COLUMNS = [
    "rule_id", "rule_name", "severity", "account", "amount", "transaction_type",
    "actual_value", "threshold", "confidence", "window_key", "group_key",
    "record_indices", "explanation",
]

CASE_COLUMNS = [
    "account", "max_severity", "violation_count", "total_amount",
    "rule_ids", "record_indices",
]


@dataclass
class ScanResult:
    """Everything one scan produces. Tables are derived from the objects."""

    dataset_profile: str
    transactions: List[Transaction]
    rules: List[Rule]
    violations: List[Violation]
    cases: List[Case]
    compliance_score: float
    score_status: Dict[str, str]
    evaluation: Optional[EvaluationResult] = None
    violations_df: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=VIOLATION_COLUMNS))
    cases_df: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=CASE_COLUMNS))

    @property
    def is_labelled(self) -> bool:
        return self.evaluation is not None


class CompliancePipeline:
    """
    End-to-end compliance scan.

    Orchestrates normalize → run rules → aggregate cases → evaluate without
    exposing internal objects to callers that only want tables.
    """

    def __init__(
        self,
        rules: Sequence[Rule] | Iterable[Mapping[str, Any]] | None = None,
        rule_pack: str | None = None,
        temporal_scale: float | None = None,
        sample_limit: int | None = None,
        strict_rules: bool = True,
    ):
        """
        Args:
            rules: Parsed Rules or raw rule definitions. Takes precedence over rule_pack.
            rule_pack: Name of a prebuilt pack in config. Defaults to engine.default_rule_pack.
            temporal_scale: Hours per dataset step. Defaults to the detected dataset profile.
            sample_limit: Scan at most this many records. Defaults to config (null = all).
            strict_rules: Reject rules that reference unknown fields.

        Raises:
            RuleConfigError: If any rule definition is invalid.
        """
        self.config = load_config()
        engine_cfg = self.config["engine"]

        self.rules = self._load_rules(rules, rule_pack or engine_cfg["default_rule_pack"], strict_rules)
        self.temporal_scale = temporal_scale
        self.sample_limit = sample_limit if sample_limit is not None else engine_cfg.get("sample_limit")

        logger.info(
            f"Pipeline initialized. Rules: {len(self.rules)} {rules_summary(self.rules)}. "
            f"Sample limit: {self.sample_limit or 'none'}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(
        self,
        raw: pd.DataFrame | Iterable[Mapping[str, Any]],
        column_mapping: Mapping[str, str] | None = None,
    ) -> ScanResult:
        """
        Run the full scan.

        Args:
            raw: DataFrame or iterable of raw rows.
            column_mapping: Source column -> canonical field. When omitted the
                dataset profile is detected from the headers and its default
                mapping is used.

        Returns:
            ScanResult with domain objects and serialized tables.

        Raises:
            SchemaError: If a required field cannot be mapped.
        """
        frame = raw if isinstance(raw, pd.DataFrame) else pd.DataFrame(list(raw))
        logger.info(f"Pipeline starting. Input: {len(frame):,} rows.")

        # --- Stage 1: Normalize ---
        profile = detect_dataset(frame.columns)
        if column_mapping is None:
            column_mapping = get_default_mapping(profile)
        temporal_scale = (
            self.temporal_scale if self.temporal_scale is not None else get_temporal_scale(profile)
        )

        if self.sample_limit and len(frame) > self.sample_limit:
            logger.info(f"Sampling first {self.sample_limit:,} of {len(frame):,} rows.")
            frame = frame.head(self.sample_limit)

        transactions = normalize(frame, column_mapping)
        logger.info(
            f"Stage 1 complete. Dataset profile: {profile}. "
            f"Transactions: {len(transactions):,}. Temporal scale: {temporal_scale}."
        )

        # --- Stage 2: Rules ---
        violations = RuleEngine(temporal_scale=temporal_scale).run(transactions, self.rules)
        logger.info(f"Stage 2 complete. Violations: {len(violations):,}.")

        # --- Stage 3: Cases & score ---
        cases = aggregate_cases(violations)
        score = calculate_compliance_score(len(transactions), violations)
        logger.info(f"Stage 3 complete. Cases: {len(cases):,}. Compliance score: {score}.")

        # --- Stage 4: Evaluation (labelled data only) ---
        evaluation = None
        if transactions and any(t.is_fraud is not None for t in transactions):
            evaluation = evaluate(violations, transactions)
            logger.info(f"Stage 4 complete. {evaluation.summary}.")

        # --- Stage 5: Serialize ---
        result = ScanResult(
            dataset_profile=profile,
            transactions=transactions,
            rules=list(self.rules),
            violations=violations,
            cases=cases,
            compliance_score=score,
            score_status=get_score_status(score),
            evaluation=evaluation,
            violations_df=self._serialize_violations(violations, transactions),
            cases_df=self._serialize_cases(cases),
        )
        logger.info(f"Pipeline complete. Violation rows: {len(result.violations_df):,}.")
        return result

    # -------------------------------------------------------------------------
    # INTERNAL: RULES
    # -------------------------------------------------------------------------

    @staticmethod
    def _load_rules(rules, rule_pack: str, strict: bool) -> List[Rule]:
        if rules is None:
            return load_rule_pack(rule_pack, strict=strict)

        rules = list(rules)
        if all(isinstance(r, Rule) for r in rules):
            return rules
        return load_rules(rules, strict=strict)

    # -------------------------------------------------------------------------
    # INTERNAL: OUTPUT SERIALIZATION
    # -------------------------------------------------------------------------

    def _serialize_violations(
        self, violations: List[Violation], transactions: List[Transaction]
    ) -> pd.DataFrame:
        """
        Flat violation table, ranked by severity then confidence so reviewers
        see the strongest hits first.
        """
        if not violations:
            return pd.DataFrame(columns=VIOLATION_COLUMNS)

        rules_by_id = {r.rule_id: r for r in self.rules}
        quality_by_id = {
            rule_id: validate_rule_quality(rules_by_id[rule_id]).score
            for rule_id in {v.rule_id for v in violations}
        }
        mean_amount = sum(t.amount for t in transactions) / len(transactions) if transactions else None

        rows = []
        for v in violations:
            rows.append({
                "rule_id": v.rule_id,
                "rule_name": v.rule_name,
                "severity": v.severity.value,
                "account": v.account,
                "amount": v.amount,
                "transaction_type": v.transaction_type,
                "actual_value": v.actual_value,
                "threshold": v.threshold,
                "confidence": calculate_confidence(
                    v, rules_by_id[v.rule_id], mean_amount, quality_score=quality_by_id[v.rule_id]
                ),
                "window_key": v.window_key,
                "group_key": " -> ".join(v.group_key),
                "record_indices": "|".join(str(i) for i in v.record_indices),
                "explanation": v.explanation,
                "_severity_rank": v.severity.rank,
            })

        df = pd.DataFrame(rows)

        # Sort: severity descending → confidence descending → rule → account
        df = df.sort_values(
            ["_severity_rank", "confidence", "rule_id", "account"],
            ascending=[False, False, True, True],
            kind="mergesort",
        ).drop(columns="_severity_rank").reset_index(drop=True)

        return df

    @staticmethod
    def _serialize_cases(cases: List[Case]) -> pd.DataFrame:
        """One row per case, in the aggregator's ranking order."""
        if not cases:
            return pd.DataFrame(columns=CASE_COLUMNS)

        rows = []
        for c in cases:
            rows.append({
                "account": c.account,
                "max_severity": c.max_severity.value,
                "violation_count": c.violation_count,
                "total_amount": c.total_amount,
                "rule_ids": "|".join(sorted({v.rule_id for v in c.violations})),
                "record_indices": "|".join(str(i) for i in c.record_indices),
            })

        return pd.DataFrame(rows)
