"""
main.py
--------
Entry point for the Transaction Compliance Rule Engine.

Reads a transaction CSV, runs the full compliance scan, and writes output
to the outputs/ folder.

Usage (from the project root):
    python main.py --input PS_20174392719_1491204439457_log.csv

    # With optional arguments:
    python main.py --input data.csv --rules my_rules.yaml
    python main.py --input data.csv --rule-pack aml_optimized --temporal-scale 24
    python main.py --input data.csv --sample-limit 50000 --lenient-rules
"""

import sys
import os
import json
import argparse
import logging
import pandas as pd
from datetime import datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from pipeline import CompliancePipeline, ScanResult
from core.exceptions import RuleConfigError, SchemaError
from reporting.compliance_score import get_violation_summary
from rules.rule_loader import load_rules_file
from rules.quality_validator import score_rule_set


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Transaction Compliance Rule Engine: scan transactions against AML/fraud rules."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to input transactions CSV."
    )
    parser.add_argument(
        "--rules", type=str, default=None,
        help="Path to a YAML rule file. Overrides --rule-pack."
    )
    parser.add_argument(
        "--rule-pack", type=str, default=None,
        help="Prebuilt rule pack from config. Defaults to engine.default_rule_pack."
    )
    parser.add_argument(
        "--temporal-scale", type=float, default=None,
        help="Hours per dataset step. Defaults to the detected dataset profile."
    )
    parser.add_argument(
        "--sample-limit", type=int, default=None,
        help="Scan at most this many records. Defaults to config value (all)."
    )
    parser.add_argument(
        "--lenient-rules", action="store_true", default=False,
        help="Load rules with unknown fields as never-matching instead of failing."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None) -> int:
    args = parse_args(argv)

    # --- Resolve paths ---
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load transactions ---
    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        return 1

    transactions = pd.read_csv(args.input)
    logger.info(f"Loaded {len(transactions):,} rows, {len(transactions.columns)} columns.")

    # --- Run pipeline ---
    try:
        rules = load_rules_file(args.rules, strict=not args.lenient_rules) if args.rules else None
        pipeline = CompliancePipeline(
            rules=rules,
            rule_pack=args.rule_pack,
            temporal_scale=args.temporal_scale,
            sample_limit=args.sample_limit,
            strict_rules=not args.lenient_rules,
        )
        result = pipeline.run(transactions)
    except (SchemaError, RuleConfigError) as e:
        logger.error(str(e))
        return 1

    # --- Output ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    violations_path = os.path.join(output_dir, f"violations_{timestamp}.csv")
    result.violations_df.to_csv(violations_path, index=False)
    logger.info(f"Violations saved to: {violations_path}")

    cases_path = os.path.join(output_dir, f"cases_{timestamp}.csv")
    result.cases_df.to_csv(cases_path, index=False)
    logger.info(f"Cases saved to: {cases_path}")

    if result.evaluation is not None:
        evaluation_path = os.path.join(output_dir, f"evaluation_{timestamp}.json")
        with open(evaluation_path, "w") as f:
            json.dump(result.evaluation.to_dict(), f, indent=2)
        logger.info(f"Evaluation saved to: {evaluation_path}")

    _print_summary(result)
    return 0


def _print_summary(result: ScanResult):
    """Prints a clean summary table to the console."""
    print("\n" + "=" * 80)
    print("  COMPLIANCE SCAN SUMMARY")
    print("=" * 80)

    print(f"\n  Dataset profile:   {result.dataset_profile}")
    print(f"  Records scanned:   {len(result.transactions):,}")
    print(
        f"  Compliance score:  {result.compliance_score:.2f} "
        f"({result.score_status['status']})"
    )

    if not result.violations:
        print("\n  No violations detected.\n")
        print("=" * 80 + "\n")
        return

    # By severity
    print("\n  Violations by Severity:")
    print("  " + "-" * 60)
    for severity, count in get_violation_summary(result.violations).items():
        print(f"    {severity.upper():10s}  {count:>7,}")

    # By rule
    print("\n  Violations by Rule:")
    print("  " + "-" * 60)
    counts = result.violations_df["rule_id"].value_counts()
    for rule_id, count in counts.items():
        print(f"    {rule_id:35s}  {count:>7,}")

    # Rule quality
    quality = score_rule_set(result.rules)
    print(f"\n  Rule quality: average {quality['average_score']:.1f}, "
          f"{quality['low_quality_count']} below threshold")
    for issue in quality["common_issues"]:
        print(f"    - {issue}")

    # Cases
    print(f"\n  Accounts with open cases: {len(result.cases):,}")

    # Evaluation
    if result.evaluation is not None:
        ev = result.evaluation
        print("\n  Evaluation against labels:")
        print("  " + "-" * 60)
        print(f"    Precision {ev.precision:.4f}  Recall {ev.recall:.4f}  F1 {ev.f1:.4f}  FPR {ev.fpr:.4f}")
        print(f"    {ev.summary}")

    print("=" * 80 + "\n")


if __name__ == "__main__":
    sys.exit(main())
