"""
compliance_score.py
--------------------
Severity-weighted compliance score for a scan.

    score = 100 × (1 − Σ severity_weight(v) / total_rows_scanned)

Clamped to [0, 100] and rounded to 2 decimals. An empty scan scores 100.
Weights (CRITICAL 1.0, HIGH 0.75, MEDIUM 0.5) and status boundaries come
from config.yaml.
"""

from typing import Dict, Iterable

from core.models import Severity, Violation
from config.config_loader import get_compliance_score_config, get_severity_weights


def calculate_compliance_score(total_rows_scanned: int, violations: Iterable[Violation]) -> float:
    if total_rows_scanned <= 0:
        return 100.0

    weights = get_severity_weights()
    weighted = sum(weights.get(v.severity.value, 0.0) for v in violations)

    raw_score = 100 * (1 - weighted / total_rows_scanned)
    return round(max(0.0, min(100.0, raw_score)), 2)


def get_score_status(score: float) -> Dict[str, str]:
    """Traffic-light status for a compliance score."""
    cfg = get_compliance_score_config()
    if score < cfg["critical_below"]:
        return {"status": "critical", "color": "red"}
    if score < cfg["warning_below"]:
        return {"status": "warning", "color": "yellow"}
    return {"status": "good", "color": "green"}


def get_violation_summary(violations: Iterable[Violation]) -> Dict[str, int]:
    """Violation counts per severity, lower-cased keys."""
    summary = {s.value.lower(): 0 for s in Severity}
    for v in violations:
        summary[v.severity.value.lower()] += 1
    return summary
