"""
evaluator.py
-------------
Scores a scan's violations against ground-truth fraud labels.

Used offline to tune rules; labels are never visible to the rule engine.

    flagged  = union of record_indices over all violations
    tp / fp  = flagged and fraud / flagged and not fraud
    fn / tn  = not flagged and fraud / not flagged and not fraud

Every transaction lands in exactly one cell, so tp+fp+fn+tn = total. A
transaction flagged by several rules counts once here, but once per rule in
the per-rule breakdown. Unlabelled transactions count as not fraud, and
indices that do not belong to the transaction set are ignored.
"""

import logging
from collections import defaultdict
from typing import Dict, Sequence, Set

import numpy as np

from core.models import EvaluationResult, RuleBreakdown, Transaction, Violation

logger = logging.getLogger(__name__)


def evaluate(violations: Sequence[Violation], transactions: Sequence[Transaction]) -> EvaluationResult:
    """Confusion matrix, derived metrics and per-rule breakdown for one run."""
    indices = np.array([t.index for t in transactions], dtype=np.int64)
    fraud = np.array([bool(t.is_fraud) for t in transactions], dtype=bool)
    known_indices = set(indices.tolist())
    fraud_indices = set(indices[fraud].tolist())

    flagged_indices: Set[int] = set()
    per_rule_indices: Dict[str, Set[int]] = defaultdict(set)
    for v in violations:
        evidence = known_indices.intersection(v.record_indices)
        flagged_indices.update(evidence)
        per_rule_indices[v.rule_id].update(evidence)

    flagged = np.isin(indices, list(flagged_indices)) if flagged_indices else np.zeros(len(indices), dtype=bool)

    tp = int(np.sum(flagged & fraud))
    fp = int(np.sum(flagged & ~fraud))
    fn = int(np.sum(~flagged & fraud))
    tn = int(np.sum(~flagged & ~fraud))
    total = len(indices)

    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    f1 = _ratio(2 * precision * recall, precision + recall)

    per_rule = {
        rule_id: RuleBreakdown(
            detected_count=len(rule_indices),
            fraud_in_detected=len(rule_indices & fraud_indices),
        )
        for rule_id, rule_indices in per_rule_indices.items()
    }

    result = EvaluationResult(
        tp=tp,
        fp=fp,
        tn=tn,
        fn=fn,
        precision=precision,
        recall=recall,
        f1=f1,
        accuracy=_ratio(tp + tn, total),
        fpr=_ratio(fp, fp + tn),
        total_transactions=total,
        fraud_count=int(np.sum(fraud)),
        detected_count=int(np.sum(flagged)),
        per_rule=per_rule,
    )
    logger.info(
        f"Evaluation: precision={result.precision:.4f} recall={result.recall:.4f} "
        f"f1={result.f1:.4f} (tp={tp}, fp={fp}, fn={fn}, tn={tn})."
    )
    return result


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0
