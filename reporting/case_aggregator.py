"""
case_aggregator.py
-------------------
Groups violations by account into Cases for reporting.

Cases are derived, never stored: they are recomputed from the violation set
every time they are requested.

total_amount sums each violation's amount independently. When two
violations share record indices (e.g. a single-record rule and a windowed
rule over the same transaction) that evidence is counted twice. This is
acceptable for ranking cases by severity and exposure; it is not a
financial total.
"""

from collections import defaultdict
from typing import Dict, Iterable, List

from core.models import Case, Violation


def aggregate_cases(violations: Iterable[Violation]) -> List[Case]:
    """
    One Case per account with at least one violation.

    Returns:
        Cases ordered by max severity (desc), total amount (desc), account.
    """
    by_account: Dict[str, List[Violation]] = defaultdict(list)
    for violation in violations:
        by_account[violation.account].append(violation)

    cases = [_build_case(account, items) for account, items in by_account.items()]
    cases.sort(key=lambda c: (-c.max_severity.rank, -c.total_amount, c.account))
    return cases


def _build_case(account: str, violations: List[Violation]) -> Case:
    max_severity = max((v.severity for v in violations), key=lambda s: s.rank)
    indices = sorted({i for v in violations for i in v.record_indices})

    return Case(
        account=account,
        violation_count=len(violations),
        max_severity=max_severity,
        total_amount=float(sum(v.amount for v in violations)),
        violations=tuple(violations),
        record_indices=tuple(indices),
    )
