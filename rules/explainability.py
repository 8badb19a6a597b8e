"""
explainability.py
------------------
Plain string-template explanations attached to each violation.

No model calls: an explanation is a deterministic rendering of the rule,
the condition tree against the evidence and the measured aggregate, so two
runs over the same data produce identical text.
"""

from typing import Sequence

from core.models import CompoundCondition, Condition, Logic, Rule, Transaction


def summarize_conditions(condition: Condition, transaction: Transaction | None = None, depth: int = 0) -> str:
    """Bullet list of the condition tree, with actual values when a transaction is given."""
    indent = "  " * depth

    if isinstance(condition, CompoundCondition):
        label = "ALL of:" if condition.logic is Logic.AND else "ANY of:"
        if not condition.children:
            return f"{indent}- (no conditions)"
        parts = [summarize_conditions(c, transaction, depth + 1) for c in condition.children]
        return "\n".join([f"{indent}{label}"] + parts)

    field_label = condition.field.value if condition.field else condition.field_name
    operator = condition.operator.value if condition.operator else condition.raw_operator
    value = list(condition.value) if isinstance(condition.value, tuple) else condition.value
    line = f"{indent}- {field_label} {operator} {value!r}"
    if transaction is not None and condition.field is not None:
        line += f" (actual: {condition.field.read(transaction)!r})"
    return line


def explain_single(rule: Rule, transaction: Transaction) -> str:
    lines = [
        f"Record {transaction.index} (account {transaction.account}) was flagged under "
        f"{rule.rule_id} ({rule.name}) because:",
        "",
        summarize_conditions(rule.conditions, transaction),
        "",
        f"- Amount: ${transaction.amount:,.2f}",
        f"- Transaction Type: {transaction.type}",
    ]
    lines.extend(_policy_lines(rule))
    return "\n".join(lines)


def explain_windowed(
    rule: Rule,
    group_key: Sequence[str],
    transactions: Sequence[Transaction],
    actual_value: float,
) -> str:
    total = sum(t.amount for t in transactions)
    amounts = ", ".join(f"${t.amount:,.2f}" for t in transactions[:10])
    if len(transactions) > 10:
        amounts += ", ..."
    window = rule.time_window

    lines = [
        f"{' -> '.join(group_key)} was flagged under {rule.rule_id} ({rule.name}) because:",
        "",
        f"- Transaction Count: {len(transactions)}",
        f"- Total Amount: ${total:,.2f}",
        f"- Individual Amounts: {amounts}",
    ]
    if window is not None:
        lines.append(f"- Time Window: {window.size:g} {window.unit.value}")
    function = rule.aggregation.function.value if rule.aggregation else "count"
    lines.append(f"- Measured {function}: {actual_value:,.2f}")
    if rule.threshold is not None:
        lines.append(f"- Threshold: {rule.threshold:,.2f}")
    lines.extend(_policy_lines(rule))
    return "\n".join(lines)


def _policy_lines(rule: Rule) -> list[str]:
    lines = [""]
    if rule.policy_excerpt:
        lines.append(f"Policy Reference: {rule.policy_section or 'N/A'}")
        lines.append(f'Excerpt: "{rule.policy_excerpt}"')
    lines.append(f"Severity: {rule.severity.value}")
    if rule.description:
        lines.append("")
        lines.append(rule.description)
    return lines
