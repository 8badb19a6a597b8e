"""
exceptions.py
--------------
The only two errors that cross the engine boundary.

Everything else (unparsable numerics, unknown fields or operators in a
condition, rules that never fire) is absorbed and surfaces as a quality
signal rather than an exception.
"""


class SchemaError(ValueError):
    """A required canonical field has no mapped source column. Fatal to normalization."""

    def __init__(self, missing_fields: list[str], available_columns: list[str] | None = None):
        self.missing_fields = list(missing_fields)
        self.available_columns = list(available_columns or [])
        super().__init__(
            f"Required fields have no mapped source column: {self.missing_fields}. "
            f"Available columns: {self.available_columns}"
        )


class RuleConfigError(ValueError):
    """A rule definition is structurally invalid. Raised at load time, never during a scan."""

    def __init__(self, rule_id: str | None, message: str):
        self.rule_id = rule_id
        prefix = f"Rule '{rule_id}'" if rule_id else "Rule definition"
        super().__init__(f"{prefix}: {message}")
