"""
schema_adapter.py
------------------
Record normalizer. Turns raw, heterogeneous rows into canonical Transactions.

The enclosing application parses the CSV and confirms a column mapping
(source column -> canonical field). This module only:

    1. Checks that the required canonical fields (account, amount, type)
       are mapped to a column that actually exists. If not: SchemaError.
    2. Coerces every mapped column to its canonical type. Unparsable
       numerics become 0.0; missing strings become "". A bad cell never
       fails the row.
    3. Assigns `index` = positional row number. It is never recomputed.

Also hosts dataset recognition (PaySim / IBM AML / generic) so callers can
pick a default mapping and temporal scale from config.yaml.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from core.exceptions import SchemaError
from core.fields import FieldRef
from core.models import Transaction
from config.config_loader import get_dataset_profiles

logger = logging.getLogger(__name__)


REQUIRED_FIELDS = ("account", "amount", "type")
LABEL_FIELD = "is_fraud"

_NUMERIC_FIELDS = [ref.value for ref in FieldRef if ref.is_numeric]
_STRING_FIELDS = [ref.value for ref in FieldRef if not ref.is_numeric]

_LABEL_ALIASES = {"is_fraud", "isfraud", "is_laundering", "islaundering", "label"}
_TRUTHY = {"1", "true", "yes", "y", "t"}

TRANSACTION_COLUMNS = ["index"] + [ref.value for ref in FieldRef] + [LABEL_FIELD]


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize(
    raw_rows: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
    column_mapping: Mapping[str, str],
) -> List[Transaction]:
    """
    Normalize raw rows into Transactions.

    Args:
        raw_rows: DataFrame, or an ordered iterable of string-keyed rows.
        column_mapping: Source column name -> canonical field name. Canonical
            names may use known dataset aliases (e.g. "nameOrig", "step").

    Returns:
        Transactions in input order, index 0..n-1.

    Raises:
        SchemaError: If account, amount or type has no mapped source column.
    """
    frame = raw_rows if isinstance(raw_rows, pd.DataFrame) else pd.DataFrame(list(raw_rows))
    frame = frame.reset_index(drop=True)

    if frame.empty and len(frame.columns) == 0:
        mapped = {canonical_field_name(target) for target in column_mapping.values()}
        missing = [f for f in REQUIRED_FIELDS if f not in mapped]
        if missing:
            raise SchemaError(missing, [])
        return []

    sources = _resolve_sources(column_mapping, frame.columns)

    missing = [f for f in REQUIRED_FIELDS if f not in sources]
    if missing:
        raise SchemaError(missing, [str(c) for c in frame.columns])

    n = len(frame)
    columns: Dict[str, Any] = {"index": np.arange(n)}

    for name in _NUMERIC_FIELDS:
        columns[name] = (
            _to_float(frame[sources[name]]) if name in sources else np.zeros(n)
        )

    for name in _STRING_FIELDS:
        columns[name] = (
            _to_str(frame[sources[name]]) if name in sources else [""] * n
        )

    amounts = np.asarray(columns["amount"], dtype=float)
    negative = int(np.sum(amounts < 0))
    if negative:
        logger.warning(f"Clipped {negative:,} negative amounts to 0.0.")
        columns["amount"] = np.clip(amounts, 0.0, None)

    labels: Optional[List[bool]] = (
        _to_label(frame[sources[LABEL_FIELD]]) if LABEL_FIELD in sources else None
    )

    transactions = [
        Transaction(
            index=int(columns["index"][i]),
            timestamp_step=float(columns["timestamp_step"][i]),
            type=columns["type"][i],
            amount=float(columns["amount"][i]),
            account=columns["account"][i],
            recipient=columns["recipient"][i],
            origin_balance_before=float(columns["origin_balance_before"][i]),
            origin_balance_after=float(columns["origin_balance_after"][i]),
            dest_balance_before=float(columns["dest_balance_before"][i]),
            dest_balance_after=float(columns["dest_balance_after"][i]),
            is_fraud=labels[i] if labels is not None else None,
        )
        for i in range(n)
    ]

    logger.info(
        f"Normalized {n:,} records. Mapped fields: {sorted(sources.keys())}."
    )
    return transactions


def _resolve_sources(column_mapping: Mapping[str, str], available: Sequence[Any]) -> Dict[str, str]:
    """
    Inverts the mapping to canonical field -> source column, keeping only
    columns that exist in the data. First mapping wins on duplicates.
    """
    present = {str(c) for c in available}
    sources: Dict[str, str] = {}

    for column, target in column_mapping.items():
        canonical = canonical_field_name(target)
        if canonical is None or canonical in sources:
            continue
        if str(column) not in present:
            logger.debug(f"Mapped column '{column}' -> '{canonical}' not present in data.")
            continue
        sources[canonical] = str(column)

    return sources


def canonical_field_name(name: Any) -> Optional[str]:
    """Canonical field name for a mapping target, or None if unknown."""
    ref = FieldRef.resolve(name)
    if ref is not None:
        return ref.value
    if isinstance(name, str) and name.strip().lower() in _LABEL_ALIASES:
        return LABEL_FIELD
    return None


def _to_float(series: pd.Series) -> np.ndarray:
    values = np.array(pd.to_numeric(series, errors="coerce"), dtype=float)
    values[~np.isfinite(values)] = 0.0
    return values


def _to_str(series: pd.Series) -> List[str]:
    return series.fillna("").astype(str).str.strip().tolist()


def _to_label(series: pd.Series) -> List[bool]:
    numeric = pd.to_numeric(series, errors="coerce")
    text = series.fillna("").astype(str).str.strip().str.lower()
    flags = numeric.fillna(0).ne(0) | text.isin(_TRUTHY)
    return flags.tolist()


# =============================================================================
# FRAME CONVERSION
# =============================================================================

def transactions_to_frame(transactions: Sequence[Transaction]) -> pd.DataFrame:
    """
    Column-oriented view of a transaction sequence, used by the windowing
    stage. Always has the full column set, even when empty.
    """
    if not transactions:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)

    frame = pd.DataFrame([
        {column: getattr(t, column) for column in TRANSACTION_COLUMNS}
        for t in transactions
    ])
    return frame


# =============================================================================
# DATASET RECOGNITION
# =============================================================================

def detect_dataset(headers: Iterable[str]) -> str:
    """
    Recognise a dataset profile from its CSV headers.

    Profiles are checked in config order; the first whose signature matches
    at least `min_matches` headers (case-insensitive) wins. Falls back to
    "generic".
    """
    header_set = {str(h).strip().lower() for h in headers}

    for name, profile in get_dataset_profiles().items():
        signature = profile.get("signature") or []
        if not signature:
            continue
        matches = sum(1 for h in signature if h.lower() in header_set)
        if matches >= profile.get("min_matches", len(signature)):
            return name

    return "generic"


def get_temporal_scale(profile_name: str) -> float:
    """Hours per dataset step for a profile (IBM AML: 24.0, PaySim: 1.0)."""
    profile = get_dataset_profiles().get(profile_name)
    if profile is None:
        return 1.0
    return float(profile.get("temporal_scale", 1.0))


def get_default_mapping(profile_name: str) -> Dict[str, str]:
    """Suggested source column -> canonical field mapping for a profile."""
    profile = get_dataset_profiles().get(profile_name)
    if profile is None:
        return {}
    return dict(profile.get("column_mapping") or {})
