"""
temporal.py
------------
Temporal normalization and fixed-origin window bucketing.

Dataset time coordinates ("steps") are converted to hours with a
temporal_scale: 1.0 when a step is already an hour (PaySim), 24.0 when a
step is a day (IBM AML).

Windows are fixed-origin, aligned to step 0, and do not slide:

    window_key = floor(step * temporal_scale / window_size_hours)

Two transactions share a window iff their keys are equal. A burst that
straddles a boundary is split across two adjacent windows. This is a known
limitation of the detection semantics and is kept as-is.
"""

import math
from typing import Iterator, Sequence, Tuple

import numpy as np
import pandas as pd


WINDOW_KEY_COLUMN = "window_key"


def normalize_time(step: float, temporal_scale: float) -> float:
    """Convert a dataset step to hours."""
    return step * temporal_scale


def window_key(step: float, window_size_hours: float, temporal_scale: float = 1.0) -> int:
    """Fixed-origin bucket index for a step."""
    _check_window(window_size_hours)
    return math.floor(normalize_time(step, temporal_scale) / window_size_hours)


def window_keys(steps, window_size_hours: float, temporal_scale: float = 1.0) -> np.ndarray:
    """Vectorised window_key over an array of steps."""
    _check_window(window_size_hours)
    hours = np.asarray(steps, dtype=float) * temporal_scale
    return np.floor(hours / window_size_hours).astype(np.int64)


def within_window(
    step1: float, step2: float, window_size_hours: float, temporal_scale: float = 1.0
) -> bool:
    """True if two steps are at most window_size_hours apart (distance check, not bucketing)."""
    t1 = normalize_time(step1, temporal_scale)
    t2 = normalize_time(step2, temporal_scale)
    return abs(t1 - t2) <= window_size_hours


def bucket_by_window(
    frame: pd.DataFrame,
    key_columns: Sequence[str],
    window_size_hours: float,
    temporal_scale: float = 1.0,
    step_column: str = "timestamp_step",
) -> Iterator[Tuple[Tuple[str, ...], int, pd.DataFrame]]:
    """
    Partition transactions by group key and window key.

    This is the single grouping utility used by every windowed rule. The
    key-extraction is the list of columns to group by (one account column,
    or an ordered account pair).

    Yields:
        (group_key, window_key, bucket) in sorted key order. Each bucket
        keeps the original row order and the original `index` column.
    """
    if frame.empty:
        return

    keyed = frame.assign(
        **{WINDOW_KEY_COLUMN: window_keys(frame[step_column], window_size_hours, temporal_scale)}
    )
    by = list(key_columns) + [WINDOW_KEY_COLUMN]

    for key, bucket in keyed.groupby(by, sort=True):
        group_key = tuple(str(k) for k in key[:-1])
        yield group_key, int(key[-1]), bucket


def _check_window(window_size_hours: float) -> None:
    if not window_size_hours or window_size_hours <= 0:
        raise ValueError(f"window_size_hours must be positive, got {window_size_hours}")
