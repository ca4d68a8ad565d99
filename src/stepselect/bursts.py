"""
Step-Selection Pipeline — Track Regularisation (Stage 1).

Segments one individual's fix stream into *bursts*: maximal runs of fixes
spaced at the target sampling rate (± tolerance).  Fixes arriving faster
than the target rate are skipped rather than resampled; a gap longer than
the window closes the current burst.

Also provides a sampling-rate summary that helps choose ``rate``.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from stepselect.errors import InsufficientDataError

logger = logging.getLogger(__name__)


# ── sampling-rate diagnostics ──────────────────────────────────────────────

_UNIT_SECONDS = {"s": 1.0, "min": 60.0, "h": 3600.0, "d": 86400.0}


def summarize_sampling_rate(fixes: pd.DataFrame, unit: str = "min") -> pd.Series:
    """
    Distribution of the gaps between consecutive fixes.

    Returns a Series with ``min, q1, median, mean, q3, max, sd, n`` in
    *unit* (one of ``s, min, h, d``).
    """
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"unit must be one of {sorted(_UNIT_SECONDS)}, got {unit!r}")
    gaps = (
        fixes.sort_values("timestamp")["timestamp"]
        .diff()
        .dropna()
        .dt.total_seconds()
        / _UNIT_SECONDS[unit]
    )
    if gaps.empty:
        raise InsufficientDataError("need at least two fixes to summarise sampling rate")
    return pd.Series({
        "min": gaps.min(),
        "q1": gaps.quantile(0.25),
        "median": gaps.median(),
        "mean": gaps.mean(),
        "q3": gaps.quantile(0.75),
        "max": gaps.max(),
        "sd": gaps.std(),
        "n": int(len(gaps)),
        "unit": unit,
    })


# ── burst segmentation ─────────────────────────────────────────────────────

def _assign_bursts(
    times: np.ndarray,
    lower_ns: int,
    upper_ns: int,
) -> np.ndarray:
    """
    Walk timestamps (int64 ns) and label each fix with a burst id.

    Skipped fixes get 0; bursts are numbered from 1.
    """
    labels = np.zeros(len(times), dtype="int64")
    if len(times) == 0:
        return labels

    burst = 1
    labels[0] = burst
    last = times[0]
    for i in range(1, len(times)):
        gap = times[i] - last
        if gap < lower_ns:
            continue
        if gap > upper_ns:
            burst += 1
        labels[i] = burst
        last = times[i]
    return labels


def regularize_track(
    fixes: pd.DataFrame,
    rate: pd.Timedelta | str,
    tolerance: pd.Timedelta | str,
    min_burst_length: int = 3,
) -> pd.DataFrame:
    """
    Segment a single individual's fixes into regular bursts.

    Parameters
    ----------
    fixes : pd.DataFrame
        Columns ``timestamp, x, y`` (and optionally ``individual_id``),
        strictly increasing in time.
    rate : Timedelta or str
        Target interval between retained fixes.
    tolerance : Timedelta or str
        Accepted deviation from *rate*; when it reaches *rate* no fix is
        skipped for arriving early.
    min_burst_length : int
        Bursts with fewer fixes are discarded (must be ≥ 2).

    Returns
    -------
    pd.DataFrame
        Retained fixes with a ``burst_id`` column, renumbered 1..n.

    Raises
    ------
    InsufficientDataError
        If no burst survives the length filter.
    """
    rate = pd.Timedelta(rate)
    tolerance = pd.Timedelta(tolerance)
    if min_burst_length < 2:
        raise ValueError(f"min_burst_length must be >= 2, got {min_burst_length}")
    if rate <= pd.Timedelta(0):
        raise ValueError(f"rate must be positive, got {rate}")
    if tolerance < pd.Timedelta(0):
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")
    if "individual_id" in fixes.columns and fixes["individual_id"].nunique() > 1:
        raise ValueError("regularize_track expects the fixes of one individual")

    df = fixes.reset_index(drop=True).copy()
    if df.empty:
        raise InsufficientDataError("no fixes to regularise")
    if len(df) > 1 and not (df["timestamp"].diff().iloc[1:] > pd.Timedelta(0)).all():
        raise ValueError("timestamps must be strictly increasing")

    # ns offsets from the first fix (works for naive and tz-aware stamps)
    offsets = (df["timestamp"] - df["timestamp"].iloc[0]).to_numpy()
    times = offsets.astype("timedelta64[ns]").astype("int64")
    one_ns = pd.Timedelta(nanoseconds=1)
    # tolerance >= rate leaves no lower bound: no fix is skipped
    lower = max(0, int((rate - tolerance) / one_ns))
    upper = int((rate + tolerance) / one_ns)
    df["burst_id"] = _assign_bursts(times, lower, upper)

    n_skipped = int((df["burst_id"] == 0).sum())
    df = df.loc[df["burst_id"] > 0]

    sizes = df.groupby("burst_id")["burst_id"].transform("size")
    n_bursts_raw = df["burst_id"].nunique()
    df = df.loc[sizes >= min_burst_length].copy()

    if df.empty:
        raise InsufficientDataError(
            f"no burst with >= {min_burst_length} fixes at rate {rate} "
            f"± {tolerance} ({len(fixes)} fixes, {n_bursts_raw} raw bursts)"
        )

    # renumber surviving bursts consecutively
    df["burst_id"] = pd.factorize(df["burst_id"])[0] + 1
    df = df.reset_index(drop=True)

    logger.info(
        "Regularised track: %d → %d fixes (%d skipped), %d/%d bursts kept.",
        len(fixes), len(df), n_skipped, df["burst_id"].nunique(), n_bursts_raw,
    )
    return df


def burst_summary(bursts: pd.DataFrame) -> pd.DataFrame:
    """Per-burst fix count and time span."""
    return (
        bursts.groupby("burst_id")
        .agg(
            n_fixes=("timestamp", "size"),
            start=("timestamp", "min"),
            end=("timestamp", "max"),
        )
        .reset_index()
    )
