"""
Step-Selection Pipeline — Step Construction (Stage 2).

Converts regularised bursts into step-level records: one step per
consecutive pair of fixes inside a burst, carrying its start/end
coordinates and times, length, bearing and turning angle.

The turning angle of the first step of each burst is undefined (there is
no previous bearing) and is stored as NaN.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

STEP_COLUMNS = [
    "individual_id", "burst_id", "step_id", "case",
    "x1", "y1", "x2", "y2", "t1", "t2", "dt",
    "sl", "bearing", "prev_bearing", "ta",
]


# ── angles ──────────────────────────────────────────────────────────────────

def wrap_angle(a):
    """Wrap angle(s) to (-π, π]."""
    wrapped = np.pi - np.mod(np.pi - np.asarray(a, dtype="float64"), 2 * np.pi)
    if np.ndim(wrapped) == 0:
        return float(wrapped)
    return wrapped


# ── step construction ───────────────────────────────────────────────────────

def compute_steps(bursts: pd.DataFrame) -> pd.DataFrame:
    """
    Build observed steps from consecutive fixes within each burst.

    Requires columns: ``burst_id, timestamp, x, y`` (``individual_id``
    optional).  A burst of n fixes yields n − 1 steps; output order is
    (burst, time) and ``step_id`` numbers steps 1..n in that order.

    Returns
    -------
    pd.DataFrame
        Columns in ``STEP_COLUMNS``; ``case`` is True for every row.
    """
    df = bursts.sort_values(["burst_id", "timestamp"], kind="mergesort").reset_index(drop=True)
    if "individual_id" not in df.columns:
        df["individual_id"] = "individual"

    grp = df.groupby("burst_id", sort=False)
    nxt = grp[["x", "y", "timestamp"]].shift(-1)
    has_next = nxt["x"].notna()

    steps = pd.DataFrame({
        "individual_id": df["individual_id"],
        "burst_id": df["burst_id"],
        "x1": df["x"],
        "y1": df["y"],
        "x2": nxt["x"],
        "y2": nxt["y"],
        "t1": df["timestamp"],
        "t2": nxt["timestamp"],
    }).loc[has_next].reset_index(drop=True)

    dx = steps["x2"] - steps["x1"]
    dy = steps["y2"] - steps["y1"]
    steps["dt"] = steps["t2"] - steps["t1"]
    steps["sl"] = np.hypot(dx, dy)

    # bearing: angle from east (atan2(dy, dx)), so North = π/2
    steps["bearing"] = np.arctan2(dy, dx)
    steps["prev_bearing"] = steps.groupby("burst_id", sort=False)["bearing"].shift(1)
    steps["ta"] = wrap_angle(steps["bearing"] - steps["prev_bearing"])

    steps["step_id"] = np.arange(1, len(steps) + 1, dtype="int64")
    steps["case"] = True

    logger.info(
        "Computed %d steps from %d bursts.",
        len(steps), steps["burst_id"].nunique(),
    )
    return steps[STEP_COLUMNS]


def replace_zero_lengths(steps: pd.DataFrame, epsilon: float = 0.1) -> pd.DataFrame:
    """
    Replace zero step lengths by *epsilon*.

    A zero-length observation has zero density under a continuous
    step-length distribution and an undefined ``log(sl)``.
    """
    if epsilon <= 0:
        raise ValueError(f"epsilon must be positive, got {epsilon}")
    steps = steps.copy()
    zero = steps["sl"] == 0
    n_zero = int(zero.sum())
    if n_zero:
        logger.info("Replacing %d zero-length steps with %g.", n_zero, epsilon)
        steps.loc[zero, "sl"] = epsilon
    return steps
