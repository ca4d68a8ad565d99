"""
Step-Selection Pipeline — Control Steps (Stage 4).

For every observed step, draws ``n_controls`` alternative steps from the
fitted movement kernels.  Controls share the observed step's start point,
time window and stratum id (``step_id``); only length and turning angle
are resampled:

    bearing = prev_bearing + ta
    (x2, y2) = (x1, y1) + sl · (cos bearing, sin bearing)

The first step of a burst has no previous bearing, so its controls take a
uniformly drawn absolute bearing and keep ``ta`` undefined.

Randomness comes only from the generator passed in; the same seed, input
steps and distributions reproduce the same strata bit for bit.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

from stepselect.distributions import MovementDistributions
from stepselect.errors import GenerationError
from stepselect.steps import wrap_angle

logger = logging.getLogger(__name__)

_INHERITED = ["individual_id", "burst_id", "step_id", "x1", "y1", "t1", "t2", "dt"]


def generate_control_steps(
    steps: pd.DataFrame,
    distributions: Optional[MovementDistributions],
    n_controls: int,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """
    Build the matched case-control step table.

    Parameters
    ----------
    steps : pd.DataFrame
        Observed steps from ``compute_steps``.
    distributions : MovementDistributions
        Fitted step-length and turning-angle kernels.
    n_controls : int
        Controls per observed step (≥ 1).
    rng : np.random.Generator
        Source of randomness; never replaced by global state.

    Returns
    -------
    pd.DataFrame
        Observed steps (``case`` True, ``control_id`` 0) followed within
        each stratum by their controls (``case`` False, ``control_id``
        1..n_controls), ordered by ``step_id``.

    Raises
    ------
    GenerationError
        If either fitted distribution is missing.
    """
    if (
        distributions is None
        or distributions.step_length is None
        or distributions.turning_angle is None
    ):
        raise GenerationError(
            "control steps need fitted step-length and turning-angle distributions"
        )
    if n_controls < 1:
        raise ValueError(f"n_controls must be >= 1, got {n_controls}")
    if not isinstance(rng, np.random.Generator):
        raise TypeError("rng must be a numpy.random.Generator")

    observed = steps.loc[steps["case"].astype(bool)].reset_index(drop=True)
    n = len(observed)
    shape = (n, n_controls)

    # fixed draw order: lengths, turning angles, then free bearings
    sl = distributions.step_length.sample(rng, size=shape)
    ta = wrap_angle(distributions.turning_angle.sample(rng, size=shape))

    prev = observed["prev_bearing"].to_numpy(dtype="float64")
    no_prev = ~np.isfinite(prev)
    bearing = prev[:, None] + ta
    if no_prev.any():
        bearing[no_prev] = rng.uniform(-np.pi, np.pi, size=(int(no_prev.sum()), n_controls))
        ta[no_prev] = np.nan
    bearing = wrap_angle(bearing)

    controls = observed[_INHERITED].loc[observed.index.repeat(n_controls)].reset_index(drop=True)
    x1 = controls["x1"].to_numpy(dtype="float64")
    y1 = controls["y1"].to_numpy(dtype="float64")
    sl_flat = sl.ravel()
    bearing_flat = bearing.ravel()

    controls["case"] = False
    controls["control_id"] = np.tile(np.arange(1, n_controls + 1, dtype="int64"), n)
    controls["x2"] = x1 + sl_flat * np.cos(bearing_flat)
    controls["y2"] = y1 + sl_flat * np.sin(bearing_flat)
    controls["sl"] = sl_flat
    controls["bearing"] = bearing_flat
    controls["prev_bearing"] = np.repeat(prev, n_controls)
    controls["ta"] = ta.ravel()

    cases = observed.copy()
    cases["control_id"] = 0

    out = pd.concat([cases, controls.reindex(columns=cases.columns)], ignore_index=True)
    out = out.sort_values(["step_id", "control_id"], kind="mergesort").reset_index(drop=True)

    logger.info(
        "Generated %d control steps (%d per stratum) for %d strata.",
        len(controls), n_controls, n,
    )
    return out
