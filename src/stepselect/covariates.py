"""
Step-Selection Pipeline — Covariate Extraction (Stage 5).

Attaches environmental covariates to every step (observed and control) by
calling an external sampler ``sample(x, y) -> {name: value}`` at the step
end point (or start point, or both).

Missing coverage is not an error: a covariate the sampler does not return,
or returns as ``None``, becomes NaN and is treated as a missing
observation at model-fitting time.

``GridSampler`` is a small in-memory regular-grid sampler used by the CLI
and tests; real raster stores plug in through the same callable.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from stepselect.steps import STEP_COLUMNS

logger = logging.getLogger(__name__)

Sampler = Callable[[float, float], Mapping[str, Optional[float]]]

_RESERVED = set(STEP_COLUMNS) | {"control_id", "timestamp"}
_WHERE = {"end": ("x2", "y2"), "start": ("x1", "y1")}


def _sample_points(
    xs: np.ndarray,
    ys: np.ndarray,
    sampler: Sampler,
) -> pd.DataFrame:
    """Sample every (x, y) pair; union of returned names, NaN where missing."""
    records: List[Dict[str, float]] = []
    for x, y in zip(xs, ys):
        values = sampler(float(x), float(y)) or {}
        records.append({
            str(k): (np.nan if v is None else float(v)) for k, v in values.items()
        })
    return pd.DataFrame.from_records(records, index=range(len(records))).astype("float64")


def extract_covariates(
    steps: pd.DataFrame,
    sampler: Sampler,
    where: str = "end",
) -> pd.DataFrame:
    """
    Sample covariates for each step.

    Parameters
    ----------
    steps : pd.DataFrame
        Step table with ``x1, y1, x2, y2``.
    sampler : callable
        ``sampler(x, y)`` returning a mapping of covariate name → value
        (``None`` for no coverage).  Must be deterministic.
    where : {"end", "start", "both"}
        Point(s) at which to sample.  ``"both"`` suffixes the names with
        ``_start`` / ``_end``.

    Returns
    -------
    pd.DataFrame
        Copy of *steps* with one column per covariate.
    """
    if where not in ("end", "start", "both"):
        raise ValueError(f"where must be 'end', 'start' or 'both', got {where!r}")

    out = steps.reset_index(drop=True).copy()
    positions = ["start", "end"] if where == "both" else [where]

    for pos in positions:
        xcol, ycol = _WHERE[pos]
        sampled = _sample_points(out[xcol].to_numpy(), out[ycol].to_numpy(), sampler)
        if where == "both":
            sampled = sampled.add_suffix(f"_{pos}")

        clash = _RESERVED.intersection(sampled.columns) | set(out.columns).intersection(sampled.columns)
        if clash:
            raise ValueError(f"covariate names clash with step columns: {sorted(clash)}")

        n_missing = int(sampled.isna().sum().sum())
        if n_missing:
            logger.warning(
                "%d covariate values undefined at step %s points.", n_missing, pos,
            )
        out = pd.concat([out, sampled], axis=1)

    logger.info(
        "Extracted covariates for %d steps (where=%s).", len(out), where,
    )
    return out


# ── in-memory grid sampler ──────────────────────────────────────────────────

class GridSampler:
    """
    Nearest-cell lookup on a regular grid of covariate layers.

    Parameters
    ----------
    layers : dict[str, ndarray]
        2-D arrays indexed ``[row, col]`` with row 0 at ``y0`` and
        column 0 at ``x0`` (cell centres).
    x0, y0 : float
        Centre of cell ``[0, 0]``.
    cell_size : float
        Cell width/height in planar units.
    """

    def __init__(
        self,
        layers: Dict[str, np.ndarray],
        x0: float,
        y0: float,
        cell_size: float,
    ):
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        shapes = {np.shape(a) for a in layers.values()}
        if len(shapes) != 1 or len(next(iter(shapes))) != 2:
            raise ValueError("layers must be 2-D arrays of a common shape")
        self.layers = {k: np.asarray(v, dtype="float64") for k, v in layers.items()}
        self.x0 = float(x0)
        self.y0 = float(y0)
        self.cell_size = float(cell_size)
        self.n_rows, self.n_cols = next(iter(shapes))

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        cell_size: Optional[float] = None,
    ) -> "GridSampler":
        """
        Build from a long table of cell centres: ``x, y, <layer>...``.

        *cell_size* defaults to the smallest spacing between distinct x
        values.  Cells absent from the table are NaN.
        """
        layer_cols = [c for c in df.columns if c not in ("x", "y")]
        if not layer_cols:
            raise ValueError("grid table needs at least one covariate column")
        if not cell_size:
            xs = np.unique(df["x"].to_numpy(dtype="float64"))
            if len(xs) < 2:
                raise ValueError("cannot infer cell_size from a single grid column")
            cell_size = float(np.diff(xs).min())

        x0 = float(df["x"].min())
        y0 = float(df["y"].min())
        cols = np.rint((df["x"].to_numpy(dtype="float64") - x0) / cell_size).astype(int)
        rows = np.rint((df["y"].to_numpy(dtype="float64") - y0) / cell_size).astype(int)
        shape = (rows.max() + 1, cols.max() + 1)

        layers = {}
        for c in layer_cols:
            grid = np.full(shape, np.nan)
            grid[rows, cols] = pd.to_numeric(df[c], errors="coerce").to_numpy(dtype="float64")
            layers[c] = grid
        logger.info(
            "Built %dx%d grid sampler with layers %s (cell %.3g).",
            shape[0], shape[1], layer_cols, cell_size,
        )
        return cls(layers, x0=x0, y0=y0, cell_size=cell_size)

    def __call__(self, x: float, y: float) -> Dict[str, Optional[float]]:
        col = int(np.floor((x - self.x0) / self.cell_size + 0.5))
        row = int(np.floor((y - self.y0) / self.cell_size + 0.5))
        inside = 0 <= row < self.n_rows and 0 <= col < self.n_cols
        out: Dict[str, Optional[float]] = {}
        for name, grid in self.layers.items():
            value = grid[row, col] if inside else np.nan
            out[name] = None if not np.isfinite(value) else float(value)
        return out
