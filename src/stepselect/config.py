"""
Step-Selection Pipeline — Configuration.

Centralises the regularisation window, control-step sampling, optimiser
budgets and model-comparison thresholds.  The canonical source is a JSON
file loaded at runtime; every field has a sensible default so that the
pipeline works out of the box.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

# ── defaults ────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_OUTPUTS = _PROJECT_ROOT / "outputs" / "stepselect"


@dataclass
class StepSelectionConfig:
    """All step-selection parameters in one place."""

    # ── Stage 1: track regularisation ───────────────────────────────────
    rate: str = "2h"
    tolerance: str = "15min"
    min_burst_length: int = 3

    # ── Stage 3: movement distributions ─────────────────────────────────
    zero_length_epsilon: float = 0.1
    distribution_max_iter: int = 100
    distribution_tol: float = 1e-10

    # ── Stage 4: control steps ──────────────────────────────────────────
    n_controls: int = 10
    random_seed: int = 42

    # ── Stage 5: covariates ─────────────────────────────────────────────
    covariate_where: str = "end"

    # ── Stage 6: conditional regression ─────────────────────────────────
    terms: Optional[List[Dict[str, Any]]] = None
    reduced_terms: Optional[List[Dict[str, Any]]] = None
    optimizer_max_iter: int = 100
    optimizer_tol: float = 1e-6
    aic_threshold: float = 2.0
    p_threshold: float = 0.05

    # ── execution ───────────────────────────────────────────────────────
    n_workers: int = 1

    # ── I/O paths ───────────────────────────────────────────────────────
    fixes_path: str = ""
    covariates_path: str = ""
    grid_cell_size: float = 0.0      # 0 ⇒ inferred from the grid spacing
    outputs_dir: str = str(_DEFAULT_OUTPUTS)

    # ── misc ────────────────────────────────────────────────────────────
    verbose: bool = True

    # ── helpers ──────────────────────────────────────────────────────────

    @property
    def rate_timedelta(self) -> pd.Timedelta:
        return pd.Timedelta(self.rate)

    @property
    def tolerance_timedelta(self) -> pd.Timedelta:
        return pd.Timedelta(self.tolerance)

    @property
    def output_path(self) -> Path:
        p = Path(self.outputs_dir)
        p.mkdir(parents=True, exist_ok=True)
        return p


def load_config(path: Optional[str | Path] = None) -> StepSelectionConfig:
    """Load config from JSON, falling back to defaults for missing keys."""
    if path is None:
        logger.info("No config path supplied — using all defaults.")
        return StepSelectionConfig()
    path = Path(path)
    if not path.exists():
        logger.warning("Config file %s not found — using defaults.", path)
        return StepSelectionConfig()
    with open(path) as f:
        data = json.load(f)
    # Only pass known fields
    known = {f.name for f in StepSelectionConfig.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in known}
    ignored = sorted(set(data) - known)
    if ignored:
        logger.warning("Ignoring unknown config keys: %s", ignored)
    cfg = StepSelectionConfig(**filtered)
    logger.info("Loaded config from %s (%d overrides).", path, len(filtered))
    return cfg


def save_config(cfg: StepSelectionConfig, path: str | Path) -> None:
    """Serialise the current config to JSON for reproducibility."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(asdict(cfg), f, indent=2, default=str)
    logger.info("Saved config to %s.", path)
