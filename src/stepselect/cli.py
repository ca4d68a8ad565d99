"""
Step-Selection Pipeline — CLI Entry Point.

Usage
-----
    python -m stepselect.cli --config issf_config.json
    python -m stepselect.cli --fixes fixes.csv --covariates grid.csv
    python -m stepselect.cli --config issf_config.json --dry-run

Fixes are a cleaned, projected table (``individual_id, timestamp, x, y``);
covariates are a long table of grid-cell centres (``x, y, <layer>...``).
"""

from __future__ import annotations

import argparse
import json
import logging
import platform
import sys
import time
from importlib import metadata
from typing import Optional

import numpy as np
import pandas as pd

from stepselect.config import StepSelectionConfig, load_config, save_config

logger = logging.getLogger(__name__)


# ── version snapshot ────────────────────────────────────────────────────────

def _log_env() -> dict:
    """Log library versions for reproducibility."""
    info = {
        "python": sys.version,
        "platform": platform.platform(),
        "numpy": np.__version__,
        "pandas": pd.__version__,
    }
    for pkg in ("scipy", "pyarrow"):
        try:
            info[pkg] = metadata.version(pkg)
        except metadata.PackageNotFoundError:
            info[pkg] = "not installed"

    logger.info("Environment: %s", json.dumps(info, indent=2))
    return info


# ── pipeline orchestrator ──────────────────────────────────────────────────

def run_step_selection(cfg: StepSelectionConfig, dry_run: bool = False) -> dict:
    """
    Load inputs, run every individual and write outputs.

    Parameters
    ----------
    cfg : StepSelectionConfig
    dry_run : bool
        If True, run the analysis but do not write outputs.

    Returns
    -------
    dict
        ``env``, ``results`` (per-individual ``IssfResult``) and
        ``errors`` (per-individual failure messages).
    """
    from stepselect.covariates import GridSampler
    from stepselect.data_io import read_table, load_fixes
    from stepselect.pipeline import run_all_individuals

    if not cfg.fixes_path:
        raise ValueError("fixes_path is required (config key or --fixes)")
    if not cfg.covariates_path:
        raise ValueError("covariates_path is required (config key or --covariates)")

    env = _log_env()
    t0 = time.time()

    logger.info("═══ Loading inputs ═══")
    fixes = load_fixes(cfg.fixes_path)
    sampler = GridSampler.from_frame(
        read_table(cfg.covariates_path), cell_size=cfg.grid_cell_size or None,
    )

    logger.info("═══ Step selection ═══")
    results, errors = run_all_individuals(fixes, sampler, cfg)

    if not dry_run:
        out_dir = cfg.output_path
        for ind, res in results.items():
            res.design.to_parquet(out_dir / f"steps_{ind}.parquet", index=False)
            payload = {
                "individual_id": ind,
                "distributions": res.distributions.to_dict(),
                "updated_distributions": (
                    res.updated_distributions.to_dict()
                    if res.updated_distributions is not None else None
                ),
                "model": res.model.to_dict(),
                "reduced_model": (
                    res.reduced_model.to_dict() if res.reduced_model is not None else None
                ),
                "comparison": (
                    res.comparison.to_dict() if res.comparison is not None else None
                ),
                "preferred": (
                    res.comparison.decide(cfg.aic_threshold, cfg.p_threshold)
                    if res.comparison is not None else "full"
                ),
            }
            with open(out_dir / f"model_{ind}.json", "w") as f:
                json.dump(payload, f, indent=2, default=float)
        with open(out_dir / "errors.json", "w") as f:
            json.dump(errors, f, indent=2)
        save_config(cfg, out_dir / "config_snapshot.json")

    logger.info("Pipeline complete in %.1f s.", time.time() - t0)
    return {"env": env, "results": results, "errors": errors}


# ── CLI ─────────────────────────────────────────────────────────────────────

def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Integrated step-selection analysis of GPS telemetry",
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to JSON config file (defaults used if absent).",
    )
    parser.add_argument(
        "--fixes",
        type=str,
        default=None,
        help="Fix table (csv/parquet); overrides fixes_path.",
    )
    parser.add_argument(
        "--covariates",
        type=str,
        default=None,
        help="Covariate grid table (csv/parquet); overrides covariates_path.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for control steps; overrides random_seed.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the analysis without writing outputs.",
    )
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    if args.fixes:
        cfg.fixes_path = args.fixes
    if args.covariates:
        cfg.covariates_path = args.covariates
    if args.seed is not None:
        cfg.random_seed = args.seed
    if not cfg.verbose:
        logging.getLogger("stepselect").setLevel(logging.WARNING)

    out = run_step_selection(cfg, dry_run=args.dry_run)
    return 0 if out["results"] else 1


if __name__ == "__main__":
    sys.exit(main())
