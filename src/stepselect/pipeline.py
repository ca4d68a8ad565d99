"""
Step-Selection Pipeline — Orchestration.

Chains the six stages for one individual:

    1. regularise the track into bursts
    2. build observed steps
    3. fit step-length / turning-angle kernels
    4. generate matched control steps
    5. attach covariates
    6. fit the conditional logit (and an optional nested model)

Individuals are independent; ``run_all_individuals`` gives each its own
random generator spawned from the configured seed and may run them on a
thread pool.  A failure is terminal for that individual only: it is
logged, recorded and the individual is left out of the results.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from stepselect.bursts import regularize_track
from stepselect.config import StepSelectionConfig
from stepselect.controls import generate_control_steps
from stepselect.covariates import Sampler, extract_covariates
from stepselect.data_io import split_individuals
from stepselect.distributions import MovementDistributions, fit_movement_distributions
from stepselect.errors import FitError, StepSelectionError
from stepselect.model import (
    ModelComparison,
    StepSelectionModel,
    check_strata,
    compare_models,
    drop_incomplete_strata,
    fit_issf,
    update_movement_distributions,
)
from stepselect.steps import STEP_COLUMNS, compute_steps, replace_zero_lengths
from stepselect.terms import Term, default_issf_terms, terms_from_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class IssfResult:
    """Everything produced for one individual."""

    individual_id: str
    bursts: pd.DataFrame
    steps: pd.DataFrame
    distributions: MovementDistributions
    design: pd.DataFrame
    model: StepSelectionModel
    reduced_model: Optional[StepSelectionModel] = None
    comparison: Optional[ModelComparison] = None
    updated_distributions: Optional[MovementDistributions] = None

    def preferred_model(self, aic_threshold: float, p_threshold: float) -> StepSelectionModel:
        """The full model unless the comparison favours the reduced one."""
        if self.comparison is None or self.reduced_model is None:
            return self.model
        if self.comparison.decide(aic_threshold, p_threshold) == "reduced":
            return self.reduced_model
        return self.model


def _resolve_terms(
    terms: Optional[Sequence[Term]],
    configured: Optional[List[dict]],
    covariates: Sequence[str],
) -> List[Term]:
    if terms is not None:
        return list(terms)
    if configured:
        return terms_from_config(configured)
    return default_issf_terms(covariates)


# ── single individual ───────────────────────────────────────────────────────

def run_issf(
    fixes: pd.DataFrame,
    sampler: Sampler,
    cfg: StepSelectionConfig,
    terms: Optional[Sequence[Term]] = None,
    reduced_terms: Optional[Sequence[Term]] = None,
    rng: Optional[np.random.Generator] = None,
) -> IssfResult:
    """
    Run the full step-selection pipeline for one individual.

    Parameters
    ----------
    fixes : pd.DataFrame
        One individual's cleaned fixes (``timestamp, x, y``).
    sampler : callable
        Covariate sampler ``sampler(x, y) -> {name: value}``.
    cfg : StepSelectionConfig
    terms, reduced_terms : sequence of Term, optional
        Full and nested model terms.  Default to ``cfg.terms`` /
        ``cfg.reduced_terms`` and, failing that, to
        ``default_issf_terms`` over every sampled covariate (no reduced
        model).
    rng : np.random.Generator, optional
        Defaults to ``np.random.default_rng(cfg.random_seed)``.

    Raises
    ------
    StepSelectionError
        Any stage failure; nothing is substituted or retried.
    """
    if rng is None:
        rng = np.random.default_rng(cfg.random_seed)
    ind = str(fixes["individual_id"].iloc[0]) if "individual_id" in fixes.columns else "individual"

    # ── Stage 1–2: bursts and observed steps ─────────────────────────────
    bursts = regularize_track(
        fixes, cfg.rate_timedelta, cfg.tolerance_timedelta, cfg.min_burst_length,
    )
    steps = replace_zero_lengths(compute_steps(bursts), cfg.zero_length_epsilon)

    # ── Stage 3: movement kernels ────────────────────────────────────────
    distributions = fit_movement_distributions(
        steps,
        epsilon=cfg.zero_length_epsilon,
        max_iter=cfg.distribution_max_iter,
        tol=cfg.distribution_tol,
    )

    # ── Stage 4–5: case-control design with covariates ───────────────────
    design = generate_control_steps(steps, distributions, cfg.n_controls, rng)
    design = extract_covariates(design, sampler, where=cfg.covariate_where)
    covariates = [c for c in design.columns if c not in STEP_COLUMNS and c != "control_id"]

    # ── Stage 6: models ──────────────────────────────────────────────────
    full_terms = _resolve_terms(terms, cfg.terms, covariates)
    if reduced_terms is None and cfg.reduced_terms:
        reduced_terms = terms_from_config(cfg.reduced_terms)

    check_strata(design, n_controls=cfg.n_controls)
    sample = design
    if reduced_terms is not None:
        # both models must see the same strata for the LR test
        sample = drop_incomplete_strata(design, full_terms)

    model = fit_issf(
        sample, full_terms,
        max_iter=cfg.optimizer_max_iter, tol=cfg.optimizer_tol,
    )

    reduced_model = comparison = None
    if reduced_terms is not None:
        reduced_model = fit_issf(
            sample, reduced_terms,
            max_iter=cfg.optimizer_max_iter, tol=cfg.optimizer_tol,
        )
        comparison = compare_models(model, reduced_model)

    try:
        updated = update_movement_distributions(model, distributions)
    except FitError as exc:
        logger.warning("Individual %s: movement kernels not updated (%s).", ind, exc)
        updated = None

    logger.info(
        "Individual %s: %d bursts, %d strata, AIC=%.3f.",
        ind, bursts["burst_id"].nunique(), model.n_strata, model.aic,
    )
    return IssfResult(
        individual_id=ind,
        bursts=bursts,
        steps=steps,
        distributions=distributions,
        design=design,
        model=model,
        reduced_model=reduced_model,
        comparison=comparison,
        updated_distributions=updated,
    )


# ── many individuals ────────────────────────────────────────────────────────

def run_all_individuals(
    fixes: pd.DataFrame,
    sampler: Sampler,
    cfg: StepSelectionConfig,
    terms: Optional[Sequence[Term]] = None,
    reduced_terms: Optional[Sequence[Term]] = None,
) -> Tuple[Dict[str, IssfResult], Dict[str, str]]:
    """
    Run ``run_issf`` for every individual in *fixes*.

    Each individual gets its own generator spawned (in sorted id order)
    from ``SeedSequence(cfg.random_seed)``, so results do not depend on
    ``cfg.n_workers``.

    Returns
    -------
    (results, errors)
        Results keyed by individual id, and the error message of every
        individual whose pipeline failed.
    """
    groups = list(split_individuals(fixes))
    seeds = np.random.SeedSequence(cfg.random_seed).spawn(len(groups))
    results: Dict[str, IssfResult] = {}
    errors: Dict[str, str] = {}

    def _one(ind: str, sub: pd.DataFrame, seed: np.random.SeedSequence) -> IssfResult:
        return run_issf(
            sub, sampler, cfg,
            terms=terms, reduced_terms=reduced_terms,
            rng=np.random.default_rng(seed),
        )

    def _record(ind: str, run) -> None:
        try:
            results[ind] = run()
        except StepSelectionError as exc:
            logger.warning(
                "Individual %s excluded: %s: %s", ind, type(exc).__name__, exc,
            )
            errors[ind] = f"{type(exc).__name__}: {exc}"

    if cfg.n_workers <= 1 or len(groups) <= 1:
        for (ind, sub), seed in zip(groups, seeds):
            _record(ind, lambda: _one(ind, sub, seed))
    else:
        with ThreadPoolExecutor(max_workers=cfg.n_workers) as pool:
            futures = {
                pool.submit(_one, ind, sub, seed): ind
                for (ind, sub), seed in zip(groups, seeds)
            }
            for fut in as_completed(futures):
                _record(futures[fut], fut.result)

    results = dict(sorted(results.items()))
    errors = dict(sorted(errors.items()))
    logger.info(
        "Processed %d individuals: %d fitted, %d excluded.",
        len(groups), len(results), len(errors),
    )
    return results, errors
