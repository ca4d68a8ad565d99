"""
Step-Selection Pipeline — Conditional Logistic Regression (Stage 6).

Fits the integrated step-selection function as a matched case-control
(conditional) logit: each stratum holds one observed step and its
controls, and the likelihood conditions the strata out,

    ℓ(β) = Σ_s [ x_case·β − log Σ_{j∈s} exp(x_j·β) ]

so only within-stratum contrasts identify β.  The likelihood is maximised
with a trust-region Newton method (analytic gradient and Hessian) under a
fixed iteration budget; standard errors come from the inverse observed
information.

Also provides the likelihood-ratio / AIC comparison of nested models and
the iSSF update of the tentative movement kernels.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import optimize, stats

from stepselect.distributions import (
    GammaDistribution,
    MovementDistributions,
    VonMisesDistribution,
)
from stepselect.errors import (
    ConvergenceError,
    DesignError,
    FitError,
    InsufficientDataError,
    NotNestedError,
)
from stepselect.terms import Term, build_design

logger = logging.getLogger(__name__)


# ── results ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class StepSelectionModel:
    """A fitted conditional-logit step-selection model."""

    terms: Tuple[Term, ...]
    coefficients: pd.Series
    standard_errors: pd.Series
    log_likelihood: float
    n_obs: int
    n_strata: int
    n_iter: int

    @property
    def term_labels(self) -> List[str]:
        return [t.label for t in self.terms]

    @property
    def n_params(self) -> int:
        return len(self.coefficients)

    @property
    def aic(self) -> float:
        return 2 * self.n_params - 2 * self.log_likelihood

    def summary(self) -> pd.DataFrame:
        """Coefficient table: estimate, SE, z, two-sided p, exp(coef)."""
        z = self.coefficients / self.standard_errors
        return pd.DataFrame({
            "coef": self.coefficients,
            "exp_coef": np.exp(self.coefficients),
            "se": self.standard_errors,
            "z": z,
            "p_value": 2 * stats.norm.sf(np.abs(z)),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "terms": [t.to_dict() for t in self.terms],
            "coefficients": self.coefficients.to_dict(),
            "standard_errors": self.standard_errors.to_dict(),
            "log_likelihood": self.log_likelihood,
            "aic": self.aic,
            "n_params": self.n_params,
            "n_obs": self.n_obs,
            "n_strata": self.n_strata,
            "n_iter": self.n_iter,
        }


@dataclass(frozen=True)
class ModelComparison:
    """Likelihood-ratio test and AIC of a full vs nested reduced model."""

    likelihood_ratio_stat: float
    df: int
    p_value: float
    aic_full: float
    aic_reduced: float

    @property
    def aic_difference(self) -> float:
        """``aic_reduced − aic_full``; positive favours the full model."""
        return self.aic_reduced - self.aic_full

    def decide(self, aic_threshold: float, p_threshold: float) -> str:
        """
        Return ``"full"`` or ``"reduced"`` under caller-supplied thresholds.

        The full model is preferred only when it has the lower AIC by at
        least *aic_threshold* and the LR test rejects the reduced model at
        *p_threshold*.
        """
        if self.p_value > p_threshold:
            return "reduced"
        if self.aic_difference < aic_threshold:
            return "reduced"
        return "full"

    def to_dict(self) -> Dict[str, float]:
        return {
            "likelihood_ratio_stat": self.likelihood_ratio_stat,
            "df": self.df,
            "p_value": self.p_value,
            "aic_full": self.aic_full,
            "aic_reduced": self.aic_reduced,
        }


# ── design checks ───────────────────────────────────────────────────────────

def check_strata(
    steps: pd.DataFrame,
    strata_col: str = "step_id",
    n_controls: Optional[int] = None,
) -> None:
    """
    Every stratum needs exactly one case and at least one control
    (exactly *n_controls* when given).  Raises ``DesignError``.
    """
    if strata_col not in steps.columns:
        raise DesignError(f"strata column {strata_col!r} not found")
    case = steps["case"].astype(bool)
    counts = pd.DataFrame({
        "n_case": case.groupby(steps[strata_col]).sum(),
        "n_total": case.groupby(steps[strata_col]).size(),
    })
    counts["n_control"] = counts["n_total"] - counts["n_case"]

    bad = (counts["n_case"] != 1) | (counts["n_control"] < 1)
    if n_controls is not None:
        bad |= counts["n_control"] != n_controls
    if bad.any():
        examples = counts.loc[bad].head(5)
        detail = ", ".join(
            f"{sid}: {int(r.n_case)} case/{int(r.n_control)} control"
            for sid, r in examples.iterrows()
        )
        expected = f"{n_controls}" if n_controls is not None else ">= 1"
        raise DesignError(
            f"{int(bad.sum())} malformed strata (need 1 case and {expected} "
            f"controls): {detail}"
        )


def drop_incomplete_strata(
    steps: pd.DataFrame,
    terms: Sequence[Term],
    strata_col: str = "step_id",
) -> pd.DataFrame:
    """
    Drop rows with missing predictor values, then strata that no longer
    hold a case and at least one control.
    """
    design = build_design(steps, terms)
    complete = design.notna().all(axis=1)
    kept = steps.loc[complete]

    case = kept["case"].astype(bool)
    n_case = case.groupby(kept[strata_col]).transform("sum")
    n_total = case.groupby(kept[strata_col]).transform("size")
    usable = (n_case == 1) & (n_total - n_case >= 1)
    out = kept.loc[usable].copy()

    n_rows_dropped = len(steps) - len(out)
    if n_rows_dropped:
        logger.warning(
            "Dropped %d rows (%d → %d strata) with missing predictors.",
            n_rows_dropped, steps[strata_col].nunique(), out[strata_col].nunique(),
        )
    return out


def _check_identifiable(design: pd.DataFrame, groups: np.ndarray) -> None:
    """
    A predictor constant within every stratum is conditioned out with the
    stratum and has no estimable coefficient.  Raises ``DesignError``.
    """
    by_stratum = design.groupby(groups)
    spread = (by_stratum.max() - by_stratum.min()).max()
    constant = sorted(spread.index[~(spread > 0)])
    if constant:
        raise DesignError(
            f"terms {constant} are constant within every stratum; "
            "interact them with a movement term instead"
        )


# ── conditional log-likelihood ──────────────────────────────────────────────

class _ConditionalLogit:
    """Log-likelihood, gradient and Hessian for one-case strata."""

    def __init__(self, X: np.ndarray, case: np.ndarray, groups: np.ndarray):
        order = np.argsort(groups, kind="mergesort")
        self.X = X[order]
        self.case = case[order]
        g = groups[order]
        self.starts = np.flatnonzero(np.r_[True, g[1:] != g[:-1]])
        self.sizes = np.diff(np.r_[self.starts, len(g)])
        self.X_case_sum = self.X[self.case].sum(axis=0)

    def _probs(self, beta: np.ndarray):
        eta = self.X @ beta
        m = np.maximum.reduceat(eta, self.starts)
        w = np.exp(eta - np.repeat(m, self.sizes))
        denom = np.add.reduceat(w, self.starts)
        p = w / np.repeat(denom, self.sizes)
        return eta, m, denom, p

    def negloglike_and_grad(self, beta: np.ndarray):
        eta, m, denom, p = self._probs(beta)
        ll = eta[self.case].sum() - (m + np.log(denom)).sum()
        grad = self.X_case_sum - p @ self.X
        return -ll, -grad

    def neghessian(self, beta: np.ndarray) -> np.ndarray:
        _, _, _, p = self._probs(beta)
        pX = p[:, None] * self.X
        xbar = np.add.reduceat(pX, self.starts, axis=0)
        return self.X.T @ pX - xbar.T @ xbar


# ── fitting ─────────────────────────────────────────────────────────────────

def fit_issf(
    steps: pd.DataFrame,
    terms: Sequence[Term],
    strata_col: str = "step_id",
    n_controls: Optional[int] = None,
    max_iter: int = 100,
    tol: float = 1e-6,
) -> StepSelectionModel:
    """
    Fit a conditional-logit step-selection model.

    Parameters
    ----------
    steps : pd.DataFrame
        Case-control step table with ``case``, *strata_col* and the
        columns referenced by *terms*.
    terms : sequence of Term
        Predictor terms (no intercept: it is conditioned out).
    strata_col : str
        Stratum identifier column.
    n_controls : int, optional
        Expected controls per stratum, enforced exactly.  Without it any
        stratum with one case and at least one control is accepted, so a
        stratum that lost some of its controls goes undetected.
    max_iter : int
        Optimiser iteration budget.
    tol : float
        Gradient-norm convergence tolerance.  A trust-region stop on
        precision loss is accepted when the Newton decrement is below
        ``tol · max(1, |logLik|)``.

    Raises
    ------
    DesignError
        Malformed strata, unknown predictors or a predictor that is
        constant within every stratum.
    InsufficientDataError
        No complete stratum left after dropping missing values.
    ConvergenceError
        Optimiser did not reach the optimum within *max_iter* iterations
        or the information matrix is singular.
    """
    terms = tuple(terms)
    check_strata(steps, strata_col=strata_col, n_controls=n_controls)
    data = drop_incomplete_strata(steps, terms, strata_col=strata_col)
    if data.empty:
        raise InsufficientDataError("no stratum has a complete case and control")

    design = build_design(data, terms)
    labels = list(design.columns)
    groups = pd.factorize(data[strata_col])[0]
    _check_identifiable(design, groups)

    X = design.to_numpy(dtype="float64")
    case = data["case"].to_numpy(dtype=bool)

    problem = _ConditionalLogit(X, case, groups)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = optimize.minimize(
            problem.negloglike_and_grad,
            np.zeros(X.shape[1]),
            jac=True,
            hess=problem.neghessian,
            method="trust-exact",
            options={"maxiter": max_iter, "gtol": tol},
        )

    if not np.all(np.isfinite(res.x)) or not np.isfinite(res.fun):
        raise ConvergenceError(f"conditional logit diverged: {res.message}")
    if not res.success and res.nit >= max_iter:
        raise ConvergenceError(
            f"conditional logit did not converge in {max_iter} iterations: {res.message}"
        )

    info = problem.neghessian(res.x)
    try:
        cov = np.linalg.inv(info)
    except np.linalg.LinAlgError as exc:
        raise ConvergenceError("information matrix is singular") from exc
    var = np.diag(cov)
    if np.any(~np.isfinite(var)) or np.any(var <= 0):
        raise ConvergenceError("information matrix is not positive definite")

    if not res.success:
        # trust-region stops on precision loss at the optimum; accept it
        # when the Newton decrement is negligible against the log-likelihood
        decrement = float(res.jac @ cov @ res.jac)
        if not decrement <= tol * max(1.0, abs(res.fun)):
            raise ConvergenceError(
                f"conditional logit stopped after {res.nit} iterations short of "
                f"the optimum (Newton decrement {decrement:.3g}): {res.message}"
            )
        logger.debug("Accepted trust-region stop: %s", res.message)

    model = StepSelectionModel(
        terms=terms,
        coefficients=pd.Series(res.x, index=labels, name="coef"),
        standard_errors=pd.Series(np.sqrt(var), index=labels, name="se"),
        log_likelihood=float(-res.fun),
        n_obs=int(len(data)),
        n_strata=int(problem.starts.size),
        n_iter=int(res.nit),
    )
    logger.info(
        "Fitted iSSF [%s]: logLik=%.3f AIC=%.3f (%d strata, %d rows, %d iterations).",
        ", ".join(labels), model.log_likelihood, model.aic,
        model.n_strata, model.n_obs, model.n_iter,
    )
    return model


# ── comparison ──────────────────────────────────────────────────────────────

def compare_models(
    model_full: StepSelectionModel,
    model_reduced: StepSelectionModel,
) -> ModelComparison:
    """
    Likelihood-ratio test of *model_reduced* nested in *model_full*.

    Raises ``NotNestedError`` unless the reduced terms are a strict subset
    of the full terms and both were fitted on the same observations.
    """
    full = set(model_full.term_labels)
    reduced = set(model_reduced.term_labels)
    if not reduced < full:
        raise NotNestedError(
            f"terms {sorted(reduced)} are not a strict subset of {sorted(full)}"
        )
    if (model_full.n_obs, model_full.n_strata) != (model_reduced.n_obs, model_reduced.n_strata):
        raise NotNestedError(
            "models were fitted on different observations "
            f"({model_full.n_obs} vs {model_reduced.n_obs} rows)"
        )

    lr = max(0.0, 2 * (model_full.log_likelihood - model_reduced.log_likelihood))
    df = model_full.n_params - model_reduced.n_params
    result = ModelComparison(
        likelihood_ratio_stat=float(lr),
        df=int(df),
        p_value=float(stats.chi2.sf(lr, df)),
        aic_full=float(model_full.aic),
        aic_reduced=float(model_reduced.aic),
    )
    logger.info(
        "LR test: stat=%.3f df=%d p=%.4g; AIC full=%.3f reduced=%.3f.",
        result.likelihood_ratio_stat, result.df, result.p_value,
        result.aic_full, result.aic_reduced,
    )
    return result


# ── movement-kernel update ──────────────────────────────────────────────────

def update_movement_distributions(
    model: StepSelectionModel,
    distributions: MovementDistributions,
) -> MovementDistributions:
    """
    Correct the tentative movement kernels with the fitted movement terms.

    shape' = shape + β[log(sl)], scale' = 1 / (1/scale − β[sl]),
    κ' = κ + β[cos(ta)].  Missing terms count as zero.

    Raises ``FitError`` if the corrected parameters are invalid.
    """
    coef = model.coefficients
    b_sl = float(coef.get("sl", 0.0))
    b_log_sl = float(coef.get("log(sl)", 0.0))
    b_cos_ta = float(coef.get("cos(ta)", 0.0))

    sl, ta = distributions.step_length, distributions.turning_angle
    shape = sl.shape + b_log_sl
    rate = 1 / sl.scale - b_sl
    kappa = ta.kappa + b_cos_ta
    if shape <= 0 or rate <= 0:
        raise FitError(f"updated gamma invalid (shape={shape:.4g}, rate={rate:.4g})")
    if kappa < 0:
        raise FitError(f"updated von Mises concentration negative ({kappa:.4g})")

    return MovementDistributions(
        step_length=GammaDistribution(shape=shape, scale=1 / rate),
        turning_angle=VonMisesDistribution(mu=ta.mu, kappa=kappa),
    )
