"""
Step-Selection Pipeline — Movement Distributions (Stage 3).

Maximum-likelihood fits of the two movement kernels used to simulate
control steps:

* **Step length** — gamma(shape k, scale θ).  The shape solves
  ``log k − ψ(k) = log(mean x) − mean(log x)`` by Newton iteration from
  Minka's closed-form starting value; ``θ = mean x / k``.
* **Turning angle** — von Mises(μ, κ).  μ is the circular mean; κ solves
  ``I1(κ) / I0(κ) = R̄`` by Newton iteration from the Best–Fisher
  approximation.

Both fits are deterministic for a given multiset of observations and
fail explicitly (``FitError``) rather than iterate without bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

import numpy as np
import pandas as pd
from scipy import special

from stepselect.errors import FitError

logger = logging.getLogger(__name__)


# ── fitted distributions ────────────────────────────────────────────────────

@dataclass(frozen=True)
class GammaDistribution:
    """Step-length kernel."""

    shape: float
    scale: float
    kind: str = "gamma"

    @property
    def mean(self) -> float:
        return self.shape * self.scale

    def logpdf(self, x) -> np.ndarray:
        x = np.asarray(x, dtype="float64")
        k, theta = self.shape, self.scale
        with np.errstate(divide="ignore", invalid="ignore"):
            out = (k - 1) * np.log(x) - x / theta - special.gammaln(k) - k * np.log(theta)
        return np.where(x > 0, out, -np.inf)

    def sample(self, rng: np.random.Generator, size=None) -> np.ndarray:
        return rng.gamma(self.shape, self.scale, size=size)

    def to_dict(self) -> Dict[str, float]:
        return {"kind": self.kind, "shape": self.shape, "scale": self.scale}


@dataclass(frozen=True)
class VonMisesDistribution:
    """Turning-angle kernel."""

    mu: float
    kappa: float
    kind: str = "von_mises"

    @property
    def mean(self) -> float:
        return self.mu

    def logpdf(self, x) -> np.ndarray:
        x = np.asarray(x, dtype="float64")
        # log I0(κ) = log(i0e(κ)) + κ
        log_norm = np.log(2 * np.pi) + np.log(special.i0e(self.kappa)) + self.kappa
        return self.kappa * np.cos(x - self.mu) - log_norm

    def sample(self, rng: np.random.Generator, size=None) -> np.ndarray:
        return rng.vonmises(self.mu, self.kappa, size=size)

    def to_dict(self) -> Dict[str, float]:
        return {"kind": self.kind, "mu": self.mu, "kappa": self.kappa}


@dataclass(frozen=True)
class MovementDistributions:
    """The fitted step-length / turning-angle pair."""

    step_length: GammaDistribution
    turning_angle: VonMisesDistribution

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            "step_length": self.step_length.to_dict(),
            "turning_angle": self.turning_angle.to_dict(),
        }


# ── gamma ───────────────────────────────────────────────────────────────────

def _clean_lengths(lengths, epsilon: float) -> np.ndarray:
    x = np.asarray(lengths, dtype="float64")
    x = x[np.isfinite(x)]
    x = np.where(x == 0, epsilon, x)
    return x[x > 0]


def fit_gamma(
    lengths,
    epsilon: float = 0.1,
    max_iter: int = 100,
    tol: float = 1e-10,
) -> GammaDistribution:
    """
    Maximum-likelihood gamma fit to step lengths.

    Zero lengths are replaced by *epsilon*; NaN and negative values are
    ignored.

    Raises
    ------
    FitError
        Fewer than two usable lengths, all lengths identical, or no
        convergence within *max_iter* Newton steps.
    """
    x = _clean_lengths(lengths, epsilon)
    if len(x) < 2:
        raise FitError(f"gamma fit needs >= 2 positive step lengths, got {len(x)}")

    mean = x.mean()
    s = np.log(mean) - np.log(x).mean()
    if not s > 0:
        raise FitError("gamma fit undefined: all step lengths are identical")

    # Minka's starting value, then Newton on f(k) = log k − ψ(k) − s
    k = (3 - s + np.sqrt((s - 3) ** 2 + 24 * s)) / (12 * s)
    for it in range(1, max_iter + 1):
        f = np.log(k) - special.digamma(k) - s
        fprime = 1 / k - special.polygamma(1, k)
        k_new = k - f / fprime
        if k_new <= 0:
            k_new = k / 2
        if abs(k_new - k) <= tol * k:
            k = k_new
            break
        k = k_new
    else:
        raise FitError(f"gamma shape did not converge in {max_iter} iterations")

    dist = GammaDistribution(shape=float(k), scale=float(mean / k))
    logger.info(
        "Fitted gamma: shape=%.4f scale=%.4f (n=%d, %d iterations).",
        dist.shape, dist.scale, len(x), it,
    )
    return dist


# ── von Mises ───────────────────────────────────────────────────────────────

def _a1(kappa: float) -> float:
    """Mean resultant length of a von Mises with concentration κ."""
    return special.i1e(kappa) / special.i0e(kappa)


def _kappa_start(r: float) -> float:
    """Best & Fisher (1981) approximation to the κ MLE."""
    if r < 0.53:
        return 2 * r + r ** 3 + 5 * r ** 5 / 6
    if r < 0.85:
        return -0.4 + 1.39 * r + 0.43 / (1 - r)
    return 1 / (r ** 3 - 4 * r ** 2 + 3 * r)


def fit_von_mises(
    angles,
    max_iter: int = 100,
    tol: float = 1e-10,
) -> VonMisesDistribution:
    """
    Maximum-likelihood von Mises fit to turning angles.

    NaN angles (first step of a burst) are ignored.

    Raises
    ------
    FitError
        Fewer than two usable angles, all angles identical (κ unbounded),
        or no convergence within *max_iter* Newton steps.
    """
    a = np.asarray(angles, dtype="float64")
    a = a[np.isfinite(a)]
    if len(a) < 2:
        raise FitError(f"von Mises fit needs >= 2 turning angles, got {len(a)}")

    C = np.cos(a).mean()
    S = np.sin(a).mean()
    r = float(np.hypot(C, S))
    mu = float(np.arctan2(S, C))

    if r >= 1 - 1e-12:
        raise FitError("von Mises fit undefined: all turning angles are identical")

    if r < 1e-12:
        kappa = 0.0
        it = 0
    else:
        kappa = _kappa_start(r)
        for it in range(1, max_iter + 1):
            a1 = _a1(kappa)
            # dA1/dκ = 1 − A1/κ − A1²
            deriv = 1 - a1 / kappa - a1 ** 2
            kappa_new = kappa - (a1 - r) / deriv
            if kappa_new <= 0:
                kappa_new = kappa / 2
            if abs(kappa_new - kappa) <= tol * max(kappa, 1.0):
                kappa = kappa_new
                break
            kappa = kappa_new
        else:
            raise FitError(f"von Mises concentration did not converge in {max_iter} iterations")

    dist = VonMisesDistribution(mu=mu, kappa=float(kappa))
    logger.info(
        "Fitted von Mises: mu=%.4f kappa=%.4f (n=%d, %d iterations).",
        dist.mu, dist.kappa, len(a), it,
    )
    return dist


# ── both kernels ────────────────────────────────────────────────────────────

def fit_movement_distributions(
    steps: pd.DataFrame,
    epsilon: float = 0.1,
    max_iter: int = 100,
    tol: float = 1e-10,
) -> MovementDistributions:
    """
    Fit step-length and turning-angle kernels to the observed steps.

    Only rows with ``case`` True are used when the column is present.
    """
    observed = steps
    if "case" in steps.columns:
        observed = steps.loc[steps["case"].astype(bool)]
    return MovementDistributions(
        step_length=fit_gamma(observed["sl"], epsilon=epsilon, max_iter=max_iter, tol=tol),
        turning_angle=fit_von_mises(observed["ta"], max_iter=max_iter, tol=tol),
    )

