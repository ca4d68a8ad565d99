"""
Step-Selection Pipeline — Predictor Terms.

Model terms are a small tagged union rather than free-form formula
strings:

* ``RawCovariate(name)`` — a column as is (a covariate, ``sl`` or ``ta``).
* ``Transform(fn, of)`` — ``log`` or ``cos`` of a column.
* ``Interaction(a, b)`` — product of two non-interaction terms.

Each term has a stable label (``forest``, ``log(sl)``, ``cos(ta)``,
``forest:log(sl)``) used as the coefficient name and for nesting checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Union

import numpy as np
import pandas as pd

from stepselect.errors import DesignError

logger = logging.getLogger(__name__)

_TRANSFORMS = {"log": np.log, "cos": np.cos}


@dataclass(frozen=True)
class RawCovariate:
    name: str
    kind: str = "raw_covariate"

    @property
    def label(self) -> str:
        return self.name

    def columns(self) -> List[str]:
        return [self.name]

    def evaluate(self, df: pd.DataFrame) -> np.ndarray:
        return df[self.name].to_numpy(dtype="float64")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "name": self.name}


@dataclass(frozen=True)
class Transform:
    fn: str
    of: str
    kind: str = "transform"

    @property
    def label(self) -> str:
        return f"{self.fn}({self.of})"

    def columns(self) -> List[str]:
        return [self.of]

    def evaluate(self, df: pd.DataFrame) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            return _TRANSFORMS[self.fn](df[self.of].to_numpy(dtype="float64"))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "fn": self.fn, "of": self.of}


@dataclass(frozen=True)
class Interaction:
    a: Union[RawCovariate, Transform]
    b: Union[RawCovariate, Transform]
    kind: str = "interaction"

    @property
    def label(self) -> str:
        return f"{self.a.label}:{self.b.label}"

    def columns(self) -> List[str]:
        return self.a.columns() + self.b.columns()

    def evaluate(self, df: pd.DataFrame) -> np.ndarray:
        return self.a.evaluate(df) * self.b.evaluate(df)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "a": self.a.to_dict(), "b": self.b.to_dict()}


Term = Union[RawCovariate, Transform, Interaction]


# ── (de)serialisation ───────────────────────────────────────────────────────

def term_from_dict(data: Dict[str, Any]) -> Term:
    """Rebuild a term from its ``to_dict`` form (as stored in JSON config)."""
    kind = data.get("kind")
    if kind == "raw_covariate":
        return RawCovariate(data["name"])
    if kind == "transform":
        return Transform(data["fn"], data["of"])
    if kind == "interaction":
        a, b = term_from_dict(data["a"]), term_from_dict(data["b"])
        return Interaction(a, b)
    raise DesignError(f"unknown term kind: {kind!r}")


def terms_from_config(items: Iterable[Dict[str, Any]]) -> List[Term]:
    return [term_from_dict(d) for d in items]


# ── validation & design ─────────────────────────────────────────────────────

def validate_terms(terms: Sequence[Term], columns: Iterable[str]) -> None:
    """
    Check terms against the available step columns.

    Raises ``DesignError`` for an empty term list, duplicate labels,
    unknown transforms, nested interactions or unknown column names.
    """
    if not terms:
        raise DesignError("at least one predictor term is required")
    available = set(columns)

    labels = [t.label for t in terms]
    dupes = sorted({lab for lab in labels if labels.count(lab) > 1})
    if dupes:
        raise DesignError(f"duplicate predictor terms: {dupes}")

    for term in terms:
        parts = [term.a, term.b] if isinstance(term, Interaction) else [term]
        for part in parts:
            if isinstance(part, Interaction):
                raise DesignError(f"interactions must be pairwise: {term.label}")
            if isinstance(part, Transform) and part.fn not in _TRANSFORMS:
                raise DesignError(
                    f"unsupported transform {part.fn!r}; use one of {sorted(_TRANSFORMS)}"
                )
        unknown = [c for c in term.columns() if c not in available]
        if unknown:
            raise DesignError(f"term {term.label!r} refers to unknown columns {unknown}")


def build_design(steps: pd.DataFrame, terms: Sequence[Term]) -> pd.DataFrame:
    """
    Evaluate *terms* on *steps*.

    Returns a float frame (same index as *steps*) with one column per term
    label; non-finite values (e.g. ``log(0)``) are NaN.
    """
    validate_terms(terms, steps.columns)
    design = pd.DataFrame(
        {t.label: t.evaluate(steps) for t in terms},
        index=steps.index,
    )
    return design.where(np.isfinite(design))


# ── standard term sets ──────────────────────────────────────────────────────

def movement_terms() -> List[Term]:
    """``sl``, ``log(sl)`` and ``cos(ta)``."""
    return [RawCovariate("sl"), Transform("log", "sl"), Transform("cos", "ta")]


def default_issf_terms(covariates: Sequence[str]) -> List[Term]:
    """
    Habitat covariates, movement terms and covariate × ``log(sl)``
    interactions.

    Start-point covariates (``*_start``) are shared by every step of a
    stratum, so they enter through the interaction only.
    """
    terms: List[Term] = [RawCovariate(c) for c in covariates if not c.endswith("_start")]
    terms += movement_terms()
    terms += [Interaction(RawCovariate(c), Transform("log", "sl")) for c in covariates]
    return terms
