"""
Step-Selection Pipeline — Integrated Step-Selection Analysis (iSSA).

Segments animal GPS tracks into regular bursts, converts them into steps,
fits step-length and turning-angle kernels by maximum likelihood, builds a
matched case-control design of observed vs simulated steps, attaches
environmental covariates and fits/compares conditional-logit step-selection
models.
"""

__version__ = "0.1.0"

from stepselect.config import StepSelectionConfig, load_config, save_config
from stepselect.errors import (
    ConvergenceError,
    DesignError,
    FitError,
    GenerationError,
    InsufficientDataError,
    NotNestedError,
    StepSelectionError,
)
from stepselect.pipeline import IssfResult, run_all_individuals, run_issf

__all__ = [
    "StepSelectionConfig",
    "load_config",
    "save_config",
    "StepSelectionError",
    "InsufficientDataError",
    "FitError",
    "GenerationError",
    "ConvergenceError",
    "DesignError",
    "NotNestedError",
    "IssfResult",
    "run_issf",
    "run_all_individuals",
]
