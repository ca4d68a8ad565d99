"""
Step-Selection Pipeline — Error taxonomy.

Every error is terminal for the individual (or stratum) it was raised for.
The pipeline never substitutes default parameters or skips a failed stage;
callers decide whether to drop the individual and carry on.
"""


class StepSelectionError(Exception):
    """Base class for all step-selection pipeline failures."""


class InsufficientDataError(StepSelectionError, ValueError):
    """Regularisation left no usable burst."""


class FitError(StepSelectionError):
    """Maximum-likelihood fit of a movement distribution failed."""


class GenerationError(StepSelectionError):
    """Control steps requested without a fitted pair of distributions."""


class ConvergenceError(StepSelectionError, RuntimeError):
    """The conditional-logit optimiser did not converge within its budget."""


class DesignError(StepSelectionError, ValueError):
    """Malformed case-control design (bad stratum or unknown predictor)."""


class NotNestedError(StepSelectionError, ValueError):
    """Models passed to ``compare_models`` are not nested."""
