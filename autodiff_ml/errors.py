"""Exception types raised by autodiff_ml.

A missing gradient is never an error: ``Gradients.wrt`` returns ``None`` and
``backward`` on an untracked tensor returns empty gradients.
"""


class AutodiffError(Exception):
    """Base class for all autodiff_ml errors."""


class ShapeMismatchError(AutodiffError, ValueError):
    """Shapes are incompatible for an operation or a gradient rule."""


class BackwardError(AutodiffError, RuntimeError):
    """A local backward rule failed; the whole backward call is aborted."""


class BackendError(AutodiffError, RuntimeError):
    """A backend is unknown, incomplete or unavailable."""


class BackendMismatchError(BackendError):
    """Operands of one operation belong to different backends."""


class GradcheckError(AutodiffError, AssertionError):
    """Analytic and finite-difference gradients disagree."""
