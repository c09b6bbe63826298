"""
Error types raised by the radial-return package.

Configuration and interval errors are fatal and point at a setup or caller
bug. Convergence failures and window violations concern a single step and
are left to the caller (typically a time stepper that cuts the step).
"""


class RadialReturnError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(RadialReturnError, ValueError):
    """Invalid model setup: non-isotropic elasticity, malformed surrogate tables, bad coefficients."""


class ConvergenceFailure(RadialReturnError, RuntimeError):
    """
    The scalar return-mapping solve did not converge within the iteration cap.

    Attributes:
        status: ReturnMappingStatus reported by the solver
        iterations: Number of iterations performed
        residual: Last residual value
        scalar: Equivalent inelastic increment at the last iterate
    """
    def __init__(self, message, status=None, iterations=0, residual=None, scalar=None):
        super().__init__(message)
        self.status = status
        self.iterations = iterations
        self.residual = residual
        self.scalar = scalar


class DomainViolation(RadialReturnError, ValueError):
    """A surrogate input fell outside its calibrated window under the ERROR policy."""

    def __init__(self, message, input_index=None, value=None, limits=None):
        super().__init__(message)
        self.input_index = input_index
        self.value = value
        self.limits = limits


class IntervalError(RadialReturnError, ValueError):
    """Adaptive quadrature called with an inverted or degenerate interval."""
