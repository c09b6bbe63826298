"""
Scalar return-mapping solver.

Drives a residual of one scalar unknown (the plastic multiplier of the
radial return) to zero with a Newton iteration safeguarded by a bracket.
The bracket starts as the permissible range and narrows with the sign of
each evaluated residual; once a sign change has been seen, Newton steps
that leave the bracket or do not shrink it fast enough are replaced by
bisection.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

LOG = logging.getLogger(__name__)


class ReturnMappingStatus(Enum):
    SUCCESS = 'success'
    ACCEPTABLE = 'acceptable'
    NAN_INF = 'nan_inf'
    ZERO_DERIVATIVE = 'zero_derivative'
    EXCEEDED_ITERATIONS = 'exceeded_iterations'

    @property
    def converged(self):
        return self in (ReturnMappingStatus.SUCCESS, ReturnMappingStatus.ACCEPTABLE)


@dataclass
class ScalarRootFindState:
    """
    Working state of one scalar solve.

    ``lower``/``upper`` is the current bracket. Until a residual of the
    opposite sign to the initial one has been found it equals the
    permissible range.
    """
    scalar: float
    lower: float
    upper: float
    residual: float = math.nan
    derivative: float = math.nan
    initial_residual: float = math.nan
    reference_residual: float = 1.0
    iterations: int = 0
    bisections: int = 0
    converged_absolute: bool = False
    converged_relative: bool = False
    converged_acceptable: bool = False
    bracket_collapsed: bool = False
    sign_change_found: bool = False
    status: ReturnMappingStatus = ReturnMappingStatus.EXCEEDED_ITERATIONS
    history: list = field(default_factory=list)

    @property
    def converged(self):
        return self.status.converged


class ReturnMappingSolver:
    """
    Bounded Newton/bisection solver for the return-mapping scalar.

    Parameters:
    - precision: 'standard', 'high' or 'scientific' tolerance preset
    - relative_tolerance / absolute_tolerance: override the preset
    - max_its: Iteration cap; exceeding it is reported, never accepted
    - num_resids: Window of the residual history used for acceptable convergence
    - acceptable_tolerance_multiplier: Tolerance factor for acceptable convergence
    - bracket_tolerance: Relative bracket width regarded as collapsed
    - line_search: Damp Newton steps that increase the residual
    - bracket_solution: Narrow a bracket and bisect when Newton misbehaves
    - check_range: Keep iterates in the permissible range
    - verbose: Log each iteration at DEBUG level
    - record_history: Keep a per-iteration record in the returned state
    """

    _PRECISION_SETTINGS = {
        'standard': (1e-8, 1e-11),
        'high': (1e-10, 1e-13),
        'scientific': (1e-12, 1e-15),
    }

    def __init__(self, precision='standard', relative_tolerance=None, absolute_tolerance=None,
                 max_its=1000, num_resids=30, acceptable_tolerance_multiplier=10.0,
                 bracket_tolerance=1e-14, line_search=True, bracket_solution=True,
                 check_range=True, verbose=False, record_history=False):
        if precision not in self._PRECISION_SETTINGS:
            raise ValueError(f"Invalid precision: {precision}. Must be one of {sorted(self._PRECISION_SETTINGS)}")
        self.precision = precision
        rel, abs_ = self._PRECISION_SETTINGS[precision]
        self.relative_tolerance = rel if relative_tolerance is None else relative_tolerance
        self.absolute_tolerance = abs_ if absolute_tolerance is None else absolute_tolerance
        if max_its < 1:
            raise ValueError("max_its must be at least 1")
        self.max_its = int(max_its)
        self.num_resids = int(num_resids)
        self.acceptable_tolerance_multiplier = acceptable_tolerance_multiplier
        self.bracket_tolerance = bracket_tolerance
        self.line_search = line_search
        self.bracket_solution = bracket_solution
        self.check_range = check_range
        self.verbose = verbose
        self.record_history = record_history

    def get_settings(self):
        """Return the active tolerances and switches."""
        return {
            'precision': self.precision,
            'relative_tolerance': self.relative_tolerance,
            'absolute_tolerance': self.absolute_tolerance,
            'max_its': self.max_its,
            'num_resids': self.num_resids,
            'acceptable_tolerance_multiplier': self.acceptable_tolerance_multiplier,
            'line_search': self.line_search,
            'bracket_solution': self.bracket_solution,
        }

    # --- Convergence checks ---

    def converged(self, residual, reference_residual):
        return (abs(residual) <= self.absolute_tolerance
                or abs(residual) <= self.relative_tolerance * abs(reference_residual))

    def _converged_acceptable(self, state, residual_history):
        # Only once the window is full and progress has stalled
        if state.iterations < self.num_resids:
            return False
        if abs(state.residual) * 10.0 < residual_history[0]:
            return False
        return self.converged(state.residual / self.acceptable_tolerance_multiplier,
                              state.reference_residual)

    def _update_flags(self, state):
        state.converged_absolute = abs(state.residual) <= self.absolute_tolerance
        state.converged_relative = abs(state.residual) <= self.relative_tolerance * abs(state.reference_residual)

    # --- Main iteration ---

    def solve(self, residual_fn, initial_guess=0.0, minimum=0.0, maximum=math.inf, reference_fn=None):
        """
        Find the root of ``residual_fn`` in [minimum, maximum].

        Args:
            residual_fn: Callable x -> (residual, derivative)
            initial_guess: Starting iterate (clipped to the permissible range)
            minimum: Minimum permissible value of the scalar
            maximum: Maximum permissible value of the scalar
            reference_fn: Callable x -> reference residual for the relative check

        Returns:
            ScalarRootFindState with ``status`` set. The caller decides what
            to do with a non-converged status.
        """
        if maximum < minimum:
            maximum = minimum
        scalar = min(max(float(initial_guess), minimum), maximum)
        state = ScalarRootFindState(scalar=scalar, lower=minimum, upper=maximum)

        residual, deriv = residual_fn(scalar)
        state.residual, state.derivative = float(residual), float(deriv)
        state.initial_residual = state.residual
        state.reference_residual = reference_fn(scalar) if reference_fn is not None else 1.0
        self._record(state, scalar, 0.0)

        if not math.isfinite(state.residual):
            state.status = ReturnMappingStatus.NAN_INF
            return state
        self._update_flags(state)
        if self.converged(state.residual, state.reference_residual):
            state.status = ReturnMappingStatus.SUCCESS
            return state

        init_sign = math.copysign(1.0, state.residual)
        # a: closest point with the initial residual sign, b: closest with the opposite sign
        a, b = scalar, None
        residual_history = deque([math.inf] * self.num_resids, maxlen=max(self.num_resids, 1))
        residual_history.append(abs(state.residual))
        dx = dx_old = math.inf

        while state.iterations < self.max_its:
            scalar_old = state.scalar
            residual_old = state.residual
            deriv = state.derivative
            bisect = False

            if state.sign_change_found and self.bracket_solution:
                lo, hi = state.lower, state.upper
                newton_outside = (deriv == 0.0 or not math.isfinite(deriv)
                                  or not lo < scalar_old - residual_old / deriv < hi)
                slow = abs(2.0 * residual_old) > abs(dx_old * deriv)
                if newton_outside or slow:
                    bisect = True
            probe = None
            if not state.sign_change_found and (deriv == 0.0 or not math.isfinite(deriv)):
                # No usable tangent and no bracket yet: probe the far end of the range
                far_end = maximum if scalar_old < maximum else minimum
                if not math.isfinite(far_end) or far_end == scalar_old:
                    state.status = ReturnMappingStatus.ZERO_DERIVATIVE
                    return self._finish(state)
                probe = far_end

            if probe is not None:
                dx_old = dx
                dx = probe - scalar_old
                candidate = probe
            elif bisect:
                dx_old = dx
                candidate = 0.5 * (state.lower + state.upper)
                dx = candidate - scalar_old
                state.bisections += 1
            else:
                dx_old = dx
                dx = -residual_old / deriv
                candidate = scalar_old + dx
                if self.check_range:
                    if candidate > maximum:
                        dx = (maximum - scalar_old) / 2.0
                        candidate = scalar_old + dx
                    elif candidate < minimum:
                        dx = (minimum - scalar_old) / 2.0
                        candidate = scalar_old + dx

            residual, deriv = residual_fn(candidate)
            residual, deriv = float(residual), float(deriv)

            # Secant damping of a step that made things worse
            if (self.line_search and not bisect and probe is None and math.isfinite(residual)
                    and abs(residual) > abs(residual_old) and residual_old != residual):
                alpha = min(max(residual_old / (residual_old - residual), 1e-2), 1.0)
                if alpha != 1.0:
                    dx *= alpha
                    candidate = scalar_old + dx
                    residual, deriv = residual_fn(candidate)
                    residual, deriv = float(residual), float(deriv)

            state.iterations += 1
            state.scalar = candidate
            state.residual = residual
            state.derivative = deriv
            if reference_fn is not None:
                state.reference_residual = reference_fn(candidate)
            self._record(state, candidate, dx)

            if not math.isfinite(residual):
                state.status = ReturnMappingStatus.NAN_INF
                return self._finish(state)

            if self.bracket_solution:
                a, b = self._update_bounds(state, candidate, residual, init_sign, a, b)

            residual_history.append(abs(residual))
            self._update_flags(state)
            if self.converged(residual, state.reference_residual):
                state.status = ReturnMappingStatus.SUCCESS
                return self._finish(state)
            if state.sign_change_found:
                width = state.upper - state.lower
                if width <= self.bracket_tolerance * max(abs(state.upper), 1.0):
                    state.bracket_collapsed = True
                    state.converged_acceptable = True
                    state.status = ReturnMappingStatus.ACCEPTABLE
                    return self._finish(state)
            if self._converged_acceptable(state, residual_history):
                state.converged_acceptable = True
                state.status = ReturnMappingStatus.ACCEPTABLE
                return self._finish(state)

        state.status = ReturnMappingStatus.EXCEEDED_ITERATIONS
        return self._finish(state)

    def _update_bounds(self, state, scalar, residual, init_sign, a, b):
        """Narrow the bracket with the sign of the latest residual."""
        if residual * init_sign > 0.0:
            if b is None or min(a, b) <= scalar <= max(a, b):
                a = scalar
        elif residual * init_sign < 0.0:
            if b is None or min(a, b) <= scalar <= max(a, b):
                b = scalar
        if b is not None:
            state.sign_change_found = True
            state.lower, state.upper = min(a, b), max(a, b)
        return a, b

    def _record(self, state, scalar, step):
        if self.record_history:
            state.history.append({
                'iter': state.iterations,
                'scalar': scalar,
                'residual': state.residual,
                'step': step,
                'lower': state.lower,
                'upper': state.upper,
            })
        if self.verbose:
            LOG.debug("  Iter %d: x=%.8e R=%.3e [%.6e, %.6e]", state.iterations, scalar,
                      state.residual, state.lower, state.upper)

    def _finish(self, state):
        if self.verbose:
            LOG.debug(self.iteration_summary(state))
        return state

    @staticmethod
    def iteration_summary(state):
        """One-line summary of a finished solve."""
        return (f"Return mapping {state.status.value}: {state.iterations} iterations "
                f"({state.bisections} bisections), scalar={state.scalar:.8e}, "
                f"residual={state.residual:.3e}, initial residual={state.initial_residual:.3e}")
