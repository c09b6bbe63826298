#!/usr/bin/env python3
"""
Reduced-order creep flow model (LArge-time-step Reduced Order Model).

The surrogate maps six physical inputs to three outputs through tiled,
tensor-product Legendre expansions:

    inputs:  0 cell dislocations (old), 1 wall dislocations (old),
             2 effective stress, 3 effective inelastic strain (old),
             4 temperature, 5 environmental factor (optional)
    outputs: 0 cell dislocation increment, 1 wall dislocation increment,
             2 effective inelastic strain increment

Each input is transformed (LINEAR, LOG or EXP), normalized to [-1, 1] and
expanded in Legendre polynomials. Everything that does not depend on the
stress is contracted once per call; inside the radial-return iteration only
the stress polynomials are re-evaluated, under jax.jvp, so the Newton
tangent comes out of the same code path as the value.
"""

import logging
import math
from enum import Enum

import numpy as np

from . import autodiff
from .exceptions import ConfigurationError, DomainViolation, IntervalError
from .material_models import FlowModelEvaluation

LOG = logging.getLogger(__name__)

CELL_INPUT, WALL_INPUT, STRESS_INPUT, OLD_STRAIN_INPUT, TEMPERATURE_INPUT, ENVIRONMENTAL_INPUT = range(6)
CELL_OUTPUT, WALL_OUTPUT, STRAIN_OUTPUT = range(3)

INPUT_NAMES = ('cell dislocations', 'wall dislocations', 'stress', 'old effective strain',
               'temperature', 'environmental factor')


class ROMInputTransform(Enum):
    LINEAR = 0
    LOG = 1
    EXP = 2


class WindowFailure(Enum):
    """What to do with an input outside the calibrated window."""
    ERROR = 'error'
    WARN = 'warn'
    IGNORE = 'ignore'
    EXTRAPOLATE = 'extrapolate'


def _as_transform(value):
    if isinstance(value, ROMInputTransform):
        return value
    if isinstance(value, str):
        try:
            return ROMInputTransform[value.upper()]
        except KeyError:
            raise ConfigurationError(f"Unknown input transform: {value}") from None
    try:
        return ROMInputTransform(int(value))
    except ValueError:
        raise ConfigurationError(f"Unknown input transform: {value}") from None


def _as_window_failure(value):
    if isinstance(value, WindowFailure):
        return value
    try:
        return WindowFailure(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown window failure policy: {value}") from None

# --- Scalar helpers (float or JAX value) ---

def convert_value(x, transform, coef, derivative=False):
    """
    Apply an input transform.

    LINEAR: x, LOG: log(x + coef), EXP: exp(x / coef). With
    ``derivative=True`` the derivative of the transform is returned instead.
    """
    if transform is ROMInputTransform.EXP:
        if derivative:
            return autodiff.exp(x / coef) / coef
        return autodiff.exp(x / coef)
    if transform is ROMInputTransform.LOG:
        if derivative:
            return 1.0 / (x + coef)
        return autodiff.log(x + coef)
    if derivative:
        return 1.0
    return x


def invert_value(y, transform, coef):
    """Inverse of ``convert_value``: LOG -> exp(y) - coef, EXP -> coef log(y)."""
    if transform is ROMInputTransform.EXP:
        return coef * autodiff.log(y)
    if transform is ROMInputTransform.LOG:
        return autodiff.exp(y) - coef
    return y


def normalize_input(x, transform, coef, transformed_limits):
    """Transform ``x`` and map the transformed window onto [-1, 1]."""
    lower, upper = transformed_limits
    return 2.0 * (convert_value(x, transform, coef) - lower) / (upper - lower) - 1.0


def compute_polynomial(x, degree):
    """Legendre polynomial P_degree(x) by the three-term recurrence."""
    return build_polynomials(x, degree)[degree]


def build_polynomials(x, degree):
    """[P_0(x), ..., P_degree(x)]."""
    polynomials = [1.0]
    if degree >= 1:
        polynomials.append(x)
    for n in range(2, degree + 1):
        polynomials.append(((2 * n - 1) * x * polynomials[n - 1] - (n - 1) * polynomials[n - 2]) / n)
    return polynomials


def sigmoid(lower, upper, x):
    """C1 cosine step: 0 below ``lower``, 1 above ``upper``."""
    if x <= lower:
        return 0.0
    if x >= upper:
        return 1.0
    return 0.5 * (1.0 - autodiff.cos(math.pi * (x - lower) / (upper - lower)))


def smooth_step_blend(stress, lower_limit):
    """Default extrapolation blend: 0 at zero stress, 1 at the lower window limit."""
    return sigmoid(0.0, lower_limit, stress)


def check_input_window(x, policy, global_limits, index=None):
    """
    Apply a window-failure policy to an input.

    Returns:
        The input, clamped into ``global_limits`` unless the policy raised

    Raises:
        DomainViolation: under WindowFailure.ERROR
    """
    lower, upper = float(global_limits[0]), float(global_limits[1])
    if lower <= x <= upper:
        return x
    name = INPUT_NAMES[index] if index is not None else 'input'
    message = f"ROM {name} {autodiff.primal_value(x):g} outside the window [{lower:g}, {upper:g}]"
    if policy is WindowFailure.ERROR:
        raise DomainViolation(message, input_index=index, value=autodiff.primal_value(x), limits=(lower, upper))
    if policy is WindowFailure.WARN:
        LOG.warning(message)
    return autodiff.clamp(x, lower, upper)


def make_frame_helper(num_inputs, degree):
    """Legendre degree of input i in coefficient c: (c // (degree+1)^i) % (degree+1)."""
    n_terms = degree + 1
    coefs = np.arange(n_terms ** num_inputs)
    return np.stack([(coefs // n_terms ** i) % n_terms for i in range(num_inputs)], axis=1)


def trapezoidal_rule(f, a, b, tol=1e-6, max_refinements=20):
    """
    Adaptive trapezoidal integral of ``f`` over [a, b].

    The number of panels doubles each level; the estimate is accepted once
    two successive levels agree to ``tol`` relative to the integral of |f|,
    but never before 8 levels and never after ``max_refinements``.

    Raises:
        IntervalError: if a >= b
    """
    if a >= b:
        raise IntervalError(f"Ends of interval do not fulfill requirement b > a: a={a}, b={b}")

    ya, yb = f(a), f(b)
    h = (b - a) * 0.5
    interval_0 = (ya + yb) * h
    length_0 = (abs(ya) + abs(yb)) * h

    yh = f(a + h)
    interval_1 = interval_0 * 0.5 + yh * h
    length_1 = length_0 * 0.5 + abs(yh) * h

    # I_k = I_{k-1}/2 + h_k * sum of f at the new (odd) nodes
    level = 2
    error = abs(interval_0 - interval_1)
    while level < 8 or (level < max_refinements and error > tol * length_1):
        interval_0, length_0 = interval_1, length_1
        h *= 0.5
        odd_nodes = [f(a + j * h) for j in range(1, 1 << level, 2)]
        interval_1 = interval_0 * 0.5 + sum(odd_nodes) * h
        length_1 = length_0 * 0.5 + sum(abs(y) for y in odd_nodes) * h
        level += 1
        error = abs(interval_0 - interval_1)
    return interval_1

# --- Surrogate tables ---

class ROMData:
    """
    Immutable coefficient and limit tables of a reduced-order model.

    Args:
        coefs: [tile][output][coefficient] Legendre coefficients,
            (degree+1)^num_inputs per tile and output
        transform: [tile][output][input] ROMInputTransform (or its name)
        transform_coefs: [tile][output][input] transform coefficients
        input_limits: [tile][input][lower, upper] calibrated window
        normalization_limits: [tile][input][lower, upper], defaults to input_limits
        tilings: [input] number of tiles along each input (default 1)

    Raises:
        ConfigurationError: on inconsistent tables
    """
    def __init__(self, coefs, transform, transform_coefs, input_limits,
                 normalization_limits=None, tilings=None):
        coefs = np.array(coefs, dtype=float)
        if coefs.ndim != 3:
            raise ConfigurationError(f"coefs must be indexed [tile][output][coefficient], got shape {coefs.shape}")
        self.num_tiles, self.num_outputs, self.num_coefs = coefs.shape
        if self.num_outputs != 3:
            raise ConfigurationError(f"Expected 3 outputs (cell, wall, strain), got {self.num_outputs}")

        transform = [[[_as_transform(v) for v in per_output] for per_output in per_tile] for per_tile in transform]
        self.num_inputs = len(transform[0][0]) if transform and transform[0] else 0
        if self.num_inputs not in (5, 6):
            raise ConfigurationError(f"Expected 5 or 6 inputs, got {self.num_inputs}")
        transform_coefs = np.array(transform_coefs, dtype=float)
        expected = (self.num_tiles, self.num_outputs, self.num_inputs)
        if (len(transform) != self.num_tiles or any(len(t) != self.num_outputs for t in transform)
                or any(len(o) != self.num_inputs for t in transform for o in t)):
            raise ConfigurationError(f"transform must have shape {expected}")
        if transform_coefs.shape != expected:
            raise ConfigurationError(f"transform_coefs must have shape {expected}, got {transform_coefs.shape}")

        n_terms = int(round(self.num_coefs ** (1.0 / self.num_inputs)))
        if n_terms < 1 or n_terms ** self.num_inputs != self.num_coefs:
            raise ConfigurationError(
                f"Number of coefficients {self.num_coefs} is not (degree+1)^{self.num_inputs}")
        self.degree = n_terms - 1

        input_limits = np.array(input_limits, dtype=float)
        if input_limits.shape != (self.num_tiles, self.num_inputs, 2):
            raise ConfigurationError(
                f"input_limits must have shape {(self.num_tiles, self.num_inputs, 2)}, got {input_limits.shape}")
        if normalization_limits is None:
            normalization_limits = input_limits.copy()
        normalization_limits = np.array(normalization_limits, dtype=float)
        if normalization_limits.shape != input_limits.shape:
            raise ConfigurationError("normalization_limits must have the same shape as input_limits")
        for name, limits in (('input', input_limits), ('normalization', normalization_limits)):
            if np.any(limits[..., 0] >= limits[..., 1]):
                raise ConfigurationError(f"Lower {name} limits must be below the upper limits")

        if tilings is None:
            tilings = [1] * self.num_inputs
        tilings = np.array(tilings, dtype=int)
        if tilings.shape != (self.num_inputs,) or np.any(tilings < 1):
            raise ConfigurationError(f"tilings must hold {self.num_inputs} positive integers")

        for t in range(self.num_tiles):
            for o in range(self.num_outputs):
                for i in range(self.num_inputs):
                    kind, c = transform[t][o][i], transform_coefs[t, o, i]
                    if kind is ROMInputTransform.LINEAR and c != 0.0:
                        raise ConfigurationError(
                            f"Coefficient cannot be supplied with a LINEAR transform (tile {t}, output {o}, input {i})")
                    if kind is ROMInputTransform.EXP and c == 0.0:
                        raise ConfigurationError(
                            f"EXP transform needs a nonzero coefficient (tile {t}, output {o}, input {i})")

        self.coefs = coefs
        self.transform = tuple(tuple(tuple(per_output) for per_output in per_tile) for per_tile in transform)
        self.transform_coefs = transform_coefs
        self.input_limits = input_limits
        self.normalization_limits = normalization_limits
        self.tilings = tilings
        self.transformed_limits = self._transformed_limits()
        self.global_limits = np.stack([input_limits[:, :, 0].min(axis=0), input_limits[:, :, 1].max(axis=0)], axis=1)
        self.makeframe_helper = make_frame_helper(self.num_inputs, self.degree)
        for array in (self.coefs, self.transform_coefs, self.input_limits, self.normalization_limits,
                      self.tilings, self.transformed_limits, self.global_limits, self.makeframe_helper):
            array.setflags(write=False)

    def _transformed_limits(self):
        """Normalization limits in transformed space, [tile][output][input][lower, upper]."""
        limits = np.zeros((self.num_tiles, self.num_outputs, self.num_inputs, 2))
        for t in range(self.num_tiles):
            for o in range(self.num_outputs):
                for i in range(self.num_inputs):
                    kind, c = self.transform[t][o][i], self.transform_coefs[t, o, i]
                    for k in range(2):
                        x = self.normalization_limits[t, i, k]
                        if kind is ROMInputTransform.LOG and x + c <= 0.0:
                            raise ConfigurationError(
                                f"LOG transform of limit {x} with coefficient {c} is undefined (tile {t}, input {i})")
                        limits[t, o, i, k] = convert_value(x, kind, c)
                    if limits[t, o, i, 0] == limits[t, o, i, 1]:
                        raise ConfigurationError(f"Degenerate transformed limits (tile {t}, output {o}, input {i})")
        return limits

    @property
    def has_environmental(self):
        return self.num_inputs == 6

# --- Flow model ---

class LAROMANCEStressUpdate:
    """
    Flow model evaluating creep with a reduced-order surrogate.

    Parameters:
    - rom_data: ROMData shared by every point
    - window_failure: One WindowFailure (or name) per input, or a single policy for all
    - stress_unit_conversion: Factor turning engine stress units into ROM stress units
    - rom_strain_cutoff: Lower bound used to smooth the dislocation outputs
    - initial_cell_dislocations / initial_wall_dislocations: Initial densities (1/m^2)
    - max_cell_increment / max_wall_increment: Largest density increments per step,
      used by the time-step limit (None disables)
    - cell_dislocations_function / wall_dislocations_function / old_creep_strain_function:
      Optional callables of time replacing the old values of these inputs
    - extrapolation_blend: Callable (stress, lower_limit) -> factor in [0, 1] scaling the
      outputs when the stress is below the window under EXTRAPOLATE
    - verbose: Log every surrogate evaluation at INFO
    """
    def __init__(self, rom_data, window_failure=WindowFailure.WARN, stress_unit_conversion=1.0,
                 rom_strain_cutoff=1e-10, initial_cell_dislocations=0.0, initial_wall_dislocations=0.0,
                 max_cell_increment=None, max_wall_increment=None, cell_dislocations_function=None,
                 wall_dislocations_function=None, old_creep_strain_function=None,
                 extrapolation_blend=smooth_step_blend, verbose=False):
        self.rom_data = rom_data
        if isinstance(window_failure, (list, tuple)):
            policies = tuple(_as_window_failure(p) for p in window_failure)
        else:
            policies = (_as_window_failure(window_failure),) * rom_data.num_inputs
        if len(policies) != rom_data.num_inputs:
            raise ConfigurationError(
                f"Expected {rom_data.num_inputs} window failure policies, got {len(policies)}")
        self.window_failure = policies
        if stress_unit_conversion <= 0:
            raise ConfigurationError("stress_unit_conversion must be positive")
        if rom_strain_cutoff <= 0:
            raise ConfigurationError("rom_strain_cutoff must be positive")
        if initial_cell_dislocations < 0 or initial_wall_dislocations < 0:
            raise ConfigurationError("Initial dislocation densities must be non-negative")
        self.stress_unit_conversion = float(stress_unit_conversion)
        self.rom_strain_cutoff = float(rom_strain_cutoff)
        self.initial_cell_dislocations = float(initial_cell_dislocations)
        self.initial_wall_dislocations = float(initial_wall_dislocations)
        self.max_cell_increment = max_cell_increment
        self.max_wall_increment = max_wall_increment
        self.cell_dislocations_function = cell_dislocations_function
        self.wall_dislocations_function = wall_dislocations_function
        self.old_creep_strain_function = old_creep_strain_function
        self.extrapolation_blend = extrapolation_blend
        self.verbose = verbose

    def initial_internal_state(self):
        return {'cell_dislocations': self.initial_cell_dislocations,
                'wall_dislocations': self.initial_wall_dislocations}

    def compute_stress_initialize(self, trial):
        return LAROMANCEEvaluation(self, trial)

    def compute_creep_strain_rate(self, effective_stress, trial):
        """Creep rate at ``effective_stress`` with the other inputs taken from ``trial``."""
        return self.compute_stress_initialize(trial).compute_creep_strain_rate(effective_stress)

    def compute_strain_energy_rate_density(self, effective_stress, trial, tol=1e-6, max_refinements=20):
        """
        Strain energy rate density q ε̇(q) - ∫_0^q ε̇(s) ds, the complementary
        part integrated numerically.
        """
        evaluation = self.compute_stress_initialize(trial)
        if effective_stress <= 0.0:
            return 0.0
        complementary = trapezoidal_rule(evaluation.compute_creep_strain_rate, 0.0, effective_stress,
                                         tol, max_refinements)
        return effective_stress * evaluation.compute_creep_strain_rate(effective_stress) - complementary


class LAROMANCEEvaluation(FlowModelEvaluation):
    """
    Task-local surrogate evaluation for one quadrature point and step.

    Holds the old input values, the Legendre polynomials of every input except
    the stress, and their contraction with the coefficients, grouped by the
    stress polynomial degree.
    """
    def __init__(self, model, trial):
        super().__init__(trial)
        self.model = model
        self.data = data = model.rom_data
        internal_old = trial.internal_old
        time = trial.time

        old_values = [0.0] * data.num_inputs
        old_values[CELL_INPUT] = (model.cell_dislocations_function(time) if model.cell_dislocations_function
                                  else internal_old.cell_dislocations)
        old_values[WALL_INPUT] = (model.wall_dislocations_function(time) if model.wall_dislocations_function
                                  else internal_old.wall_dislocations)
        old_values[STRESS_INPUT] = trial.effective_trial_stress * model.stress_unit_conversion
        old_values[OLD_STRAIN_INPUT] = (model.old_creep_strain_function(time) if model.old_creep_strain_function
                                        else internal_old.effective_inelastic_strain)
        old_values[TEMPERATURE_INPUT] = trial.temperature
        if data.has_environmental:
            if trial.environmental is None:
                raise ConfigurationError("ROM data has an environmental input but no environmental factor is coupled")
            old_values[ENVIRONMENTAL_INPUT] = trial.environmental
        self.old_input_values = [float(v) for v in old_values]

        self.input_values = list(self.old_input_values)
        for i in range(data.num_inputs):
            if i != STRESS_INPUT:
                self.input_values[i] = float(check_input_window(
                    self.input_values[i], model.window_failure[i], data.global_limits[i], i))

        self.non_stress_weights = self._non_stress_tile_weights()
        self.precomputed = self.precompute_values()
        self.extrapolation = 1.0
        self.cell_increment = 0.0
        self.wall_increment = 0.0

    # --- Setup per call ---

    def _non_stress_tile_weights(self):
        # First input after which no tile is left, reported if the stress cannot restore coverage
        self.uncovered_input = None
        weights = np.ones(self.data.num_tiles)
        for i in range(self.data.num_inputs):
            if i == STRESS_INPUT:
                continue
            weights *= [float(w) for w in self.compute_tile_weight(self.input_values[i], i)]
            if self.uncovered_input is None and not np.any(weights):
                self.uncovered_input = i
        return weights.tolist()

    def precompute_values(self):
        """
        Contract the coefficients with the polynomials of every input except the stress.

        Returns:
            [tile][output] array of length degree+1, indexed by the stress polynomial degree
        """
        data = self.data
        helper = data.makeframe_helper
        precomputed = []
        for t in range(data.num_tiles):
            per_output = []
            for o in range(data.num_outputs):
                products = np.array(data.coefs[t, o])
                for i in range(data.num_inputs):
                    if i == STRESS_INPUT:
                        continue
                    rom_input = normalize_input(self.input_values[i], data.transform[t][o][i],
                                                data.transform_coefs[t, o, i], data.transformed_limits[t, o, i])
                    polynomials = np.array(build_polynomials(rom_input, data.degree))
                    products = products * polynomials[helper[:, i]]
                    # Every contribution of this tile/output vanished
                    if not np.any(products):
                        break
                per_output.append(np.bincount(helper[:, STRESS_INPUT], weights=products,
                                              minlength=data.degree + 1).tolist())
            precomputed.append(per_output)
        return precomputed

    # --- Per-iteration evaluation ---

    def compute_tile_weight(self, x, index):
        """Sigmoid-blended weight of every tile along input ``index`` (float or JAX value)."""
        data = self.data
        limits = data.input_limits[:, index, :].tolist()
        weights = []
        for t in range(data.num_tiles):
            lower, upper = limits[t]
            if x < lower or x > upper:
                weights.append(0.0)
                continue
            weight = 1.0
            if data.tilings[index] > 1:
                for tt in range(data.num_tiles):
                    other_lower, other_upper = limits[tt]
                    if lower < other_lower < upper < other_upper:
                        weight = weight * (1.0 - sigmoid(other_lower, upper, x))
                    elif other_lower < lower < other_upper < upper:
                        weight = weight * sigmoid(lower, other_upper, x)
            weights.append(weight)
        return weights

    def compute_values(self, tile, out_index, stress_polynomials):
        """Surrogate output of one tile: the precomputed sums times the stress polynomials."""
        total = 0.0
        for k, value in enumerate(self.precomputed[tile][out_index]):
            if value != 0.0:
                total = total + value * stress_polynomials[k]
        return total

    def convert_output(self, rom_output, out_index):
        """Physical increment of an output from the raw surrogate value."""
        dt = self.trial.dt
        if out_index == STRAIN_OUTPUT:
            return autodiff.exp(rom_output) * dt
        expout = autodiff.exp(rom_output)
        cutoff = self.model.rom_strain_cutoff
        if expout > cutoff:
            expout = expout - cutoff
        else:
            expout = -cutoff * cutoff / expout + cutoff
        return -expout * self.old_input_values[out_index] * dt

    def compute_rom(self, stress, out_indices=(STRAIN_OUTPUT,)):
        """
        Tile-weighted increments of the requested outputs at an effective stress.

        Args:
            stress: Effective stress in engine units (float or JAX value)
            out_indices: Output indices to evaluate

        Returns:
            dict out_index -> increment (same type as ``stress``)
        """
        data = self.data
        model = self.model
        rom_stress = stress * model.stress_unit_conversion
        policy = model.window_failure[STRESS_INPUT]
        lower_limit = float(data.global_limits[STRESS_INPUT, 0])

        extrapolation = 1.0
        if policy is WindowFailure.EXTRAPOLATE and rom_stress < lower_limit:
            extrapolation = model.extrapolation_blend(rom_stress, lower_limit)
        rom_stress = check_input_window(rom_stress, policy, data.global_limits[STRESS_INPUT], STRESS_INPUT)

        stress_weights = self.compute_tile_weight(rom_stress, STRESS_INPUT)
        weights = [w * s for w, s in zip(self.non_stress_weights, stress_weights)]
        weight_sum = sum(weights)
        if weight_sum <= 0.0:
            index = self.uncovered_input if self.uncovered_input is not None else STRESS_INPUT
            value = (autodiff.primal_value(rom_stress) if index == STRESS_INPUT
                     else self.input_values[index])
            raise DomainViolation(f"ROM inputs are not covered by any tile (gap in {INPUT_NAMES[index]})",
                                  input_index=index, value=value)

        increments = {o: 0.0 for o in out_indices}
        for t in range(data.num_tiles):
            if weights[t] == 0.0:
                continue
            weight = weights[t] / weight_sum
            for o in out_indices:
                rom_input = normalize_input(rom_stress, data.transform[t][o][STRESS_INPUT],
                                            float(data.transform_coefs[t, o, STRESS_INPUT]),
                                            data.transformed_limits[t, o, STRESS_INPUT].tolist())
                stress_polynomials = build_polynomials(rom_input, data.degree)
                rom_output = self.compute_values(t, o, stress_polynomials)
                increments[o] = increments[o] + weight * self.convert_output(rom_output, o)
        for o in out_indices:
            increments[o] = increments[o] * extrapolation
        self.extrapolation = autodiff.primal_value(extrapolation)
        return increments

    def initial_guess(self):
        guess = self.trial.internal_old.inelastic_strain_rate * self.trial.dt
        return min(max(guess, 0.0), 0.5 * self.trial.increment_scale)

    def compute_residual(self, effective_stress, scalar):
        strain_increment = self.compute_rom(effective_stress)[STRAIN_OUTPUT]
        residual = strain_increment - scalar
        if self.model.verbose:
            LOG.info("ROM: stress=%.6e strain increment=%.6e residual=%.6e",
                     autodiff.primal_value(effective_stress), autodiff.primal_value(strain_increment),
                     autodiff.primal_value(residual))
        return residual

    def compute_creep_strain_rate(self, effective_stress):
        return autodiff.primal_value(self.compute_rom(float(effective_stress))[STRAIN_OUTPUT]) / self.trial.dt

    def compute_stress_finalize(self, scalar, effective_stress, internal):
        increments = self.compute_rom(effective_stress, (CELL_OUTPUT, WALL_OUTPUT, STRAIN_OUTPUT))
        self.cell_increment = autodiff.primal_value(increments[CELL_OUTPUT])
        self.wall_increment = autodiff.primal_value(increments[WALL_OUTPUT])
        dt = self.trial.dt
        cell = max(self.old_input_values[CELL_INPUT] + self.cell_increment, 0.0)
        wall = max(self.old_input_values[WALL_INPUT] + self.wall_increment, 0.0)
        if self.model.verbose:
            LOG.info("ROM finalize: strain increment=%.6e cell=%.6e (%+.3e) wall=%.6e (%+.3e) extrapolation=%.3f",
                     scalar, cell, self.cell_increment, wall, self.wall_increment, self.extrapolation)
        return {
            'cell_dislocations': cell,
            'wall_dislocations': wall,
            'cell_rate': self.cell_increment / dt if dt > 0 else 0.0,
            'wall_rate': self.wall_increment / dt if dt > 0 else 0.0,
            'extrapolation': self.extrapolation,
        }

    def compute_time_step_limit(self, dt):
        limit = math.inf
        if self.model.max_cell_increment and self.cell_increment:
            limit = min(limit, dt * self.model.max_cell_increment / abs(self.cell_increment))
        if self.model.max_wall_increment and self.wall_increment:
            limit = min(limit, dt * self.model.max_wall_increment / abs(self.wall_increment))
        return limit
