"""
Per-quadrature-point data exchanged with the radial-return engine.

Everything here is owned by the caller. The engine reads a
``QuadraturePointState`` and returns a ``StressUpdateResult`` holding a new
``InternalStateVariables``; the old snapshot is never modified.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np


def _zero_tensor():
    return np.zeros((3, 3))


@dataclass
class InternalStateVariables:
    """
    Stateful scalar/tensor properties carried from step to step.

    Attributes:
        effective_inelastic_strain: Equivalent creep/plastic strain (non-decreasing)
        inelastic_strain_rate: Equivalent creep/plastic strain rate
        cell_dislocations: Cell (glissile) dislocation density (1/m^2)
        wall_dislocations: Wall (locked) dislocation density (1/m^2)
        inelastic_strain: Accumulated inelastic strain tensor
        cell_rate: Rate of change of the cell dislocation density
        wall_rate: Rate of change of the wall dislocation density
        extrapolation: Blend factor applied when the surrogate extrapolates (1 = none)
    """
    effective_inelastic_strain: float = 0.0
    inelastic_strain_rate: float = 0.0
    cell_dislocations: float = 0.0
    wall_dislocations: float = 0.0
    inelastic_strain: np.ndarray = field(default_factory=_zero_tensor)
    cell_rate: float = 0.0
    wall_rate: float = 0.0
    extrapolation: float = 1.0

    def copy(self, **changes):
        """Return an independent copy, optionally with some fields replaced."""
        changes.setdefault('inelastic_strain', np.array(self.inelastic_strain, dtype=float))
        return replace(self, **changes)


@dataclass
class QuadraturePointState:
    """
    Input of one local stress update.

    The trial stress is ``C : (elastic_strain_old + strain_increment)``.
    ``stress_old`` is not read by the update: with the isotropic elasticity
    the radial return requires, it equals ``C : elastic_strain_old`` and the
    elastic strain is the state actually integrated. It is carried so a
    caller can hand over the full converged state of the previous step.
    ``temperature`` and ``environmental`` are coupled fields evaluated at
    the same point; models that do not need them ignore them.
    """
    stress_old: np.ndarray
    elastic_strain_old: np.ndarray
    strain_increment: np.ndarray
    elasticity_tensor: np.ndarray
    internal_old: InternalStateVariables = field(default_factory=InternalStateVariables)
    temperature: float = 0.0
    environmental: Optional[float] = None


@dataclass(frozen=True)
class TrialState:
    """
    What a flow model sees of the current point when a solve starts.

    ``modulus`` is the stiffness-like modulus relating the effective stress
    to the equivalent increment Δp at the start of the return (3G for von
    Mises), and ``increment_scale`` = q_tr / modulus the increment that would
    relax the trial stress at that slope.
    """
    effective_trial_stress: float
    modulus: float
    shear_modulus: float
    increment_scale: float
    dt: float
    time: float
    temperature: float
    environmental: Optional[float]
    internal_old: InternalStateVariables


@dataclass
class StressUpdateResult:
    """
    Output of one local stress update.

    Attributes:
        stress: Updated Cauchy stress
        inelastic_strain_increment: Inelastic strain increment of this step
        elastic_strain: Updated elastic strain
        internal: New internal state variables
        scalar: Converged equivalent inelastic strain increment Δp
        plastic_multiplier: Converged multiplier Δγ, the unknown of the scalar solve
        time_step_limit: Suggested upper bound for the next time step
        status: ReturnMappingStatus of the scalar solve
        iterations: Number of solver iterations
    """
    stress: np.ndarray
    inelastic_strain_increment: np.ndarray
    elastic_strain: np.ndarray
    internal: InternalStateVariables
    scalar: float
    time_step_limit: float
    status: object
    iterations: int = 0
    plastic_multiplier: float = 0.0
