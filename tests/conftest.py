"""
Pytest configuration and shared fixtures for the radial-return tests.
"""

import math
import os
import sys

import matplotlib
matplotlib.use("Agg")  # Non-interactive backend for headless test runs
import numpy as np
import pytest

# Add the repository root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from radial_return.laromance import ROMData
from radial_return.material_models import isotropic_elasticity_tensor
from radial_return.state import InternalStateVariables, TrialState

E = 200000.0
NU = 0.3
SHEAR_MODULUS = E / (2.0 * (1.0 + NU))


@pytest.fixture
def elasticity_tensor():
    """Isotropic steel-like elasticity tensor (MPa)."""
    return isotropic_elasticity_tensor(E, NU)


def build_power_law_rom(A=1e-12, n=3.0, stress_tiles=((1.0, 1000.0),), tile_factors=None,
                        environmental=False):
    """
    Degree-1 surrogate whose strain output reproduces A * f_t * s^n in every tile.

    The stress input uses a LOG transform, so c0 + c1 * P_1(u) with
    u = 2 (ln s - ln lo) / (ln hi - ln lo) - 1 is exactly ln(A) + n ln(s)
    for c1 = n (ln hi - ln lo) / 2 and c0 = ln(A) + n ln(lo) + c1.
    Cell and wall outputs are zero before conversion.
    """
    num_inputs = 6 if environmental else 5
    num_coefs = 2 ** num_inputs
    stress_coef_index = 2 ** 2
    coefs, transform, transform_coefs, input_limits = [], [], [], []
    for t, (lo, hi) in enumerate(stress_tiles):
        A_t = A * (tile_factors[t] if tile_factors else 1.0)
        span = math.log(hi) - math.log(lo)
        c1 = n * span / 2.0
        c0 = math.log(A_t) + n * math.log(lo) + c1
        strain = np.zeros(num_coefs)
        strain[0] = c0
        strain[stress_coef_index] = c1
        coefs.append([np.zeros(num_coefs), np.zeros(num_coefs), strain])
        per_output = ['LINEAR', 'LINEAR', 'LOG', 'LINEAR', 'LINEAR'] + (['LINEAR'] if environmental else [])
        transform.append([per_output] * 3)
        transform_coefs.append([[0.0] * num_inputs] * 3)
        limits = [[0.0, 1e14], [0.0, 1e14], [lo, hi], [0.0, 1.0], [0.0, 2000.0]]
        if environmental:
            limits.append([0.0, 10.0])
        input_limits.append(limits)
    tilings = [1, 1, len(stress_tiles), 1, 1] + ([1] if environmental else [])
    return ROMData(coefs=coefs, transform=transform, transform_coefs=transform_coefs,
                   input_limits=input_limits, tilings=tilings)


@pytest.fixture
def power_law_rom():
    """Factory for power-law surrogate tables."""
    return build_power_law_rom


@pytest.fixture
def make_trial():
    """Factory for the per-solve trial state seen by flow models."""
    def _make_trial(q=200.0, dt=1.0, temperature=500.0, environmental=None, internal=None):
        return TrialState(effective_trial_stress=q, modulus=3.0 * SHEAR_MODULUS,
                          shear_modulus=SHEAR_MODULUS, increment_scale=q / (3.0 * SHEAR_MODULUS),
                          dt=dt, time=dt, temperature=temperature, environmental=environmental,
                          internal_old=internal if internal is not None else InternalStateVariables())
    return _make_trial


@pytest.fixture(autouse=True)
def seed_random():
    """Auto-used fixture to seed random for reproducibility."""
    np.random.seed(42)
