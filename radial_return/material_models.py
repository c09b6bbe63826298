#!/usr/bin/env python3
"""
Material models for the generalized radial return.
This module contains tensor utilities, the Hill anisotropy eigenspace used to
build the return path, isotropic hardening laws and the classical flow
models (power-law creep, isotropic plasticity) that plug into the engine.
"""

import math

import numpy as np

from . import autodiff
from .exceptions import ConfigurationError

# --- Tensor Utilities ---

SQRT2 = math.sqrt(2.0)


def deviatoric(tensor):
    """Computes the deviatoric part of a 3x3 tensor."""
    return tensor - (1. / 3.) * np.trace(tensor) * np.identity(3)


def mag(tensor):
    """Computes the Frobenius norm of a tensor, equivalent to sqrt(T:T)."""
    return np.sqrt(np.sum(tensor * tensor))


def von_mises(tensor):
    """Von Mises equivalent of a 3x3 stress tensor."""
    s = deviatoric(tensor)
    return math.sqrt(1.5 * float(np.sum(s * s)))


def tensor_to_voigt(tensor):
    """Converts a 3x3 symmetric tensor to a 6x1 Voigt notation vector."""
    return np.array([tensor[0, 0], tensor[1, 1], tensor[2, 2], tensor[0, 1], tensor[1, 2], tensor[0, 2]])


def voigt_to_tensor(voigt):
    """Converts a 6x1 Voigt notation vector to a 3x3 symmetric tensor."""
    tensor = np.zeros((3, 3))
    tensor[0, 0], tensor[1, 1], tensor[2, 2] = voigt[0], voigt[1], voigt[2]
    tensor[0, 1] = tensor[1, 0] = voigt[3]
    tensor[1, 2] = tensor[2, 1] = voigt[4]
    tensor[0, 2] = tensor[2, 0] = voigt[5]
    return tensor


def tensor_to_mandel(tensor):
    """3x3 symmetric tensor -> orthonormal Mandel vector [xx, yy, zz, √2xy, √2yz, √2xz]."""
    return np.array([tensor[0, 0], tensor[1, 1], tensor[2, 2],
                     SQRT2 * tensor[0, 1], SQRT2 * tensor[1, 2], SQRT2 * tensor[0, 2]])


def mandel_to_tensor(mandel):
    """Mandel vector -> 3x3 symmetric tensor."""
    return voigt_to_tensor(np.concatenate((mandel[:3], np.asarray(mandel[3:]) / SQRT2)))


def double_contraction(rank_four, rank_two):
    """C_ijkl A_kl."""
    return np.einsum('ijkl,kl->ij', rank_four, rank_two)


def isotropic_elasticity_tensor(E, nu):
    """Rank-4 isotropic elasticity tensor from Young's modulus and Poisson's ratio."""
    lmbda = E * nu / ((1 + nu) * (1 - 2 * nu))
    mu = E / (2 * (1 + nu))
    return elasticity_tensor_from_lame(lmbda, mu)


def elasticity_tensor_from_lame(lmbda, mu):
    """C_ijkl = λ δij δkl + μ (δik δjl + δil δjk)."""
    delta = np.identity(3)
    return (lmbda * np.einsum('ij,kl->ijkl', delta, delta)
            + mu * (np.einsum('ik,jl->ijkl', delta, delta) + np.einsum('il,jk->ijkl', delta, delta)))


def is_isotropic(elasticity_tensor, rtol=1e-8):
    """Check whether a rank-4 tensor has the isotropic form."""
    C = np.asarray(elasticity_tensor, dtype=float)
    if C.shape != (3, 3, 3, 3):
        return False
    reference = elasticity_tensor_from_lame(C[0, 0, 1, 1], C[0, 1, 0, 1])
    scale = max(np.max(np.abs(C)), 1e-300)
    return bool(np.allclose(C, reference, rtol=0.0, atol=rtol * scale))


def isotropic_moduli(elasticity_tensor):
    """
    Extract (lambda, shear modulus) from an isotropic elasticity tensor.

    Raises:
        ConfigurationError: if the tensor is not isotropic
    """
    if not is_isotropic(elasticity_tensor):
        raise ConfigurationError("Elasticity tensor must be isotropic for the radial return")
    C = np.asarray(elasticity_tensor, dtype=float)
    return float(C[0, 0, 1, 1]), float(C[0, 1, 0, 1])

# --- Anisotropy ---

class HillAnisotropy:
    """
    Hill (1948) quadratic anisotropy framed in its eigenspace.

    The equivalent stress is

        q^2 = F(s_yy - s_zz)^2 + G(s_zz - s_xx)^2 + H(s_xx - s_yy)^2
              + 2L s_yz^2 + 2M s_xz^2 + 2N s_xy^2

    and in Mandel form q^2 = m . P m. P is decomposed once into
    eigenvalues and eigenvectors; the return path is expressed in that
    basis, where P is diagonal. F = G = H = 1/2 and L = M = N = 3/2
    recover von Mises.
    """
    def __init__(self, F=0.5, G=0.5, H=0.5, L=1.5, M=1.5, N=1.5):
        self.F, self.G, self.H = float(F), float(G), float(H)
        self.L, self.M, self.N = float(L), float(M), float(N)
        P = np.zeros((6, 6))
        P[0, 0] = self.G + self.H
        P[1, 1] = self.F + self.H
        P[2, 2] = self.F + self.G
        P[0, 1] = P[1, 0] = -self.H
        P[1, 2] = P[2, 1] = -self.F
        P[0, 2] = P[2, 0] = -self.G
        # Mandel shear order: xy, yz, xz
        P[3, 3], P[4, 4], P[5, 5] = self.N, self.L, self.M
        eigenvalues, eigenvectors = np.linalg.eigh(P)
        if np.min(eigenvalues) < -1e-12 * max(np.max(np.abs(eigenvalues)), 1.0):
            raise ConfigurationError(f"Hill coefficients give an indefinite tensor: eigenvalues {eigenvalues}")
        eigenvalues = np.where(np.abs(eigenvalues) < 1e-12 * np.max(np.abs(eigenvalues)), 0.0, eigenvalues)
        self.matrix = P
        self.eigenvalues = eigenvalues
        self.eigenvectors = eigenvectors
        for array in (self.matrix, self.eigenvalues, self.eigenvectors):
            array.setflags(write=False)

    @classmethod
    def von_mises(cls):
        return cls()

    @property
    def is_isotropic(self):
        nonzero = self.eigenvalues[self.eigenvalues > 0.0]
        return bool(np.allclose(nonzero, nonzero[0]))

    def to_eigenspace(self, mandel):
        return self.eigenvectors.T @ mandel

    def from_eigenspace(self, mandel_tilde):
        return self.eigenvectors @ mandel_tilde

    def effective_stress(self, stress):
        """Hill equivalent stress of a 3x3 stress tensor."""
        m = tensor_to_mandel(stress)
        return math.sqrt(max(float(m @ self.matrix @ m), 0.0))

    def return_path(self, trial_stress, shear_modulus):
        """Radial return path of a trial stress for an isotropic shear modulus."""
        return RadialReturnPath(self, trial_stress, shear_modulus)


class RadialReturnPath:
    """
    Backward-Euler return from a trial stress, in the anisotropy eigenspace.

    The unknown is the plastic multiplier Δγ with Δε^p = Δγ P:σ at the final
    stress. Because P is diagonal in its eigenbasis, each component of the
    final stress is the trial component scaled independently:

        σ̃_i(Δγ) = σ̃_tr,i / (1 + 2G Δγ λ_i),    q(Δγ)^2 = Σ λ_i σ̃_i^2

    and the equivalent inelastic increment is Δp = Δγ q(Δγ). Δp grows
    monotonically with Δγ while q falls towards zero, so a flow law with a
    rate that vanishes at zero stress has a root for any time step. For von
    Mises q = q_tr / (1 + 3GΔγ), i.e. q = q_tr - 3GΔp.
    """
    # Largest multiplier reduces every active stress component to this fraction of its trial value
    min_stress_fraction = 1e-12

    def __init__(self, anisotropy, trial_stress, shear_modulus):
        self.anisotropy = anisotropy
        self.shear_modulus = float(shear_modulus)
        self._two_g = 2.0 * self.shear_modulus
        lam = anisotropy.eigenvalues
        self.trial_tilde = anisotropy.to_eigenspace(tensor_to_mandel(trial_stress))
        self.effective_trial_stress = math.sqrt(max(float(np.sum(lam * self.trial_tilde ** 2)), 0.0))
        self._active = lam > 0.0

    @property
    def modulus(self):
        """Initial slope -dq/dΔp (3G for von Mises)."""
        lam = self.anisotropy.eigenvalues
        q2 = self.effective_trial_stress ** 2
        if q2 == 0.0:
            return 3.0 * self.shear_modulus
        return self._two_g * float(np.sum(lam * lam * self.trial_tilde ** 2)) / q2

    @property
    def increment_scale(self):
        """q_tr / modulus, the equivalent increment that relaxes the trial stress at the initial slope."""
        return self.effective_trial_stress / self.modulus

    @property
    def max_multiplier(self):
        if not np.any(self._active):
            return 0.0
        lam_min = float(np.min(self.anisotropy.eigenvalues[self._active]))
        return (1.0 / self.min_stress_fraction - 1.0) / (self._two_g * lam_min)

    def stress_tilde(self, multiplier):
        """Final deviatoric stress in the eigenbasis for a multiplier (float or JAX value)."""
        xp = autodiff.array_module(multiplier)
        lam = xp.asarray(self.anisotropy.eigenvalues)
        return xp.asarray(self.trial_tilde) / (1.0 + self._two_g * multiplier * lam)

    def effective_stress(self, multiplier):
        """Hill equivalent of the final stress q(Δγ)."""
        xp = autodiff.array_module(multiplier)
        lam = xp.asarray(self.anisotropy.eigenvalues)
        s = self.stress_tilde(multiplier)
        q = xp.sqrt(xp.sum(lam * s * s))
        return q if autodiff.is_traced(q) else float(q)

    def equivalent_increment(self, multiplier):
        """Δp = Δγ q(Δγ)."""
        return multiplier * self.effective_stress(multiplier)

    def multiplier_for_increment(self, increment):
        """Multiplier giving roughly ``increment``, exact for von Mises."""
        remaining = self.effective_trial_stress - self.modulus * increment
        if increment <= 0.0:
            return 0.0
        if remaining <= 0.0:
            return self.max_multiplier
        return min(increment / remaining, self.max_multiplier)

    def inelastic_strain_increment(self, multiplier):
        """Inelastic strain tensor Δγ P:σ for a converged multiplier."""
        lam = self.anisotropy.eigenvalues
        flow_tilde = lam * self.stress_tilde(multiplier)
        return mandel_to_tensor(multiplier * self.anisotropy.from_eigenspace(flow_tilde))

# --- Isotropic Hardening Models ---

class BaseIsotropicHardeningModel:
    """
    Abstract base class for isotropic hardening models.
    Hardening is written as a closed-form function R(p) of the accumulated
    inelastic strain, so the same code evaluates floats and JAX tracers and
    its slope comes out of the residual tangent.
    """
    def __init__(self, **params):
        self.params = params

    def compute_hardening_value(self, p):
        """
        Compute the isotropic hardening variable R(p).

        Args:
            p: Accumulated plastic strain (float or JAX value)

        Returns:
            R: Isotropic hardening variable
        """
        raise NotImplementedError


class NoIsotropicHardeningModel(BaseIsotropicHardeningModel):
    """Perfect plasticity."""
    def __init__(self):
        super().__init__()

    def compute_hardening_value(self, p):
        return 0.0 * p


class LinearIsotropicHardeningModel(BaseIsotropicHardeningModel):
    """R = H p."""
    def __init__(self, hardening_constant=0.0):
        super().__init__(hardening_constant=hardening_constant)
        self.hardening_constant = float(hardening_constant)

    def compute_hardening_value(self, p):
        return self.hardening_constant * p


class VoceIsotropicHardeningModel(BaseIsotropicHardeningModel):
    """
    Voce isotropic hardening model implementation.
    Follows the evolution law: dR = b * (R_inf - R) * dp, integrated in closed
    form as R = R_inf * (1 - exp(-b p)).
    """
    def __init__(self, R_inf=0, b=0):
        super().__init__(R_inf=R_inf, b=b)
        self.R_inf = float(R_inf)  # Saturation value for isotropic hardening
        self.b = float(b)          # Rate parameter for isotropic hardening

    def compute_hardening_value(self, p):
        if self.b == 0:
            return 0.0 * p
        return self.R_inf * (1.0 - autodiff.exp(-self.b * p))

# --- Flow Models ---

class FlowModelEvaluation:
    """
    Per-solve evaluation of a flow model.

    A flow model provides ``initial_internal_state()`` and
    ``compute_stress_initialize(trial)``; the latter returns one of these,
    local to a single solve, so the model itself stays immutable and serves
    every quadrature point concurrently. Subclasses implement
    ``compute_residual``; the remaining hooks have neutral defaults.
    """
    def __init__(self, trial):
        self.trial = trial

    def initial_guess(self):
        """Starting equivalent inelastic increment Δp."""
        return 0.0

    def compute_residual(self, effective_stress, scalar):
        """
        Residual of the scalar equation.

        Args:
            effective_stress: Effective stress q on the return path
            scalar: Equivalent inelastic strain increment Δp

        Both arguments are JAX tracers during the solve; the residual must be
        built from them with ordinary arithmetic and the ``autodiff`` helpers.

        Returns:
            Residual; its derivative is the Newton tangent
        """
        raise NotImplementedError

    def compute_stress_finalize(self, scalar, effective_stress, internal):
        """Return a dict of internal-variable updates after convergence."""
        return {}

    def compute_time_step_limit(self, dt):
        return math.inf


class PowerLawCreepModel:
    """
    Power-law (Norton) creep with Arrhenius temperature dependence.

    rate = A q^n exp(-Q / (R T)) (t - t0)^m, integrated with backward Euler:
    residual = rate(q) dt - Δp.
    """
    def __init__(self, coefficient, n_exponent, activation_energy=0.0, gas_constant=8.3143,
                 start_time=0.0, m_exponent=0.0):
        if coefficient < 0:
            raise ConfigurationError("Power-law creep coefficient must be non-negative")
        self.coefficient = float(coefficient)
        self.n_exponent = float(n_exponent)
        self.activation_energy = float(activation_energy)
        self.gas_constant = float(gas_constant)
        self.start_time = float(start_time)
        self.m_exponent = float(m_exponent)

    def initial_internal_state(self):
        return {}

    def compute_stress_initialize(self, trial):
        return _PowerLawCreepEvaluation(self, trial)

    def creep_rate(self, effective_stress, temperature=None, time=None):
        """Equivalent creep strain rate at an effective stress (float or JAX value)."""
        factor = self.coefficient
        if self.activation_energy != 0.0:
            if temperature is None or temperature <= 0.0:
                raise ValueError("A positive temperature is required when activation_energy is set")
            factor *= math.exp(-self.activation_energy / (self.gas_constant * temperature))
        if self.m_exponent != 0.0:
            factor *= (time - self.start_time) ** self.m_exponent
        return factor * effective_stress ** self.n_exponent

    def compute_strain_energy_rate_density(self, stress, strain_rate):
        """Analytic strain energy rate density n/(n+1) σ:ε̇."""
        if self.n_exponent <= 1.0:
            return 0.0
        creep_factor = self.n_exponent / (self.n_exponent + 1.0)
        return creep_factor * float(np.sum(stress * strain_rate))


class _PowerLawCreepEvaluation(FlowModelEvaluation):
    def __init__(self, model, trial):
        super().__init__(trial)
        self.model = model

    def initial_guess(self):
        # Previous rate times dt, capped well inside the relaxation scale
        guess = self.trial.internal_old.inelastic_strain_rate * self.trial.dt
        return min(max(guess, 0.0), 0.5 * self.trial.increment_scale)

    def compute_residual(self, effective_stress, scalar):
        rate = self.model.creep_rate(effective_stress, self.trial.temperature, self.trial.time)
        return rate * self.trial.dt - scalar


class IsotropicPlasticityModel:
    """
    Rate-independent plasticity with isotropic hardening on the radial path.

    residual = (q - σ_y - R(p_old + Δp)) / modulus. The point is elastic
    when q_tr <= σ_y + R(p_old), in which case the residual is identically 0.
    """
    def __init__(self, yield_stress, hardening=None):
        if yield_stress <= 0:
            raise ConfigurationError("yield_stress must be positive")
        self.yield_stress = float(yield_stress)
        self.hardening = hardening if hardening is not None else NoIsotropicHardeningModel()

    def initial_internal_state(self):
        return {}

    def compute_stress_initialize(self, trial):
        return _IsotropicPlasticityEvaluation(self, trial)


class _IsotropicPlasticityEvaluation(FlowModelEvaluation):
    def __init__(self, model, trial):
        super().__init__(trial)
        self.model = model
        p_old = trial.internal_old.effective_inelastic_strain
        self.p_old = p_old
        self.yield_condition = (trial.effective_trial_stress - model.yield_stress
                                - float(model.hardening.compute_hardening_value(p_old)))

    def compute_residual(self, effective_stress, scalar):
        if self.yield_condition <= 0.0:
            return 0.0 * scalar
        hardening = self.model.hardening.compute_hardening_value(self.p_old + scalar)
        return (effective_stress - self.model.yield_stress - hardening) / self.trial.modulus
