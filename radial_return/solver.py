#!/usr/bin/env python3
"""
Generalized radial-return stress update and a single-point driver.

The engine is composed from a flow model (residual and tangent), a Hill
anisotropy (return direction and tensor conversion), a time-step advisor and
a scalar return-mapping solver. It keeps no per-point state between calls,
so one engine serves any number of quadrature points and threads.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import matplotlib.pyplot as plt
from scipy.optimize import newton, root

from . import autodiff
from .exceptions import ConfigurationError, ConvergenceFailure
from .material_models import (HillAnisotropy, deviatoric, double_contraction,
                              isotropic_elasticity_tensor, isotropic_moduli, mag,
                              tensor_to_voigt, voigt_to_tensor)
from .return_mapping import ReturnMappingSolver, ReturnMappingStatus
from .state import InternalStateVariables, QuadraturePointState, StressUpdateResult, TrialState

LOG = logging.getLogger(__name__)


class TimeStepAdvisor:
    """
    Suggests an upper bound for the next time step.

    Parameters:
    - max_inelastic_increment: Largest equivalent inelastic strain increment wanted per step
    - max_integration_error: Largest relative change of the inelastic rate per step
      (None disables the integration-error limit)
    """
    def __init__(self, max_inelastic_increment=1e-4, max_integration_error=None):
        if max_inelastic_increment <= 0:
            raise ConfigurationError("max_inelastic_increment must be positive")
        if max_integration_error is not None and max_integration_error <= 0:
            raise ConfigurationError("max_integration_error must be positive")
        self.max_inelastic_increment = float(max_inelastic_increment)
        self.max_integration_error = max_integration_error

    def compute_time_step_limit(self, scalar, dt, rate_old=0.0, rate_new=0.0, model_limit=math.inf):
        limit = math.inf
        if scalar != 0.0:
            limit = dt * self.max_inelastic_increment / abs(scalar)
        limit = min(limit, self.compute_integration_error_time_step(dt, rate_old, rate_new))
        return min(limit, model_limit)

    def compute_integration_error_time_step(self, dt, rate_old, rate_new):
        if self.max_integration_error is None or rate_new == 0.0:
            return math.inf
        integration_error = abs(rate_new - rate_old) / abs(rate_new)
        if integration_error == 0.0:
            return math.inf
        return dt * self.max_integration_error / integration_error


class GeneralizedRadialReturnStressUpdate:
    """
    Radial-return stress update for isotropic elasticity and Hill-type flow.

    Args:
        model: Flow model (PowerLawCreepModel, IsotropicPlasticityModel, LAROMANCEStressUpdate, ...)
        anisotropy: HillAnisotropy giving the return direction (von Mises by default)
        solver: ReturnMappingSolver for the scalar equation
        time_step_advisor: TimeStepAdvisor for the suggested next time step
    """
    # Relative size of the deviatoric trial stress treated as zero
    zero_stress_tolerance = 1e-14

    def __init__(self, model, anisotropy=None, solver=None, time_step_advisor=None):
        self.model = model
        self.anisotropy = anisotropy if anisotropy is not None else HillAnisotropy.von_mises()
        self.solver = solver if solver is not None else ReturnMappingSolver()
        self.time_step_advisor = time_step_advisor if time_step_advisor is not None else TimeStepAdvisor()
        self.shear_modulus = None

    @staticmethod
    def requires_isotropic_tensor():
        return True

    def initial_setup(self, elasticity_tensor):
        """Validate the elasticity tensor. Raises ConfigurationError when it is not isotropic."""
        if self.requires_isotropic_tensor():
            _, self.shear_modulus = isotropic_moduli(elasticity_tensor)
        else:
            self.shear_modulus = float(np.asarray(elasticity_tensor)[0, 1, 0, 1])
        return self.shear_modulus

    def initial_state(self):
        """Internal state variables at the start of the analysis."""
        return InternalStateVariables(**self.model.initial_internal_state())

    def minimum_permissible_value(self):
        return 0.0

    def maximum_permissible_value(self, path):
        """Largest plastic multiplier; the stress is relaxed to a negligible fraction of the trial there."""
        return path.max_multiplier

    def compute_reference_residual(self, path, multiplier):
        """Distance of Δp(Δγ) from the relaxation scale q_tr / modulus, in the units of the residual."""
        increment = path.equivalent_increment(multiplier)
        return max(abs(path.increment_scale - increment), self.solver.absolute_tolerance)

    def compute_residual_and_derivative(self, evaluation, path, multiplier):
        """Flow-model residual at a multiplier and its derivative with respect to the multiplier."""
        def residual(x):
            return evaluation.compute_residual(path.effective_stress(x), path.equivalent_increment(x))
        return autodiff.value_and_derivative(residual, multiplier)

    def update_state(self, qp_state: QuadraturePointState, dt, time=0.0) -> StressUpdateResult:
        """
        Integrate the flow law over one step at one quadrature point.

        Args:
            qp_state: Old stress/strain state, strain increment and internal variables
            dt: Time step size
            time: Time at the end of the step

        Returns:
            StressUpdateResult

        Raises:
            ConfigurationError: if ``initial_setup`` has not been called
            ConvergenceFailure: if the scalar solve does not converge
        """
        if self.shear_modulus is None:
            raise ConfigurationError("initial_setup must be called with the elasticity tensor before update_state")
        G = self.shear_modulus
        C = np.asarray(qp_state.elasticity_tensor, dtype=float)
        internal_old = qp_state.internal_old

        # --- Initialize ---
        trial_strain = np.asarray(qp_state.elastic_strain_old, dtype=float) + qp_state.strain_increment
        trial_stress = double_contraction(C, trial_strain)
        path = self.anisotropy.return_path(deviatoric(trial_stress), G)

        q_trial = path.effective_trial_stress
        if q_trial <= self.zero_stress_tolerance * mag(trial_stress):
            # Pure-elastic shortcut
            return StressUpdateResult(stress=trial_stress, inelastic_strain_increment=np.zeros((3, 3)),
                                      elastic_strain=trial_strain, internal=internal_old.copy(),
                                      scalar=0.0, time_step_limit=math.inf,
                                      status=ReturnMappingStatus.SUCCESS)

        trial = TrialState(effective_trial_stress=q_trial, modulus=path.modulus, shear_modulus=G,
                           increment_scale=path.increment_scale, dt=dt, time=time,
                           temperature=qp_state.temperature, environmental=qp_state.environmental,
                           internal_old=internal_old)
        evaluation = self.model.compute_stress_initialize(trial)

        # --- Iterate on the plastic multiplier ---
        root_state = self.solver.solve(
            lambda multiplier: self.compute_residual_and_derivative(evaluation, path, multiplier),
            initial_guess=path.multiplier_for_increment(evaluation.initial_guess()),
            minimum=self.minimum_permissible_value(),
            maximum=self.maximum_permissible_value(path),
            reference_fn=lambda multiplier: self.compute_reference_residual(path, multiplier))
        if not root_state.converged:
            LOG.debug(self.solver.iteration_summary(root_state))
            raise ConvergenceFailure(
                f"Radial return did not converge ({root_state.status.value}) after "
                f"{root_state.iterations} iterations, residual={root_state.residual:.3e}",
                status=root_state.status, iterations=root_state.iterations,
                residual=root_state.residual, scalar=path.equivalent_increment(root_state.scalar))

        # --- Finalize ---
        multiplier = root_state.scalar
        effective_stress = path.effective_stress(multiplier)
        scalar = multiplier * effective_stress
        inelastic_increment = path.inelastic_strain_increment(multiplier)
        elastic_strain = trial_strain - inelastic_increment
        # Inelastic strain is deviatoric, so C:Δε^p = 2G Δε^p
        stress = trial_stress - 2.0 * G * inelastic_increment
        rate = scalar / dt if dt > 0 else 0.0

        internal = internal_old.copy(
            effective_inelastic_strain=internal_old.effective_inelastic_strain + scalar,
            inelastic_strain_rate=rate,
            inelastic_strain=internal_old.inelastic_strain + inelastic_increment)
        updates = evaluation.compute_stress_finalize(scalar, effective_stress, internal)
        if updates:
            internal = internal.copy(**updates)

        time_step_limit = self.compute_time_step_limit(scalar, dt, internal_old.inelastic_strain_rate,
                                                       internal.inelastic_strain_rate,
                                                       evaluation.compute_time_step_limit(dt))
        return StressUpdateResult(stress=stress, inelastic_strain_increment=inelastic_increment,
                                  elastic_strain=elastic_strain, internal=internal, scalar=scalar,
                                  time_step_limit=time_step_limit, status=root_state.status,
                                  iterations=root_state.iterations, plastic_multiplier=multiplier)

    def compute_time_step_limit(self, scalar, dt, rate_old=0.0, rate_new=0.0, model_limit=math.inf):
        return self.time_step_advisor.compute_time_step_limit(scalar, dt, rate_old, rate_new, model_limit)

    def compute_integration_error_time_step(self, dt, rate_old, rate_new):
        return self.time_step_advisor.compute_integration_error_time_step(dt, rate_old, rate_new)


def update_points(engine, states, dt, time=0.0, max_workers=None):
    """
    Run ``engine.update_state`` for many quadrature points on a thread pool.

    ``engine.initial_setup`` must have been called. Results come back in the
    order of ``states``. The first exception raised by any point is re-raised
    here.
    """
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(lambda qp: engine.update_state(qp, dt, time), states))


class CreepPointSolver:
    """
    Single material point driven through a strain or stress history.

    Args:
        engine: GeneralizedRadialReturnStressUpdate
        E: Young's modulus
        nu: Poisson's ratio
        max_cutbacks: How many times a failing step may be halved before giving up
        temperature: Coupled temperature at the point (held constant)
        environmental: Optional environmental factor (held constant)
    """
    def __init__(self, engine, E, nu, max_cutbacks=4, stress_control_tolerance=1e-10,
                 temperature=0.0, environmental=None):
        self.engine = engine
        self.E = E
        self.nu = nu
        self.max_cutbacks = max_cutbacks
        self.stress_control_tolerance = stress_control_tolerance
        self.temperature = temperature
        self.environmental = environmental
        self.elasticity_tensor = isotropic_elasticity_tensor(E, nu)
        self.engine.initial_setup(self.elasticity_tensor)
        self.reset_state()

    def reset_state(self):
        """Resets the point to an unloaded virgin state."""
        self.time = 0.0
        self.current_stress = np.zeros((3, 3))
        self.elastic_strain = np.zeros((3, 3))
        self.total_strain = np.zeros((3, 3))
        self.internal = self.engine.initial_state()
        self.time_step_limit = math.inf
        self.cutbacks = 0
        self.history = {'time': [0.0], 'stress': [self.current_stress.copy()],
                        'strain': [self.total_strain.copy()], 'effective_inelastic_strain': [0.0]}
        self._convergence_history = []

    # --- Stepping ---

    def _qp_state(self, strain_increment):
        return QuadraturePointState(stress_old=self.current_stress, elastic_strain_old=self.elastic_strain,
                                    strain_increment=np.asarray(strain_increment, dtype=float),
                                    elasticity_tensor=self.elasticity_tensor, internal_old=self.internal,
                                    temperature=self.temperature,
                                    environmental=self.environmental)

    def trial_update(self, strain_increment, dt):
        """Evaluate a step without committing it; the point state is left untouched."""
        return self.engine.update_state(self._qp_state(strain_increment), dt, self.time + dt)

    def _commit(self, strain_increment, dt, result):
        self.current_stress = result.stress
        self.elastic_strain = result.elastic_strain
        self.total_strain = self.total_strain + strain_increment
        self.internal = result.internal
        self.time += dt
        self.time_step_limit = result.time_step_limit
        self._convergence_history.append({'time': self.time, 'iterations': result.iterations,
                                          'status': result.status.value, 'scalar': result.scalar})

    def _step(self, strain_increment, dt, level):
        try:
            result = self.trial_update(strain_increment, dt)
        except ConvergenceFailure as exc:
            if level >= self.max_cutbacks:
                raise
            self.cutbacks += 1
            LOG.info("Cutting back step at t=%g: dt %g -> %g (%s)", self.time, dt, 0.5 * dt, exc)
            half = 0.5 * np.asarray(strain_increment, dtype=float)
            self._step(half, 0.5 * dt, level + 1)
            self._step(half, 0.5 * dt, level + 1)
            return
        self._commit(np.asarray(strain_increment, dtype=float), dt, result)

    def step(self, strain_increment, dt):
        """
        Apply a strain increment over ``dt``; halve and retry on convergence failure.

        Returns:
            The current stress after the step
        """
        self._step(strain_increment, dt, 0)
        self.history['time'].append(self.time)
        self.history['stress'].append(self.current_stress.copy())
        self.history['strain'].append(self.total_strain.copy())
        self.history['effective_inelastic_strain'].append(self.internal.effective_inelastic_strain)
        return self.current_stress

    # --- Loading histories ---

    def run_strain_controlled(self, strain_history, times, uniaxial=False):
        """
        Strain-controlled run.

        With ``uniaxial=True`` only the [0, 0] component is prescribed and the
        (equal) transverse strains are solved for zero transverse stress.

        Returns:
            (stresses, strains) arrays
        """
        strain_history = np.asarray(strain_history, dtype=float)
        stresses, strains = [], []
        for target, t in zip(strain_history, times):
            dt = t - self.time
            if uniaxial:
                target_e11 = target[0, 0]

                def transverse_residual(e_t):
                    trial_strain = np.diag([target_e11, e_t, e_t])
                    try:
                        result = self.trial_update(trial_strain - self.total_strain, dt)
                    except ConvergenceFailure:
                        return 1e6
                    return result.stress[1, 1] / self.E

                previous_e_t = self.total_strain[1, 1]
                try:
                    correct_e_t = newton(transverse_residual, x0=previous_e_t, tol=1e-12, maxiter=50)
                except RuntimeError:
                    LOG.warning("Transverse strain solve failed at t=%g, using elastic estimate", t)
                    correct_e_t = -self.nu * target_e11
                target = np.diag([target_e11, correct_e_t, correct_e_t])
            self.step(target - self.total_strain, dt)
            stresses.append(self.current_stress.copy())
            strains.append(self.total_strain.copy())
        return np.array(stresses), np.array(strains)

    def compute_strain(self, target_stress, dt):
        """
        Stress-controlled step: find the strain increment giving ``target_stress`` after ``dt``.

        Raises:
            ConvergenceFailure: if the strain increment cannot be found
        """
        target_stress = np.asarray(target_stress, dtype=float)

        def residual(delta_strain_voigt):
            try:
                result = self.trial_update(voigt_to_tensor(delta_strain_voigt), dt)
            except ConvergenceFailure:
                return np.ones(6) * 1e6
            return tensor_to_voigt(result.stress - target_stress) / self.E

        # Elastic compliance guess
        delta_stress = target_stress - self.current_stress
        initial_guess = ((1 + self.nu) * delta_stress - self.nu * np.trace(delta_stress) * np.identity(3)) / self.E
        solution = root(residual, tensor_to_voigt(initial_guess), method='hybr', tol=self.stress_control_tolerance)
        if not solution.success or np.max(np.abs(solution.fun)) > 1e3 * self.stress_control_tolerance:
            raise ConvergenceFailure(f"Stress control failed at t={self.time + dt:g}: {solution.message}",
                                     iterations=solution.nfev, residual=float(np.max(np.abs(solution.fun))))
        self.step(voigt_to_tensor(solution.x), dt)
        return self.total_strain

    def run_stress_controlled(self, stress_history, times):
        """Stress-controlled run; stops at the first step that cannot be solved."""
        strains, stresses = [], []
        for stress_tensor, t in zip(stress_history, times):
            try:
                strains.append(self.compute_strain(stress_tensor, t - self.time).copy())
                stresses.append(self.current_stress.copy())
            except ConvergenceFailure as exc:
                LOG.warning("Simulation stopped: %s", exc)
                break
        return np.array(strains), np.array(stresses)

    # --- Reporting ---

    def get_history(self):
        return {key: np.array(values) for key, values in self.history.items()}

    def plot_history(self, ax=None):
        """Plot the equivalent inelastic strain against time."""
        if ax is None:
            _, ax = plt.subplots()
        history = self.get_history()
        ax.plot(history['time'], history['effective_inelastic_strain'], 'o-', label=type(self.engine.model).__name__)
        ax.set_xlabel('Time')
        ax.set_ylabel('Equivalent inelastic strain')
        ax.grid(True)
        ax.legend()
        return ax

    def get_method_info(self):
        """Return information about the current solver settings."""
        info = dict(self.engine.solver.get_settings())
        info.update({
            'model': type(self.engine.model).__name__,
            'max_cutbacks': self.max_cutbacks,
            'max_inelastic_increment': self.engine.time_step_advisor.max_inelastic_increment,
            'available_precisions': ['standard', 'high', 'scientific'],
        })
        return info

    def log_convergence_summary(self):
        """Log a summary of the per-step solver iterations."""
        if not self._convergence_history:
            return
        history = self._convergence_history
        LOG.info("Steps: %d, cutbacks: %d, total iterations: %d, max iterations: %d",
                 len(history), self.cutbacks, sum(h['iterations'] for h in history),
                 max(h['iterations'] for h in history))
