"""
Tests for the reduced-order creep model.

The surrogate tables used here are built so that the strain output is an
exact power law in every tile, which gives closed-form references.
"""

import logging
import math

import numpy as np
import pytest
from numpy.polynomial import legendre
from scipy.integrate import quad
from scipy.optimize import brentq

from radial_return import autodiff
from radial_return.exceptions import ConfigurationError, DomainViolation, IntervalError
from radial_return.laromance import (
    CELL_OUTPUT,
    STRAIN_OUTPUT,
    STRESS_INPUT,
    TEMPERATURE_INPUT,
    WALL_OUTPUT,
    LAROMANCEStressUpdate,
    ROMData,
    ROMInputTransform,
    WindowFailure,
    build_polynomials,
    check_input_window,
    compute_polynomial,
    convert_value,
    invert_value,
    make_frame_helper,
    normalize_input,
    sigmoid,
    trapezoidal_rule,
)
from radial_return.material_models import PowerLawCreepModel
from radial_return.solver import GeneralizedRadialReturnStressUpdate, TimeStepAdvisor
from radial_return.state import InternalStateVariables, QuadraturePointState

from conftest import SHEAR_MODULUS, build_power_law_rom


def _shear_strain(gamma):
    strain = np.zeros((3, 3))
    strain[0, 1] = strain[1, 0] = gamma
    return strain


class TestLegendrePolynomials:
    """Legendre recurrence."""

    @pytest.mark.parametrize("x", [-1.0, 0.0, 0.5, 1.0])
    def test_recurrence_degrees_0_to_3(self, x):
        assert compute_polynomial(x, 0) == 1.0
        assert compute_polynomial(x, 1) == x
        for n in range(2, 4):
            expected = ((2 * n - 1) * x * compute_polynomial(x, n - 1) - (n - 1) * compute_polynomial(x, n - 2)) / n
            assert compute_polynomial(x, n) == pytest.approx(expected)
        assert compute_polynomial(x, 2) == pytest.approx(0.5 * (3 * x ** 2 - 1))
        assert compute_polynomial(x, 3) == pytest.approx(0.5 * (5 * x ** 3 - 3 * x))

    @pytest.mark.parametrize("x", [-0.7, 0.1, 0.9])
    def test_matches_numpy_legendre(self, x):
        values = build_polynomials(x, 5)
        for n, value in enumerate(values):
            coefficients = np.zeros(n + 1)
            coefficients[n] = 1.0
            assert value == pytest.approx(legendre.legval(x, coefficients))

    def test_derivative_through_recurrence(self):
        assert autodiff.derivative(lambda x: compute_polynomial(x, 2), 0.3) == pytest.approx(3 * 0.3)
        assert autodiff.derivative(lambda x: compute_polynomial(x, 3), 0.3) == pytest.approx(0.5 * (15 * 0.09 - 3))


class TestTransforms:
    """Input transforms and normalization."""

    @pytest.mark.parametrize("transform, coef", [
        (ROMInputTransform.LOG, 2.0),
        (ROMInputTransform.LOG, 1e-3),
        (ROMInputTransform.EXP, 3.0),
        (ROMInputTransform.EXP, -50.0),
        (ROMInputTransform.LINEAR, 0.0),
    ])
    def test_roundtrip(self, transform, coef):
        for x in (0.5, 1.0, 7.5, 120.0):
            y = convert_value(x, transform, coef)
            assert invert_value(y, transform, coef) == pytest.approx(x, rel=1e-12)

    def test_transform_derivatives(self):
        assert convert_value(2.0, ROMInputTransform.LOG, 1.0, derivative=True) == pytest.approx(1.0 / 3.0)
        assert convert_value(2.0, ROMInputTransform.EXP, 4.0, derivative=True) == pytest.approx(math.exp(0.5) / 4.0)
        assert convert_value(2.0, ROMInputTransform.LINEAR, 0.0, derivative=True) == 1.0
        log_slope = autodiff.derivative(lambda x: convert_value(x, ROMInputTransform.LOG, 1.0), 2.0)
        assert log_slope == pytest.approx(1.0 / 3.0)

    def test_normalize_maps_limits_to_unit_interval(self):
        limits = (math.log(10.0), math.log(1000.0))
        assert normalize_input(10.0, ROMInputTransform.LOG, 0.0, limits) == pytest.approx(-1.0)
        assert normalize_input(1000.0, ROMInputTransform.LOG, 0.0, limits) == pytest.approx(1.0)
        assert normalize_input(100.0, ROMInputTransform.LOG, 0.0, limits) == pytest.approx(0.0)

    def test_make_frame_helper(self):
        helper = make_frame_helper(5, 2)
        assert helper.shape == (3 ** 5, 5)
        c = 2 + 1 * 3 + 2 * 27
        np.testing.assert_array_equal(helper[c], [2, 1, 0, 2, 0])


class TestTileWeights:
    """Sigmoid blending across overlapping tiles."""

    def test_sigmoid_is_c1_step(self):
        assert sigmoid(1.0, 2.0, 0.5) == 0.0
        assert sigmoid(1.0, 2.0, 2.5) == 1.0
        assert sigmoid(1.0, 2.0, 1.5) == pytest.approx(0.5)
        assert autodiff.derivative(lambda x: sigmoid(1.0, 2.0, x), 1.0 + 1e-9) == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.parametrize("tiles", [
        ((1.0, 600.0), (400.0, 1000.0)),
        ((1.0, 400.0), (300.0, 700.0), (600.0, 1000.0)),
    ])
    def test_weights_sum_to_one(self, make_trial, tiles):
        rom = build_power_law_rom(stress_tiles=tiles)
        evaluation = LAROMANCEStressUpdate(rom).compute_stress_initialize(make_trial())
        for x in np.linspace(1.0, 1000.0, 97):
            weights = evaluation.compute_tile_weight(float(x), STRESS_INPUT)
            assert sum(weights) == pytest.approx(1.0, abs=1e-14)
            assert all(0.0 <= w <= 1.0 for w in weights)

    def test_tiled_surrogate_reproduces_single_tile(self, make_trial):
        single = LAROMANCEStressUpdate(build_power_law_rom(), window_failure='ignore')
        tiled = LAROMANCEStressUpdate(build_power_law_rom(stress_tiles=((1.0, 600.0), (400.0, 1000.0))),
                                      window_failure='ignore')
        trial = make_trial()
        for stress in (50.0, 450.0, 500.0, 590.0, 900.0):
            assert tiled.compute_creep_strain_rate(stress, trial) == pytest.approx(
                single.compute_creep_strain_rate(stress, trial), rel=1e-10)


class TestROMData:
    """Setup-time validation of surrogate tables."""

    def _tables(self):
        rom = build_power_law_rom()
        return dict(coefs=np.array(rom.coefs), transform=[[[v.name for v in o] for o in t] for t in rom.transform],
                    transform_coefs=np.array(rom.transform_coefs), input_limits=np.array(rom.input_limits))

    def test_derived_sizes(self):
        rom = build_power_law_rom()
        assert (rom.num_tiles, rom.num_outputs, rom.num_inputs) == (1, 3, 5)
        assert rom.degree == 1
        assert rom.num_coefs == 32
        np.testing.assert_allclose(rom.global_limits[STRESS_INPUT], [1.0, 1000.0])
        np.testing.assert_allclose(rom.transformed_limits[0, STRAIN_OUTPUT, STRESS_INPUT], [0.0, math.log(1000.0)])

    def test_tables_are_read_only(self):
        rom = build_power_law_rom()
        with pytest.raises(ValueError):
            rom.coefs[0, 0, 0] = 1.0
        with pytest.raises(ValueError):
            rom.input_limits[0, 0, 0] = 1.0

    def test_coefficient_count_mismatch(self):
        tables = self._tables()
        tables['coefs'] = tables['coefs'][:, :, :31]
        with pytest.raises(ConfigurationError):
            ROMData(**tables)

    def test_linear_transform_with_coefficient(self):
        tables = self._tables()
        tables['transform_coefs'][0, 0, 0] = 1.0
        with pytest.raises(ConfigurationError):
            ROMData(**tables)

    def test_exp_transform_without_coefficient(self):
        tables = self._tables()
        tables['transform'][0][0][3] = 'EXP'
        with pytest.raises(ConfigurationError):
            ROMData(**tables)

    def test_inverted_limits(self):
        tables = self._tables()
        tables['input_limits'][0, 4] = [2000.0, 0.0]
        with pytest.raises(ConfigurationError):
            ROMData(**tables)

    def test_log_transform_of_non_positive_limit(self):
        tables = self._tables()
        tables['input_limits'][0, STRESS_INPUT] = [0.0, 1000.0]
        with pytest.raises(ConfigurationError):
            ROMData(**tables)

    def test_unknown_transform(self):
        tables = self._tables()
        tables['transform'][0][0][0] = 'SQRT'
        with pytest.raises(ConfigurationError):
            ROMData(**tables)


class TestWindowPolicies:
    """Behaviour outside the calibrated window."""

    def _evaluation(self, make_trial, policy, **kwargs):
        rom = build_power_law_rom(stress_tiles=((10.0, 1000.0),))
        return LAROMANCEStressUpdate(rom, window_failure=policy, **kwargs).compute_stress_initialize(make_trial())

    def test_check_input_window_inside(self):
        assert check_input_window(5.0, WindowFailure.ERROR, (0.0, 10.0)) == 5.0

    def test_error(self, make_trial):
        evaluation = self._evaluation(make_trial, WindowFailure.ERROR)
        with pytest.raises(DomainViolation) as excinfo:
            evaluation.compute_rom(2000.0)
        assert excinfo.value.input_index == STRESS_INPUT

    def test_error_on_non_stress_input(self, make_trial):
        rom = build_power_law_rom()
        model = LAROMANCEStressUpdate(rom, window_failure='error')
        with pytest.raises(DomainViolation):
            model.compute_stress_initialize(make_trial(temperature=3000.0))

    def test_gap_between_temperature_tiles_names_temperature(self, make_trial):
        base = build_power_law_rom(stress_tiles=((1.0, 1000.0), (1.0, 1000.0)))
        limits = np.array(base.input_limits)
        limits[0, TEMPERATURE_INPUT] = [0.0, 800.0]
        limits[1, TEMPERATURE_INPUT] = [1200.0, 2000.0]
        rom = ROMData(coefs=base.coefs, transform=base.transform, transform_coefs=base.transform_coefs,
                      input_limits=limits, tilings=[1, 1, 1, 1, 2])
        evaluation = LAROMANCEStressUpdate(rom, window_failure='error') \
            .compute_stress_initialize(make_trial(temperature=1000.0))
        with pytest.raises(DomainViolation) as excinfo:
            evaluation.compute_rom(200.0)
        assert excinfo.value.input_index == TEMPERATURE_INPUT
        assert excinfo.value.value == 1000.0
        assert "temperature" in str(excinfo.value)

    def test_warn_logs_and_clamps(self, make_trial, caplog):
        evaluation = self._evaluation(make_trial, 'warn')
        at_limit = evaluation.compute_rom(1000.0)[STRAIN_OUTPUT]
        with caplog.at_level(logging.WARNING, logger="radial_return.laromance"):
            beyond = evaluation.compute_rom(2000.0)[STRAIN_OUTPUT]
        assert beyond == pytest.approx(at_limit)
        assert any("outside the window" in record.message for record in caplog.records)

    def test_ignore_clamps_silently(self, make_trial, caplog):
        evaluation = self._evaluation(make_trial, 'ignore')
        at_limit = evaluation.compute_rom(10.0)[STRAIN_OUTPUT]
        with caplog.at_level(logging.WARNING, logger="radial_return.laromance"):
            below = evaluation.compute_rom(5.0)[STRAIN_OUTPUT]
        assert below == pytest.approx(at_limit)
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_extrapolate_blends_below_window(self, make_trial):
        evaluation = self._evaluation(make_trial, WindowFailure.EXTRAPOLATE)
        at_limit = evaluation.compute_rom(10.0)[STRAIN_OUTPUT]
        assert evaluation.extrapolation == 1.0
        below = evaluation.compute_rom(5.0)[STRAIN_OUTPUT]
        assert below == pytest.approx(0.5 * at_limit)
        assert evaluation.extrapolation == pytest.approx(0.5)
        assert evaluation.compute_rom(0.0)[STRAIN_OUTPUT] == 0.0

    def test_extrapolate_is_continuous_at_the_limit(self, make_trial):
        evaluation = self._evaluation(make_trial, WindowFailure.EXTRAPOLATE)
        below = evaluation.compute_rom(10.0 - 1e-7)[STRAIN_OUTPUT]
        above = evaluation.compute_rom(10.0 + 1e-7)[STRAIN_OUTPUT]
        assert below == pytest.approx(above, rel=1e-6)

    def test_custom_extrapolation_blend(self, make_trial):
        evaluation = self._evaluation(make_trial, WindowFailure.EXTRAPOLATE,
                                      extrapolation_blend=lambda stress, lower: (stress / lower) ** 2)
        at_limit = evaluation.compute_rom(10.0)[STRAIN_OUTPUT]
        assert evaluation.compute_rom(5.0)[STRAIN_OUTPUT] == pytest.approx(0.25 * at_limit)

    def test_policy_count_mismatch(self):
        with pytest.raises(ConfigurationError):
            LAROMANCEStressUpdate(build_power_law_rom(), window_failure=['warn'] * 4)

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError):
            LAROMANCEStressUpdate(build_power_law_rom(), window_failure='abort')


class TestROMEvaluation:
    """Surrogate outputs, derivatives and outputs conversion."""

    def test_strain_rate_is_power_law(self, make_trial):
        model = LAROMANCEStressUpdate(build_power_law_rom(A=1e-12, n=3.0))
        for stress in (20.0, 150.0, 800.0):
            assert model.compute_creep_strain_rate(stress, make_trial()) == pytest.approx(1e-12 * stress ** 3)

    def test_analytic_derivative_matches_finite_difference(self, make_trial):
        rom = build_power_law_rom(stress_tiles=((1.0, 600.0), (400.0, 1000.0)), tile_factors=(1.0, 2.0))
        evaluation = LAROMANCEStressUpdate(rom).compute_stress_initialize(make_trial(dt=0.5))
        for stress in (300.0, 450.0, 520.0, 800.0):
            analytic = autodiff.derivative(lambda s: evaluation.compute_rom(s)[STRAIN_OUTPUT], stress)
            h = 1e-3
            numerical = (evaluation.compute_rom(stress + h)[STRAIN_OUTPUT]
                         - evaluation.compute_rom(stress - h)[STRAIN_OUTPUT]) / (2 * h)
            assert analytic == pytest.approx(numerical, rel=1e-6)

    def test_dislocation_outputs(self, make_trial):
        cutoff = 1e-10
        internal = InternalStateVariables(cell_dislocations=1e12, wall_dislocations=2e12)
        model = LAROMANCEStressUpdate(build_power_law_rom(), rom_strain_cutoff=cutoff)
        evaluation = model.compute_stress_initialize(make_trial(dt=0.1, internal=internal))
        increments = evaluation.compute_rom(200.0, (CELL_OUTPUT, WALL_OUTPUT, STRAIN_OUTPUT))
        assert increments[CELL_OUTPUT] == pytest.approx(-(1.0 - cutoff) * 1e12 * 0.1)
        assert increments[WALL_OUTPUT] == pytest.approx(-(1.0 - cutoff) * 2e12 * 0.1)

    def test_output_cutoff_is_continuous(self, make_trial):
        cutoff = 1.0
        internal = InternalStateVariables(cell_dislocations=1.0)
        evaluation = LAROMANCEStressUpdate(build_power_law_rom(), rom_strain_cutoff=cutoff) \
            .compute_stress_initialize(make_trial(internal=internal))
        # Both branches vanish where exp(rom) equals the cutoff
        above = evaluation.convert_output(1e-12, CELL_OUTPUT)
        below = evaluation.convert_output(-1e-12, CELL_OUTPUT)
        assert above == pytest.approx(0.0, abs=1e-10)
        assert below == pytest.approx(0.0, abs=1e-10)

    def test_environmental_input_required(self, make_trial):
        model = LAROMANCEStressUpdate(build_power_law_rom(environmental=True))
        with pytest.raises(ConfigurationError):
            model.compute_stress_initialize(make_trial())
        rate = model.compute_creep_strain_rate(100.0, make_trial(environmental=1.0))
        assert rate == pytest.approx(1e-12 * 100.0 ** 3)

    def test_forcing_functions(self, make_trial):
        model = LAROMANCEStressUpdate(build_power_law_rom(), cell_dislocations_function=lambda t: 4e12 * t,
                                      old_creep_strain_function=lambda t: 0.001)
        evaluation = model.compute_stress_initialize(make_trial(dt=0.5))
        assert evaluation.old_input_values[0] == pytest.approx(2e12)
        assert evaluation.old_input_values[3] == pytest.approx(0.001)

    def test_verbose_logs_at_info(self, make_trial, caplog):
        model = LAROMANCEStressUpdate(build_power_law_rom(), verbose=True)
        evaluation = model.compute_stress_initialize(make_trial())
        with caplog.at_level(logging.INFO, logger="radial_return.laromance"):
            autodiff.value_and_derivative(lambda q: evaluation.compute_residual(q, 0.0 * q), 200.0)
        assert any(record.levelno == logging.INFO for record in caplog.records)


class TestTrapezoidalRule:
    """Adaptive quadrature."""

    def test_constant(self):
        assert trapezoidal_rule(lambda x: 2.5, 1.0, 3.0) == pytest.approx(5.0)

    def test_smooth_function(self):
        assert trapezoidal_rule(math.sin, 0.0, math.pi, tol=1e-10, max_refinements=20) == pytest.approx(2.0, rel=1e-8)

    def test_minimum_refinement(self):
        calls = []

        def f(x):
            calls.append(x)
            return 1.0

        trapezoidal_rule(f, 0.0, 1.0, tol=1.0)
        # Eight levels: 2^7 + 1 nodes
        assert len(calls) == 2 ** 7 + 1

    def test_refinement_cap(self):
        calls = []

        def f(x):
            calls.append(x)
            return math.sqrt(x)

        trapezoidal_rule(f, 0.0, 1.0, tol=1e-300, max_refinements=10)
        assert len(calls) == 2 ** 9 + 1

    @pytest.mark.parametrize("a, b", [(1.0, 1.0), (2.0, 1.0)])
    def test_inverted_interval(self, a, b):
        with pytest.raises(IntervalError):
            trapezoidal_rule(lambda x: 1.0, a, b)


class TestStrainEnergyRateDensity:
    """Numerical strain energy rate density of the surrogate."""

    def test_matches_power_law(self, make_trial):
        n = 3.0
        model = LAROMANCEStressUpdate(build_power_law_rom(A=1e-12, n=n), window_failure='ignore')
        trial = make_trial()
        stress = 300.0
        serd = model.compute_strain_energy_rate_density(stress, trial, tol=1e-7, max_refinements=16)
        rate = model.compute_creep_strain_rate(stress, trial)
        assert serd == pytest.approx(n / (n + 1.0) * stress * rate, rel=1e-4)

    def test_matches_scipy_quad(self, make_trial):
        rom = build_power_law_rom(stress_tiles=((1.0, 600.0), (400.0, 1000.0)), tile_factors=(1.0, 2.0))
        model = LAROMANCEStressUpdate(rom, window_failure='ignore')
        trial = make_trial()
        stress = 700.0
        reference, _ = quad(lambda s: model.compute_creep_strain_rate(s, trial), 0.0, stress,
                            points=[1.0, 400.0, 600.0], epsabs=0.0, epsrel=1e-9, limit=200)
        expected = stress * model.compute_creep_strain_rate(stress, trial) - reference
        serd = model.compute_strain_energy_rate_density(stress, trial, tol=1e-8, max_refinements=16)
        assert serd == pytest.approx(expected, rel=1e-4)


class TestROMRadialReturn:
    """The surrogate driven by the radial-return engine."""

    def test_matches_power_law_engine(self, elasticity_tensor):
        A, n, dt = 1e-12, 3.0, 10.0
        strain = _shear_strain(1.1e-3)
        qp = QuadraturePointState(stress_old=np.zeros((3, 3)), elastic_strain_old=np.zeros((3, 3)),
                                  strain_increment=strain, elasticity_tensor=elasticity_tensor,
                                  internal_old=InternalStateVariables(cell_dislocations=1e12,
                                                                      wall_dislocations=1e12),
                                  temperature=500.0)
        rom_engine = GeneralizedRadialReturnStressUpdate(
            LAROMANCEStressUpdate(build_power_law_rom(A=A, n=n), window_failure='ignore'))
        reference_engine = GeneralizedRadialReturnStressUpdate(PowerLawCreepModel(A, n))
        rom_engine.initial_setup(elasticity_tensor)
        reference_engine.initial_setup(elasticity_tensor)

        rom_result = rom_engine.update_state(qp, dt)
        reference = reference_engine.update_state(qp, dt)

        q_trial = math.sqrt(3.0) * 2.0 * SHEAR_MODULUS * 1.1e-3
        three_g = 3.0 * SHEAR_MODULUS
        expected = brentq(lambda dp: A * (q_trial - three_g * dp) ** n * dt - dp, 0.0, q_trial / three_g,
                          xtol=1e-16, rtol=1e-14)
        assert rom_result.scalar == pytest.approx(expected, rel=1e-7)
        assert rom_result.scalar == pytest.approx(reference.scalar, rel=1e-7)
        np.testing.assert_allclose(rom_result.stress, reference.stress, rtol=1e-8, atol=1e-8)

    def test_finalize_updates_dislocations(self, elasticity_tensor):
        dt, cutoff = 0.1, 1e-10
        model = LAROMANCEStressUpdate(build_power_law_rom(), rom_strain_cutoff=cutoff, window_failure='ignore',
                                      initial_cell_dislocations=1e12, initial_wall_dislocations=5e11,
                                      max_cell_increment=1e10)
        engine = GeneralizedRadialReturnStressUpdate(
            model, time_step_advisor=TimeStepAdvisor(max_inelastic_increment=1.0))
        engine.initial_setup(elasticity_tensor)
        internal = engine.initial_state()
        assert internal.cell_dislocations == 1e12

        qp = QuadraturePointState(stress_old=np.zeros((3, 3)), elastic_strain_old=np.zeros((3, 3)),
                                  strain_increment=_shear_strain(1e-3), elasticity_tensor=elasticity_tensor,
                                  internal_old=internal, temperature=500.0)
        result = engine.update_state(qp, dt)

        cell_increment = -(1.0 - cutoff) * 1e12 * dt
        assert result.internal.cell_dislocations == pytest.approx(1e12 + cell_increment)
        assert result.internal.wall_dislocations == pytest.approx(5e11 * (1.0 - (1.0 - cutoff) * dt))
        assert result.internal.cell_rate == pytest.approx(cell_increment / dt)
        assert result.internal.extrapolation == 1.0
        assert result.time_step_limit == pytest.approx(dt * 1e10 / abs(cell_increment))

    def test_domain_violation_propagates(self, elasticity_tensor):
        engine = GeneralizedRadialReturnStressUpdate(LAROMANCEStressUpdate(build_power_law_rom(),
                                                                           window_failure='error'))
        engine.initial_setup(elasticity_tensor)
        qp = QuadraturePointState(stress_old=np.zeros((3, 3)), elastic_strain_old=np.zeros((3, 3)),
                                  strain_increment=_shear_strain(1e-3), elasticity_tensor=elasticity_tensor,
                                  temperature=2500.0)
        with pytest.raises(DomainViolation):
            engine.update_state(qp, 1.0)
