"""
Tests for the forward-mode derivative helpers.
"""

import math

import pytest

from radial_return import autodiff


class TestValueAndDerivative:
    """Values and tangents of scalar functions through jax.jvp."""

    def test_polynomial(self):
        value, slope = autodiff.value_and_derivative(lambda x: 3.0 * x ** 3 - 2.0 * x + 1.0, 2.0)
        assert value == pytest.approx(21.0)
        assert slope == pytest.approx(34.0)

    def test_division_and_reflected_ops(self):
        # 1/x + 2/x - 1 = 3/x - 1
        value, slope = autodiff.value_and_derivative(lambda x: 1.0 / x + (2.0 - x) / x, 4.0)
        assert value == pytest.approx(-0.25)
        assert slope == pytest.approx(-3.0 / 16.0)

    @pytest.mark.parametrize("fn, expected", [
        (autodiff.exp, math.exp(0.7)),
        (autodiff.log, 1.0 / 0.7),
        (autodiff.sqrt, 0.5 / math.sqrt(0.7)),
        (autodiff.cos, -math.sin(0.7)),
    ])
    def test_elementary_functions(self, fn, expected):
        assert autodiff.derivative(fn, 0.7) == pytest.approx(expected, rel=1e-12)

    def test_python_branching_on_traced_value(self):
        def piecewise(x):
            if x < 1.0:
                return 2.0 * x
            return x * x
        assert autodiff.derivative(piecewise, 0.5) == pytest.approx(2.0)
        assert autodiff.derivative(piecewise, 3.0) == pytest.approx(6.0)

    def test_double_precision(self):
        value, _ = autodiff.value_and_derivative(lambda x: x + 1e-12, 1.0)
        assert value - 1.0 == pytest.approx(1e-12, rel=1e-3)

    def test_constant_has_zero_slope(self):
        assert autodiff.value_and_derivative(lambda x: 0.0 * x + 5.0, 2.0) == (5.0, 0.0)


class TestHelpers:
    """Helpers accept plain floats."""

    def test_floats_stay_floats(self):
        assert autodiff.exp(1.0) == pytest.approx(math.e)
        assert isinstance(autodiff.log(2.0), float)
        assert not autodiff.is_traced(2.0)
        assert autodiff.primal_value(3) == 3.0

    def test_primal_value_inside_trace(self):
        seen = []

        def record(x):
            seen.append(autodiff.primal_value(x))
            return x * x

        autodiff.value_and_derivative(record, 1.5)
        assert seen == [1.5]

    def test_clamp_drops_derivative(self):
        assert autodiff.clamp(5.0, 0.0, 2.0) == 2.0
        assert autodiff.derivative(lambda x: autodiff.clamp(x, 0.0, 2.0) * 1.0 + 0.0 * x, 5.0) == 0.0
        assert autodiff.derivative(lambda x: autodiff.clamp(x, 0.0, 2.0), 1.0) == 1.0
