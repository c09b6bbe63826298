"""
Forward-mode derivatives of scalar residuals with JAX.

Residuals are written once with the helpers below. Handed a plain float
they use ``math``; handed a JAX value (a tracer inside ``jax.jvp``) they
use ``jax.numpy``. Nothing is jitted, so ordinary Python branching on the
value of a tracer still works.
"""

import math

import jax
import jax.numpy as jnp
import numpy as np

# Stresses and strain increments differ by ten orders of magnitude
jax.config.update("jax_enable_x64", True)


def is_traced(x):
    return isinstance(x, jax.Array)


def array_module(x):
    """``jax.numpy`` for JAX values, ``numpy`` otherwise."""
    return jnp if is_traced(x) else np


def primal_value(x):
    """Plain float of a float, a JAX array or a JVP tracer."""
    while hasattr(x, 'primal'):
        x = x.primal
    return float(x)


def value_and_derivative(fn, x):
    """
    Evaluate ``fn`` and its derivative at a float ``x``.

    Returns:
        (value, derivative) as floats
    """
    primal = jnp.asarray(float(x))
    value, tangent = jax.jvp(fn, (primal,), (jnp.ones_like(primal),))
    return float(value), float(tangent)


def derivative(fn, x):
    """d fn / dx at a float ``x``."""
    return value_and_derivative(fn, x)[1]


def exp(x):
    return jnp.exp(x) if is_traced(x) else math.exp(x)


def log(x):
    return jnp.log(x) if is_traced(x) else math.log(x)


def sqrt(x):
    return jnp.sqrt(x) if is_traced(x) else math.sqrt(x)


def cos(x):
    return jnp.cos(x) if is_traced(x) else math.cos(x)


def clamp(x, lower, upper):
    """Clamp to [lower, upper]; a clamped value is a constant float."""
    if x < lower:
        return lower
    if x > upper:
        return upper
    return x
