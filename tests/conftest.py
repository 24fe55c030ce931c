"""Shared fixtures for the varinfer test suite."""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from varinfer import InferenceConfig, inverse_gamma, model, normal, set_config


@pytest.fixture(autouse=True)
def quiet_config():
    """Every test starts from the default configuration without progress bars."""
    previous = set_config(InferenceConfig(progress=False))
    yield
    set_config(previous)


@pytest.fixture
def base_key():
    return jrand.key(42)


@pytest.fixture
def gdemo():
    """s ~ InverseGamma(2, 3), m ~ Normal(0, sqrt(s)), two observations."""

    @model
    def gdemo(x):
        s = inverse_gamma(2.0, 3.0) @ "s"
        m = normal(0.0, jnp.sqrt(s)) @ "m"
        normal(m, jnp.sqrt(s)).observe(x[0])
        normal(m, jnp.sqrt(s)).observe(x[1])
        return s, m

    return gdemo([1.5, 2.0])


@pytest.fixture
def gdemo_posterior_means():
    """Exact posterior means from the Normal-InverseGamma conjugate update."""
    return {"s": 49.0 / 24.0, "m": 7.0 / 6.0}


@pytest.fixture
def hierarchical_normal():
    """mu ~ Normal(0, 1); y_i ~ Normal(mu, 0.5)."""

    @model
    def hierarchical_normal(ys):
        mu = normal(0.0, 1.0) @ "mu"
        for y in ys:
            normal(mu, 0.5).observe(y)
        return mu

    return hierarchical_normal


def exact_normal_posterior(ys, prior_var=1.0, noise_var=0.25):
    """Posterior mean and variance of mu in `hierarchical_normal`."""
    n = len(ys)
    precision = 1.0 / prior_var + n / noise_var
    return (sum(ys) / noise_var) / precision, 1.0 / precision


@pytest.fixture
def normal_posterior():
    return exact_normal_posterior
