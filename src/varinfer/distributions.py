"""Standard probability distributions for varinfer.

Each entry is a `Family` built on TensorFlow Probability's JAX substrate.
Families declare their support so samplers can tell when a proposal leaves
it.
"""

import jax.numpy as jnp
from tensorflow_probability.substrates import jax as tfp

from varinfer.core import tfp_distribution

tfd = tfp.distributions

POSITIVE = (0.0, jnp.inf)
UNIT = (0.0, 1.0)

# Discrete distributions
bernoulli = tfp_distribution(
    tfd.Bernoulli,
    name="Bernoulli",
    support=UNIT,
)
"""Bernoulli distribution for binary outcomes.

Args:
    logits: Log-odds of success, or
    probs: Probability of success.
"""

flip = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.bool_),
    name="Flip",
    support=UNIT,
)
"""Flip distribution (Bernoulli with boolean output).

Args:
    p: Probability of True outcome.
"""

categorical = tfp_distribution(
    lambda logits: tfd.Categorical(logits),
    name="Categorical",
    support=(0, jnp.inf),
)
"""Categorical distribution over discrete outcomes.

Args:
    logits: Log-probabilities for each category.
"""

poisson = tfp_distribution(
    tfd.Poisson,
    name="Poisson",
    support=POSITIVE,
)
"""Poisson distribution for count data.

Args:
    rate: Expected number of events.
"""

# Continuous distributions
normal = tfp_distribution(
    tfd.Normal,
    name="Normal",
)
"""Normal (Gaussian) distribution.

Args:
    loc: Mean of the distribution.
    scale: Standard deviation (> 0).
"""

uniform = tfp_distribution(
    tfd.Uniform,
    name="Uniform",
)
"""Uniform distribution on an interval.

The family-level support is unbounded; a draw outside `[low, high]` scores
`-inf` and is rejected by the acceptance test.

Args:
    low: Lower bound of the distribution.
    high: Upper bound of the distribution.
"""

beta = tfp_distribution(
    tfd.Beta,
    name="Beta",
    support=UNIT,
)
"""Beta distribution on the interval [0, 1].

Args:
    concentration1: Alpha parameter (> 0).
    concentration0: Beta parameter (> 0).
"""

exponential = tfp_distribution(
    tfd.Exponential,
    name="Exponential",
    support=POSITIVE,
)
"""Exponential distribution for positive continuous values.

Args:
    rate: Rate parameter (> 0).
"""

gamma = tfp_distribution(
    tfd.Gamma,
    name="Gamma",
    support=POSITIVE,
)
"""Gamma distribution for positive continuous values.

Args:
    concentration: Shape parameter (alpha > 0).
    rate: Rate parameter (beta > 0).
"""

inverse_gamma = tfp_distribution(
    tfd.InverseGamma,
    name="InverseGamma",
    support=POSITIVE,
)
"""Inverse gamma distribution, the conjugate prior of a Normal variance.

Args:
    concentration: Shape parameter (alpha > 0).
    scale: Scale parameter (beta > 0).
"""

log_normal = tfp_distribution(
    tfd.LogNormal,
    name="LogNormal",
    support=POSITIVE,
)

half_normal = tfp_distribution(
    tfd.HalfNormal,
    name="HalfNormal",
    support=POSITIVE,
)

student_t = tfp_distribution(
    tfd.StudentT,
    name="StudentT",
)

laplace = tfp_distribution(
    tfd.Laplace,
    name="Laplace",
)

cauchy = tfp_distribution(
    tfd.Cauchy,
    name="Cauchy",
)

multivariate_normal = tfp_distribution(
    lambda loc, covariance_matrix: tfd.MultivariateNormalTriL(
        loc, jnp.linalg.cholesky(covariance_matrix)
    ),
    name="MultivariateNormal",
)
"""Multivariate normal distribution.

Args:
    loc: Mean vector.
    covariance_matrix: Covariance matrix (positive definite).
"""
