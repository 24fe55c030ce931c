"""Gradients of the joint log density.

Two differentiation strategies are available and selected through
`InferenceConfig.backend`:

* ``reverse``: one `jax.value_and_grad` pass, preferred for many latents.
* ``forward``: the gradient is assembled column by column from `jax.jvp`,
  pushing `chunk_size` seed directions at a time under `jax.vmap`. Seed
  blocks are cached per `(dimension, chunk_size)`.

Both compute the same objective; only the method of differentiation changes.
"""

import logging

import jax
import jax.numpy as jnp

from varinfer.config import ADBackend, InferenceConfig, get_config
from varinfer.core import Any, Array, ArrayLike, Callable, Sequence, VarName
from varinfer.varinfo import VarInfo

logger = logging.getLogger(__name__)

_SEEDS: dict[tuple[int, int], tuple] = {}


def seeds(dim: int, chunk_size: int) -> tuple:
    """Blocks of standard basis directions, at most `chunk_size` rows each."""
    key = (dim, chunk_size)
    if key not in _SEEDS:
        logger.debug("building forward-mode seeds for dim=%d chunk=%d", dim, chunk_size)
        eye = jnp.eye(dim)
        _SEEDS[key] = tuple(eye[i : i + chunk_size] for i in range(0, dim, chunk_size))
    return _SEEDS[key]


def forward_gradient(
    objective: Callable[[Array], Any],
    theta: ArrayLike,
    chunk_size: int,
) -> tuple[Any, Array]:
    theta = jnp.asarray(theta)
    dim = theta.shape[0]
    if dim == 0:
        return objective(theta), jnp.zeros((0,))

    def push(tangent):
        return jax.jvp(objective, (theta,), (tangent,))

    value, columns = None, []
    for block in seeds(dim, chunk_size):
        values, tangents = jax.vmap(push)(block)
        value = values[0]
        columns.append(tangents)
    return value, jnp.concatenate(columns)


def reverse_gradient(
    objective: Callable[[Array], Any],
    theta: ArrayLike,
) -> tuple[Any, Array]:
    return jax.value_and_grad(objective)(jnp.asarray(theta))


def gradient(
    objective: Callable[[Array], Any],
    theta: ArrayLike,
    config: InferenceConfig | None = None,
) -> tuple[Any, Array]:
    """Value and gradient of `objective` at `theta` with the configured backend.

    In safe mode the computation runs under `jax.debug_nans`, so a NaN
    raises `FloatingPointError` instead of propagating.
    """
    config = get_config() if config is None else config

    def run():
        if config.backend == ADBackend.FORWARD:
            return forward_gradient(objective, theta, config.chunk_size)
        return reverse_gradient(objective, theta)

    if config.ad_safe:
        with jax.debug_nans(True):
            return run()
    return run()


def log_density_fn(
    model: Any,
    vi: VarInfo,
    names: Sequence[VarName],
) -> Callable[[Array], Any]:
    """The joint log density as a function of the flattened values of `names`.

    Every evaluation runs the model on a private copy of `vi`, so the store
    itself is never touched by differentiation.
    """

    def objective(theta):
        scratch = vi.copy()
        scratch.unflatten(names, theta)
        return model(scratch, None).logp

    return objective
