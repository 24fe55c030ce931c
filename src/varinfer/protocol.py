"""The assume/observe protocol.

These are the only two ways a running model touches the inference machinery.
`assume` handles latent variables and dispatches on the active sampler's
algorithm; a `None` sampler means plain prior execution. `observe` scores
fixed data and behaves identically under every algorithm, so samplers
composed together always agree on the likelihood.
"""

import jax.numpy as jnp

from varinfer.core import (
    Any,
    Density,
    Distribution,
    Sequence,
    VarName,
    next_key,
)
from varinfer.varinfo import VarInfo


def assume(
    sampler: Any,
    dist: Distribution,
    vn: VarName,
    vi: VarInfo,
) -> tuple[Any, Density]:
    """Produce the value of latent variable `vn` and charge its log density.

    Returns:
        The value and `logpdf(dist, value)`, which has already been added to
        `vi.logp`.
    """
    if sampler is None:
        return prior_assume(dist, vn, vi)
    return sampler.alg.assume(sampler, dist, vn, vi)


def assume_vector(
    sampler: Any,
    dists: Sequence[Distribution],
    vn: VarName,
    vi: VarInfo,
) -> tuple[Any, Density]:
    if sampler is None:
        return prior_assume_vector(dists, vn, vi)
    return sampler.alg.assume_vector(sampler, dists, vn, vi)


def observe(
    sampler: Any,
    dist: Distribution,
    value: Any,
    vi: VarInfo,
) -> Density:
    """Add `logpdf(dist, value)` to `vi.logp`.

    The sampler is accepted for symmetry with `assume` and ignored. Records
    are never touched: observations are data, not latent state.
    """
    lp = dist.logpdf(value)
    vi.accumulate(lp)
    return lp


def observe_vector(
    sampler: Any,
    dists: Sequence[Distribution],
    values: Any,
    vi: VarInfo,
) -> Density:
    lp = jnp.asarray(0.0)
    for i, dist in enumerate(dists):
        lp = lp + observe(sampler, dist, values[i], vi)
    return lp


####################
# Shared behaviour #
####################


def prior_assume(
    dist: Distribution,
    vn: VarName,
    vi: VarInfo,
    gid: int = 0,
) -> tuple[Any, Density]:
    """Replay the recorded value of `vn`, or draw it from the prior when the
    store has none yet.

    A replayed record is refreshed with the current distribution and
    contribution; its value and owner are kept.
    """
    if vn in vi:
        r = vi[vn]
        lp = dist.logpdf(r)
        vi.write(vn, r, dist, vi.record(vn).gid, lp)
    else:
        r = dist.sample(next_key())
        lp = dist.logpdf(r)
        vi.write(vn, r, dist, gid, lp)
    vi.accumulate(lp)
    return r, lp


def prior_assume_vector(
    dists: Sequence[Distribution],
    vn: VarName,
    vi: VarInfo,
    gid: int = 0,
) -> tuple[Any, Density]:
    values, lp = [], jnp.asarray(0.0)
    for i, dist in enumerate(dists):
        r, lp_i = prior_assume(dist, vn.child(i), vi, gid)
        values.append(r)
        lp = lp + lp_i
    return jnp.stack(values), lp


def in_sampling_space(sampler: Any, vn: VarName) -> bool:
    space = sampler.alg.space
    return not space or vn.sym in space


def record(
    sampler: Any,
    dist: Distribution,
    vn: VarName,
    vi: VarInfo,
    value: Any,
) -> Density:
    """Store `value` under `vn`, owned by the sampler's group, and charge it."""
    lp = dist.logpdf(value)
    vi.write(vn, value, dist, sampler.alg.gid, lp)
    vi.accumulate(lp)
    return lp
