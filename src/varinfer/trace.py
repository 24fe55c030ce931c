"""Forkable model executions for particle methods.

A `Trace` runs its model up to the next `observe` statement that has not
been scored yet, scores it and suspends. Resuming replays the program from
the start against the trace's own store: latent variables already drawn are
returned from their records, and observations already passed are re-scored
without suspending, so `vi.logp` is always the joint density of everything
executed so far. Forking therefore only needs a copy of the store and of the
resumption point.
"""

from dataclasses import dataclass, field

import jax.numpy as jnp
import jax.scipy.special

from varinfer import protocol
from varinfer.core import Any, Array, Density, Distribution, PRNGKey, Sequence, next_key
from varinfer.model import Execution, Model
from varinfer.varinfo import VarInfo


class Suspend(BaseException):
    """Raised at a suspension point to unwind the model body.

    Derives from `BaseException` so `except Exception` blocks in user models
    do not intercept it.
    """

    def __init__(self, increment: Density):
        super().__init__()
        self.increment = increment


@dataclass
class TraceExecution(Execution):
    cursor: int = 0
    seen: int = 0

    def observe(self, dist: Distribution, value: Any) -> Any:
        lp = protocol.observe(self.sampler, dist, value, self.vi)
        self.seen += 1
        if self.seen > self.cursor:
            raise Suspend(lp)
        return value

    def observe_vector(self, dists: Sequence[Distribution], values: Any) -> Any:
        for i, dist in enumerate(dists):
            self.observe(dist, values[i])
        return values


@dataclass
class Trace:
    model: Model
    vi: VarInfo = field(default_factory=VarInfo)
    sampler: Any = None
    cursor: int = 0
    finished: bool = False
    retval: Any = None

    def advance(self) -> Density:
        """Run to the next unscored observation and return its log-likelihood,
        or `0.0` once the model has run to completion."""
        if self.finished:
            return jnp.asarray(0.0)
        self.vi.reset_logp()
        execution = TraceExecution(self.vi, self.sampler, self.cursor)
        try:
            self.retval = self.model.run(execution)
        except Suspend as s:
            self.cursor += 1
            return s.increment
        self.finished = True
        return jnp.asarray(0.0)

    def fork(self) -> "Trace":
        """An independent copy; advancing either side never affects the other."""
        return Trace(
            self.model,
            self.vi.copy(),
            self.sampler,
            self.cursor,
            self.finished,
            self.retval,
        )


@dataclass
class ParticleContainer:
    traces: list
    log_weights: Array
    log_z: Array = field(default_factory=lambda: jnp.asarray(0.0))

    def __len__(self) -> int:
        return len(self.traces)

    @classmethod
    def from_model(cls, model: Model, n: int, sampler: Any = None) -> "ParticleContainer":
        return cls([Trace(model, VarInfo(), sampler) for _ in range(n)], jnp.zeros(n))

    @property
    def finished(self) -> list[bool]:
        return [t.finished for t in self.traces]

    def advance(self) -> Array:
        increments = jnp.stack([jnp.asarray(t.advance()) for t in self.traces])
        self.log_weights = self.log_weights + increments
        return increments

    def ess(self) -> Array:
        from varinfer.smc import effective_sample_size

        return effective_sample_size(self.log_weights)

    def normalized_weights(self) -> Array:
        return jnp.exp(self.log_weights - jax.scipy.special.logsumexp(self.log_weights))

    def log_evidence(self) -> Array:
        """Running estimate of the log marginal likelihood."""
        current = jax.scipy.special.logsumexp(self.log_weights) - jnp.log(len(self))
        return self.log_z + current

    def resample(self, method: str = "systematic", key: PRNGKey | None = None) -> Array:
        """Replace the particles by forks of ancestors drawn by weight.

        Weights reset to uniform; their average is folded into the evidence.
        Returns the ancestor indices.
        """
        from varinfer.smc import resample_indices

        key = next_key() if key is None else key
        self.log_z = self.log_evidence()
        indices = resample_indices(method, key, self.log_weights, len(self))
        self.traces = [self.traces[int(i)].fork() for i in indices]
        self.log_weights = jnp.zeros(len(self))
        return indices
