"""Model programs.

A model is a Python function whose random statements are written as
`dist @ "name"` (latent) and `dist.observe(value)` (data). The `@model`
decorator turns it into a `ModelFn`; applying that to data gives a `Model`,
which is executed against a `VarInfo` and an optional active sampler:

    @model
    def gdemo(x):
        s = inverse_gamma(2.0, 3.0) @ "s"
        m = normal(0.0, jnp.sqrt(s)) @ "m"
        normal(m, jnp.sqrt(s)).observe(x[0])
        normal(m, jnp.sqrt(s)).observe(x[1])
        return s, m

    vi = gdemo([1.5, 2.0])()      # one prior execution
"""

from dataclasses import dataclass

import jax.random as jrand

from varinfer import protocol
from varinfer.core import (
    Any,
    Callable,
    Distribution,
    Iterable,
    Pytree,
    Sequence,
    VarName,
    handler_stack,
    seeded,
)
from varinfer.varinfo import VarInfo


@dataclass
class Execution:
    """Handler for one run of a model: forwards every statement to the
    assume/observe protocol with the active sampler and store."""

    vi: VarInfo
    sampler: Any = None

    def assume(self, dist: Distribution, vn: VarName) -> Any:
        r, _ = protocol.assume(self.sampler, dist, vn, self.vi)
        return r

    def assume_vector(self, dists: Sequence[Distribution], vn: VarName) -> Any:
        r, _ = protocol.assume_vector(self.sampler, dists, vn, self.vi)
        return r

    def observe(self, dist: Distribution, value: Any) -> Any:
        protocol.observe(self.sampler, dist, value, self.vi)
        return value

    def observe_vector(self, dists: Sequence[Distribution], values: Any) -> Any:
        protocol.observe_vector(self.sampler, dists, values, self.vi)
        return values


@Pytree.dataclass
class Model(Pytree):
    """A model program bound to its data."""

    source: Callable[..., Any] = Pytree.static()
    args: tuple
    kwargs: dict
    declared: frozenset | None = Pytree.static(default=None)

    @property
    def name(self) -> str:
        return getattr(self.source, "__name__", "model")

    def run(self, handler: Any) -> Any:
        """Execute the program body with `handler` receiving its statements."""
        handler_stack.append(handler)
        try:
            return self.source(*self.args, **self.kwargs)
        finally:
            handler_stack.pop()

    def __call__(self, vi: VarInfo | None = None, sampler: Any = None) -> VarInfo:
        vi = VarInfo() if vi is None else vi
        vi.reset_logp()
        self.run(Execution(vi, sampler))
        return vi

    def parameters(self) -> frozenset:
        """Symbols of the model's latent variables.

        Unless declared up front, they are discovered by one prior execution
        on a scratch store with a fixed key, so no caller's key stream is
        consumed.
        """
        if self.declared is not None:
            return self.declared
        vi = VarInfo()
        with seeded(jrand.key(0)):
            self(vi)
        return frozenset(vn.sym for vn in vi)


@Pytree.dataclass
class ModelFn(Pytree):
    source: Callable[..., Any] = Pytree.static()
    parameters: frozenset | None = Pytree.static(default=None)

    def __call__(self, *args, **kwargs) -> Model:
        return Model(self.source, args, kwargs, self.parameters)


def model(
    fn: Callable[..., Any] | None = None,
    /,
    *,
    parameters: Iterable[str] | None = None,
) -> Any:
    """Decorate a function as a model program.

    `parameters` optionally declares the latent symbols, which otherwise are
    discovered on demand.
    """
    if fn is None:
        return lambda f: model(f, parameters=parameters)
    return ModelFn(fn, frozenset(parameters) if parameters is not None else None)


def runmodel(model: Model, vi: VarInfo, sampler: Any = None) -> VarInfo:
    """Execute `model` once against `vi`, counting the evaluation on the sampler."""
    if sampler is not None:
        sampler.info["total_eval_num"] += 1
    return model(vi, sampler)
