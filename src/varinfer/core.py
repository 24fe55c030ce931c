import contextvars
import itertools as it
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from typing import overload

import beartype.typing as btyping
import jax.numpy as jnp
import jax.random as jrand
import jaxtyping as jtyping
import penzai.pz as pz
from tensorflow_probability.substrates import jax as tfp
from typing_extensions import dataclass_transform

tfd = tfp.distributions

##########
# Typing #
##########

Any = btyping.Any
Addr = btyping.Tuple | str
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
Callable = btyping.Callable
Sequence = btyping.Sequence
Iterable = btyping.Iterable
Iterator = btyping.Iterator
Optional = btyping.Optional
TypeVar = btyping.TypeVar

R = TypeVar("R")

#######################
# Probabilistic types #
#######################

Weight = ArrayLike
Density = ArrayLike

##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system, so instances can cross `jax.grad`, `jax.vmap` and `jax.tree_util`
    boundaries.

    * `Pytree.static(...)`: the field holds a Python literal or constant and
    is embedded in the `PyTreeDef`.
    * `Pytree.field(...)` or no annotation: the field may hold JAX values.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """Declare a `Pytree` subclass as an immutable dataclass.

        Examples
        --------

        ```{python}
        @Pytree.dataclass
        class Record(Pytree):
            shape: tuple = Pytree.static()
            value: ArrayLike
        ```
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic."""
        return field(**kwargs)


#############
# Addresses #
#############


@dataclass(frozen=True)
class VarName:
    """Identifier of a random variable: a symbol plus an optional index.

    `VarName("s")` prints as `s`, `VarName("x", (1,))` as `x[1]`. Two
    variables with the same identifier denote the same latent quantity across
    executions of a model with the same structure.
    """

    sym: str
    index: tuple = ()

    def __str__(self) -> str:
        if not self.index:
            return self.sym
        return f"{self.sym}[{','.join(str(i) for i in self.index)}]"

    def child(self, i: int) -> "VarName":
        return VarName(self.sym, self.index + (i,))

    @staticmethod
    def parse(addr: "Addr | VarName") -> "VarName":
        if isinstance(addr, VarName):
            return addr
        if isinstance(addr, str):
            return VarName(addr)
        sym, *index = addr
        return VarName(sym, tuple(int(i) for i in index))


##################
# Context stacks #
##################


class ContextStack:
    """A stack whose contents are private to the running thread or task.

    Pushes made on one thread are invisible to every other thread.
    """

    def __init__(self, name: str):
        self._items = contextvars.ContextVar(name, default=())

    def append(self, item: Any) -> None:
        self._items.set(self._items.get() + (item,))

    def pop(self) -> Any:
        items = self._items.get()
        self._items.set(items[:-1])
        return items[-1]

    def __getitem__(self, index: int) -> Any:
        return self._items.get()[index]

    def __len__(self) -> int:
        return len(self._items.get())


########################
# Randomness (seeding) #
########################


@dataclass
class KeySource:
    """Mutable PRNG key stream: every call splits off a fresh subkey."""

    key: PRNGKey

    def __call__(self) -> PRNGKey:
        self.key, sub = jrand.split(self.key)
        return sub


class GlobalKeyCounter:
    count: int = 0


# Fallback source of keys when no `seeded` block is active.
global_counter = GlobalKeyCounter()

key_stack = ContextStack("key_stack")


@contextmanager
def seeded(key: PRNGKey) -> Iterator[KeySource]:
    """Route every draw made inside the block through a stream seeded by `key`."""
    source = KeySource(key)
    key_stack.append(source)
    try:
        yield source
    finally:
        key_stack.pop()


def next_key() -> PRNGKey:
    if key_stack:
        return key_stack[-1]()
    global_counter.count += 1
    return jrand.key(global_counter.count)


def seed(f: Callable[..., R]) -> Callable[..., R]:
    """Transform a function to accept an explicit PRNG key as first argument.

    Example:
        >>> seeded_model = seed(gdemo([1.5, 2.0]))
        >>> vi = seeded_model(jrand.key(0))
    """

    @wraps(f)
    def wrapped(key: PRNGKey, *args, **kwargs):
        with seeded(key):
            return f(*args, **kwargs)

    return wrapped


#################
# Distributions #
#################


@Pytree.dataclass
class Family(Pytree):
    """A parametric family of distributions backed by TensorFlow Probability.

    Calling a family with parameters returns a `Distribution`. `support` is
    the closed interval `(lower, upper)` that values must lie in; samplers
    use it to detect proposals that leave the support.
    """

    maker: Callable[..., Any] = Pytree.static()
    name: str = Pytree.static()
    support: tuple = Pytree.static(default=(-jnp.inf, jnp.inf))

    def __call__(self, *args, **kwargs) -> "Distribution":
        return Distribution(self, args, kwargs)


@Pytree.dataclass
class Distribution(Pytree):
    """A member of a `Family`, with its parameters bound.

    Inside a model, `dist @ "x"` declares the latent variable `x` and
    `dist.observe(value)` scores a fixed datum; both are routed to whichever
    sampler is executing the model.
    """

    family: Family = Pytree.static()
    args: tuple
    kwargs: dict

    @property
    def name(self) -> str:
        return self.family.name

    @property
    def support(self) -> tuple:
        return self.family.support

    def tfd(self) -> Any:
        return self.family.maker(*self.args, **self.kwargs)

    def sample(self, key: PRNGKey) -> Array:
        return self.tfd().sample(seed=key)

    def logpdf(self, x: ArrayLike) -> Density:
        return jnp.sum(self.tfd().log_prob(x))

    def in_support(self, x: ArrayLike) -> bool:
        lower, upper = self.support
        x = jnp.asarray(x)
        return bool(jnp.all((x >= lower) & (x <= upper)))

    def __matmul__(self, addr: "Addr | VarName") -> Any:
        return assume_site(self, addr)

    def observe(self, value: Any) -> Any:
        return observe_site(self, value)


@Pytree.dataclass
class DistributionVector(Pytree):
    """A vector of distributions used in one statement, e.g. `iid(normal(0, 1), 3) @ "x"`."""

    dists: tuple

    def __len__(self) -> int:
        return len(self.dists)

    def __matmul__(self, addr: "Addr | VarName") -> Any:
        return assume_site(self, addr)

    def observe(self, values: Any) -> Any:
        return observe_site(self, values)


def stack(dists: Sequence[Distribution]) -> DistributionVector:
    return DistributionVector(tuple(dists))


def iid(dist: Distribution, n: int) -> DistributionVector:
    return DistributionVector(tuple(it.repeat(dist, n)))


# Mostly, just use TFP.
def tfp_distribution(
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str,
    support: tuple = (-jnp.inf, jnp.inf),
) -> Family:
    return Family(dist, name, support)


#################
# Handler stack #
#################

# The innermost model execution context receives every random statement.
handler_stack = ContextStack("handler_stack")


def assume_site(dist: Distribution | DistributionVector, addr: "Addr | VarName") -> Any:
    vn = VarName.parse(addr)
    if not handler_stack:
        # Outside of any model execution: a plain forward draw.
        if isinstance(dist, DistributionVector):
            return jnp.stack([d.sample(next_key()) for d in dist.dists])
        return dist.sample(next_key())
    handler = handler_stack[-1]
    if isinstance(dist, DistributionVector):
        return handler.assume_vector(dist.dists, vn)
    return handler.assume(dist, vn)


def observe_site(dist: Distribution | DistributionVector, value: Any) -> Any:
    if not handler_stack:
        return value
    handler = handler_stack[-1]
    if isinstance(dist, DistributionVector):
        return handler.observe_vector(dist.dists, value)
    return handler.observe(dist, value)
