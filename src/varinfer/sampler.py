"""Sampler abstraction and the sampling driver.

Every inference algorithm is an immutable `InferenceAlgorithm` holding its
parameters, and provides the same three operations:

* `propose(model, spl, vi)`: re-run the model to produce a candidate state;
* `step(model, spl, vi, is_first)`: one transition, recording acceptance in
  `spl.info["accept_his"]`;
* `sample(model, ...)`: run a whole chain and return a `Chain`.

A `Sampler` pairs an algorithm with the mutable running state of one chain.
Keeping `{algorithm, info, store}` is enough to continue a chain later, which
is what `save_state=True` and `resume` do.
"""

import copy
import logging
import time
import warnings
from abc import abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum

import jax.numpy as jnp
from tqdm.auto import tqdm

from varinfer import protocol
from varinfer.config import InferenceConfig, get_config
from varinfer.core import (
    Any,
    Array,
    ArrayLike,
    Density,
    Distribution,
    PRNGKey,
    Pytree,
    Sequence,
    VarName,
    next_key,
    seeded,
)
from varinfer.errors import InvalidSamplingSpace, ModelParameterMismatch
from varinfer.model import Model
from varinfer.varinfo import VarInfo

logger = logging.getLogger(__name__)


class Phase(Enum):
    UNINITIALIZED = "uninitialized"
    FIRST_STEP = "first_step"
    STEADY_STATE = "steady_state"
    TERMINATED = "terminated"


@dataclass
class Sampler:
    """Running state of one chain: the algorithm plus a mutable `info` dict."""

    alg: Any
    info: dict
    config: InferenceConfig = field(default_factory=get_config)
    phase: Phase = Phase.UNINITIALIZED
    components: list = field(default_factory=list)

    def owned(self, vi: VarInfo) -> list[VarName]:
        return vi.owned(self.alg.gid, self.alg.space)

    def acceptance_rate(self, last: int | None = None) -> float:
        history = self.info["accept_his"]
        history = history if last is None else history[-last:]
        return sum(history) / len(history) if history else 0.0

    def fork(self) -> "Sampler":
        """An independent copy; stepping it leaves this sampler untouched."""
        return replace(
            self,
            info=copy.deepcopy(self.info),
            components=[c.fork() for c in self.components],
        )


###########
# Results #
###########


@Pytree.dataclass
class Sample(Pytree):
    """An immutable snapshot of a store after one step."""

    weight: ArrayLike
    values: dict

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    @classmethod
    def from_varinfo(cls, vi: VarInfo, weight: ArrayLike) -> "Sample":
        return cls(weight, vi.to_dict() | {"lp": vi.logp})


@dataclass
class SavedState:
    """Everything needed to continue a chain."""

    model: Model
    sampler: Sampler
    vi: VarInfo
    parameters: frozenset


@Pytree.dataclass
class Chain(Pytree):
    """Ordered samples of one run plus run metadata.

    `info["accepted"]` flags which steps were accepted; a rejected step's
    sample is the very object emitted for the step before it.
    """

    weight: ArrayLike
    samples: tuple
    info: dict = Pytree.field(default_factory=dict)
    state: Any = None

    def __len__(self) -> int:
        return len(self.samples)

    def __getitem__(self, name: str) -> Array:
        return jnp.stack([jnp.asarray(s.values[name]) for s in self.samples])

    def names(self) -> list[str]:
        return list(self.samples[0].values) if self.samples else []

    def weights(self) -> Array:
        return jnp.asarray([s.weight for s in self.samples])

    def mean(self, name: str) -> Array:
        return jnp.mean(self[name], axis=0)

    @property
    def acceptance_rate(self) -> Any:
        return self.info.get("acceptance_rate")


##############
# Algorithms #
##############


def check_sampling_space(parameters: frozenset, space: frozenset) -> None:
    """A restricted space must cover every model parameter; extra names only warn."""
    if not parameters <= space:
        raise InvalidSamplingSpace(
            f"symbols specified to samplers ({sorted(space)}) don't cover "
            f"the model parameters ({sorted(parameters)})"
        )
    if space != parameters:
        warnings.warn(
            "extra parameters specified by samplers don't exist in model: "
            f"{sorted(space - parameters)}"
        )


class InferenceAlgorithm(Pytree):
    """Base of the closed set of algorithms (`MH`, `HMC`, `Gibbs`, `IS`, `SMC`).

    Subclasses are `Pytree` dataclasses declaring at least `space` and `gid`.
    """

    def init_info(self) -> dict:
        return {
            "accept_his": [],
            "total_eval_num": 0,
            "proposal_ratio": 0.0,
            "prior_prob": 0.0,
            "violating_support": False,
        }

    def validate(self, model: Model) -> None:
        """Construction-time checks against the model; raise before sampling."""

    def make_sampler(
        self,
        model: Model,
        config: InferenceConfig | None = None,
    ) -> Sampler:
        self.validate(model)
        return Sampler(self, self.init_info(), get_config() if config is None else config)

    def with_gid(self, gid: int) -> "InferenceAlgorithm":
        return replace(self, gid=gid)

    def assume(
        self,
        spl: Sampler,
        dist: Distribution,
        vn: VarName,
        vi: VarInfo,
    ) -> tuple[Any, Density]:
        return protocol.prior_assume(dist, vn, vi, self.gid)

    def assume_vector(
        self,
        spl: Sampler,
        dists: Sequence[Distribution],
        vn: VarName,
        vi: VarInfo,
    ) -> tuple[Any, Density]:
        return protocol.prior_assume_vector(dists, vn, vi, self.gid)

    @abstractmethod
    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        raise NotImplementedError

    @abstractmethod
    def step(self, model: Model, spl: Sampler, vi: VarInfo, is_first: bool) -> VarInfo:
        raise NotImplementedError

    def sample(
        self,
        model: Model,
        *,
        key: PRNGKey | None = None,
        save_state: bool = False,
        resume_from: Chain | None = None,
        reuse_sampler_iterations: int = 0,
        show_progress: bool | None = None,
        config: InferenceConfig | None = None,
    ) -> Chain:
        return run_chain(
            self,
            model,
            key=key,
            save_state=save_state,
            resume_from=resume_from,
            reuse_sampler_iterations=reuse_sampler_iterations,
            show_progress=show_progress,
            config=config,
        )


##########
# Driver #
##########


def check_resumable(model: Model, spl: Sampler, chain: Chain) -> None:
    parameters = model.parameters()
    if chain.state.parameters != parameters:
        raise ModelParameterMismatch(
            f"chain was sampled from a model with parameters "
            f"{sorted(chain.state.parameters)}, got {sorted(parameters)}"
        )
    space = spl.alg.space
    if spl.alg.gid == 0 and space and not parameters <= space:
        raise ModelParameterMismatch(
            f"resumed sampler space {sorted(space)} doesn't cover the model "
            f"parameters {sorted(parameters)}"
        )


def _saved_state(chain: Chain) -> SavedState:
    if chain.state is None:
        raise ValueError("chain holds no saved state; sample it with save_state=True")
    return chain.state


def run_chain(
    alg: InferenceAlgorithm,
    model: Model,
    *,
    key: PRNGKey | None,
    save_state: bool,
    resume_from: Chain | None,
    reuse_sampler_iterations: int,
    show_progress: bool | None,
    config: InferenceConfig | None,
) -> Chain:
    """The Markov chain driver shared by `MH`, `HMC` and `Gibbs`."""
    if reuse_sampler_iterations > 0:
        if resume_from is None:
            raise ValueError("reuse_sampler_iterations requires resume_from")
        spl = _saved_state(resume_from).sampler.fork()
        if config is not None:
            spl.config = config
            for component in spl.components:
                component.config = config
        n = reuse_sampler_iterations
    else:
        spl = alg.make_sampler(model, config)
        n = alg.n_iters
    if n < 1:
        raise ValueError(f"a chain needs at least one iteration, got {n}")
    config = spl.config
    show_progress = config.progress if show_progress is None else show_progress

    if resume_from is not None:
        saved = _saved_state(resume_from)
        check_resumable(model, spl, resume_from)
        vi = saved.vi.copy()
    else:
        vi = VarInfo()

    if key is None:
        key = spl.info["key"] if "key" in spl.info else next_key()

    weight = 1.0 / n
    samples, accepted, elapsed = [], [], []
    with seeded(key) as keys, tqdm(
        total=n, desc="Sampling", disable=not show_progress
    ) as progress:
        for i in range(n):
            spl.phase = Phase.FIRST_STEP if i == 0 else Phase.STEADY_STATE
            start = time.perf_counter()
            vi = spl.alg.step(model, spl, vi, i == 0)
            elapsed.append(time.perf_counter() - start)

            ok = spl.info["accept_his"][-1]
            accepted.append(ok)
            if ok:
                samples.append(Sample.from_varinfo(vi, weight))
            else:
                samples.append(samples[-1])
            progress.update(1)
        spl.info["key"] = keys.key
    spl.phase = Phase.TERMINATED

    rate = sum(accepted) / n
    logger.info("running time: %.3f s", sum(elapsed))
    logger.info("acceptance rate: %.3f", rate)

    info = {
        "accepted": tuple(accepted),
        "elapsed": tuple(elapsed),
        "acceptance_rate": rate,
    }
    previous = ()
    if resume_from is not None:
        previous = resume_from.samples
        info["accepted"] = resume_from.info.get("accepted", ()) + info["accepted"]
        info["elapsed"] = resume_from.info.get("elapsed", ()) + info["elapsed"]

    state = None
    if save_state:
        state = SavedState(model, spl, vi, model.parameters())
    return Chain(jnp.asarray(0.0), previous + tuple(samples), info, state)


def sample(
    model: Model,
    alg: InferenceAlgorithm,
    **options: Any,
) -> Chain:
    """Run `alg` on `model`.

    Options: `key`, `save_state`, `resume_from`, `reuse_sampler_iterations`,
    `show_progress`, `config`.

    Example:
        >>> chain = sample(gdemo([1.5, 2.0]), MH(1000), key=jrand.key(0))
        >>> chain["s"].mean()
    """
    return alg.sample(model, **options)


def resume(chain: Chain, n_iters: int, **options: Any) -> Chain:
    """Continue a chain saved with `save_state=True` for `n_iters` more steps."""
    if n_iters < 1:
        raise ValueError(f"a chain needs at least one iteration, got {n_iters}")
    saved = _saved_state(chain)
    options.setdefault("save_state", True)
    return sample(
        saved.model,
        saved.sampler.alg,
        resume_from=chain,
        reuse_sampler_iterations=n_iters,
        **options,
    )
