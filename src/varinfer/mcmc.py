"""
Markov chain Monte Carlo algorithms.

`MH` is the reference algorithm: it re-executes the model with itself as the
active sampler, and its `assume` proposes a new value for every variable it
owns. `HMC` moves the flattened owned latents along a leapfrog trajectory
using the configured gradient backend. `Gibbs` composes algorithms over
disjoint groups of variables.

All three share the Metropolis step of `MetropolisAlgorithm`:

    α = logp(new) - logp(old) + proposal_ratio

accepted iff `log u < α` and no proposal left its distribution's support.
A rejection restores the owned records and `logp` exactly.
"""

import logging

import jax.numpy as jnp
import jax.random as jrand
from jax.scipy.special import ndtr

from varinfer import protocol
from varinfer.ad import gradient, log_density_fn
from varinfer.core import (
    Any,
    Density,
    Distribution,
    Pytree,
    Sequence,
    VarName,
    next_key,
)
from varinfer.errors import (
    InvalidSamplingSpace,
    MissingVariable,
    SupportViolation,
    UnsupportedVectorAssume,
)
from varinfer.model import Model, runmodel
from varinfer.sampler import InferenceAlgorithm, Sampler, check_sampling_space
from varinfer.varinfo import VarInfo

logger = logging.getLogger(__name__)


class MetropolisAlgorithm(InferenceAlgorithm):
    """Shared accept/reject step of the Markov chain algorithms."""

    def validate(self, model: Model) -> None:
        if self.gid == 0 and self.space:
            check_sampling_space(model.parameters(), self.space)

    def assume_vector(
        self,
        spl: Sampler,
        dists: Sequence[Distribution],
        vn: VarName,
        vi: VarInfo,
    ) -> tuple[Any, Density]:
        raise UnsupportedVectorAssume(
            f"{type(self).__name__} does not support vector assume for {vn}; "
            "declare each entry with its own statement"
        )

    def step(self, model: Model, spl: Sampler, vi: VarInfo, is_first: bool) -> VarInfo:
        info = spl.info
        if is_first:
            runmodel(model, vi, None)
            info["accept_his"].append(True)
            return vi

        if self.gid != 0:
            # Other groups may have moved since this group last scored the joint.
            runmodel(model, vi, None)

        old_values = vi.values_of(self.gid, self.space)
        old_logp = vi.logp
        info["proposal_ratio"] = 0.0
        info["prior_prob"] = 0.0
        info["violating_support"] = False

        try:
            vi = self.propose(model, spl, vi)
        except SupportViolation as e:
            spl.config.debug(logger, 1, "proposal rejected: %s", e)
            info["violating_support"] = True

        alpha = vi.logp - old_logp + info["proposal_ratio"]
        u = jrand.uniform(next_key())
        accepted = bool(jnp.log(u) < alpha) and not info["violating_support"]
        spl.config.debug(
            logger,
            1,
            "gid=%d log alpha=%s proposal ratio=%s accepted=%s",
            self.gid,
            alpha,
            info["proposal_ratio"],
            accepted,
        )
        if not accepted:
            vi.restore_values(old_values)
            vi.set_logp(old_logp)
        info["accept_his"].append(accepted)
        return vi


######
# MH #
######


def _log_mass(dist: Distribution, lower: float, upper: float) -> Density:
    """Log probability mass a Normal proposal puts on `[lower, upper]`."""
    d = dist.tfd()
    a = (lower - d.loc) / d.scale
    b = (upper - d.loc) / d.scale
    return jnp.sum(jnp.log(ndtr(b) - ndtr(a)))


@Pytree.dataclass
class MH(MetropolisAlgorithm):
    """Metropolis-Hastings.

    Without a custom proposal a variable is proposed from its prior. A custom
    proposal is a function from the current value to a `Distribution`;
    Normal proposals are truncated to the support of the target.

    Example:
        >>> alg = MH.from_space(1000, "s", ("m", lambda m: normal(m, 0.5)))
    """

    n_iters: int = Pytree.static()
    proposals: tuple = Pytree.static(default=())
    space: frozenset = Pytree.static(default=frozenset())
    gid: int = Pytree.static(default=0)

    @classmethod
    def from_space(cls, n_iters: int, *space: Any) -> "MH":
        """Build from symbols and `(symbol, proposal)` pairs."""
        syms, proposals = [], []
        for entry in space:
            if isinstance(entry, str):
                syms.append(entry)
            else:
                sym, proposal = entry
                syms.append(sym)
                proposals.append((sym, proposal))
        return cls(n_iters, tuple(proposals), frozenset(syms))

    def proposal_for(self, sym: str) -> Any:
        for name, proposal in self.proposals:
            if name == sym:
                return proposal
        return None

    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        return runmodel(model, vi, spl)

    def assume(
        self,
        spl: Sampler,
        dist: Distribution,
        vn: VarName,
        vi: VarInfo,
    ) -> tuple[Any, Density]:
        if vn not in vi:
            raise MissingVariable(
                f"{vn} has no value to propose from; models whose set of "
                "variables changes between executions are not supported"
            )
        old = vi[vn]
        if not protocol.in_sampling_space(spl, vn):
            lp = dist.logpdf(old)
            vi.accumulate(lp)
            return old, lp

        proposal = self.proposal_for(vn.sym)
        if proposal is None:
            # Prior as proposal: the reverse density is the old value's
            # contribution under the state it was last scored in.
            r = dist.sample(next_key())
            ratio = vi.record(vn).logp - dist.logpdf(r)
        else:
            r, ratio = self.propose_custom(spl, proposal, dist, old)
        spl.info["proposal_ratio"] = spl.info["proposal_ratio"] + ratio
        spl.config.debug(logger, 2, "propose %s: %s -> %s", vn, old, r)

        lp = protocol.record(spl, dist, vn, vi, r)
        spl.info["prior_prob"] = spl.info["prior_prob"] + lp
        return r, lp

    def propose_custom(
        self,
        spl: Sampler,
        proposal: Any,
        dist: Distribution,
        old: Any,
    ) -> tuple[Any, Density]:
        """Draw from `proposal(old)` and return the value with its log
        proposal ratio `log q(old | r) - log q(r | old)`."""
        forward = proposal(old)
        lower, upper = dist.support

        if forward.name == "Normal":
            if jnp.isinf(lower) and jnp.isinf(upper):
                r = forward.sample(next_key())
                return r, proposal(r).logpdf(old) - forward.logpdf(r)
            d = forward.tfd()
            shape = jnp.broadcast_shapes(jnp.shape(d.loc), jnp.shape(d.scale))
            z = jrand.truncated_normal(
                next_key(),
                (lower - d.loc) / d.scale,
                (upper - d.loc) / d.scale,
                shape,
            )
            r = d.loc + d.scale * z
            reverse = proposal(r)
            ratio = (reverse.logpdf(old) - _log_mass(reverse, lower, upper)) - (
                forward.logpdf(r) - _log_mass(forward, lower, upper)
            )
            return r, ratio

        r = forward.sample(next_key())
        if not dist.in_support(r):
            spl.info["violating_support"] = True
            r = old
        return r, proposal(r).logpdf(old) - forward.logpdf(r)


#######
# HMC #
#######


@Pytree.dataclass
class HMC(MetropolisAlgorithm):
    """Hamiltonian Monte Carlo with a fixed number of leapfrog steps.

    Owned latents are moved jointly in their natural (untransformed)
    parameterization; a trajectory that leaves a distribution's support is
    rejected.
    """

    n_iters: int = Pytree.static()
    step_size: float = Pytree.static()
    n_leapfrog: int = Pytree.static()
    space: frozenset = Pytree.static(default=frozenset())
    gid: int = Pytree.static(default=0)

    @classmethod
    def from_space(
        cls,
        n_iters: int,
        step_size: float,
        n_leapfrog: int,
        *space: str,
    ) -> "HMC":
        return cls(n_iters, step_size, n_leapfrog, frozenset(space))

    def check_support(self, vi: VarInfo, names: Sequence[VarName], theta: Any) -> None:
        offset = 0
        for vn in names:
            r = vi.record(vn)
            size = r.value.size
            if not r.dist.in_support(theta[offset : offset + size]):
                raise SupportViolation(f"leapfrog moved {vn} outside the support of {r.dist.name}")
            offset += size

    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        names = spl.owned(vi)
        objective = log_density_fn(model, vi, names)
        theta = vi.flatten(names)
        p0 = jrand.normal(next_key(), theta.shape)
        eps = self.step_size

        _, grad = gradient(objective, theta, spl.config)
        p = p0 + 0.5 * eps * grad
        for i in range(self.n_leapfrog):
            theta = theta + eps * p
            self.check_support(vi, names, theta)
            _, grad = gradient(objective, theta, spl.config)
            if i < self.n_leapfrog - 1:
                p = p + eps * grad
        p = p + 0.5 * eps * grad

        vi.unflatten(names, theta)
        runmodel(model, vi, spl)
        spl.info["proposal_ratio"] = 0.5 * jnp.sum(p0**2) - 0.5 * jnp.sum(p**2)
        return vi

    def assume(
        self,
        spl: Sampler,
        dist: Distribution,
        vn: VarName,
        vi: VarInfo,
    ) -> tuple[Any, Density]:
        if vn not in vi:
            raise MissingVariable(f"{vn} has no value to integrate from")
        r = vi[vn]
        if not protocol.in_sampling_space(spl, vn):
            lp = dist.logpdf(r)
            vi.accumulate(lp)
            return r, lp
        lp = protocol.record(spl, dist, vn, vi, r)
        spl.info["prior_prob"] = spl.info["prior_prob"] + lp
        return r, lp


#########
# Gibbs #
#########


@Pytree.dataclass
class Gibbs(InferenceAlgorithm):
    """Run each component algorithm in turn on its own group of variables.

    Component `i` owns group id `i + 1`. Every Gibbs step runs each
    component for its own `n_iters` steps.

    Example:
        >>> alg = Gibbs(500, (MH.from_space(1, "s"), HMC.from_space(2, 0.1, 5, "m")))
    """

    n_iters: int = Pytree.static()
    algs: tuple
    gid: int = Pytree.static(default=0)

    @property
    def space(self) -> frozenset:
        return frozenset().union(*(alg.space for alg in self.algs))

    def validate(self, model: Model) -> None:
        parameters = model.parameters()
        for alg in self.algs:
            if not alg.space:
                raise InvalidSamplingSpace(
                    f"{type(alg).__name__} inside Gibbs must name the variables it samples"
                )
            if not alg.space <= parameters:
                raise InvalidSamplingSpace(
                    f"{type(alg).__name__} names {sorted(alg.space - parameters)}, "
                    "which are not parameters of the model"
                )
        if not parameters <= self.space:
            raise InvalidSamplingSpace(
                f"Gibbs components leave {sorted(parameters - self.space)} unsampled"
            )

    def make_sampler(self, model: Model, config: Any = None) -> Sampler:
        spl = super().make_sampler(model, config)
        spl.components = [
            alg.with_gid(i + 1).make_sampler(model, spl.config)
            for i, alg in enumerate(self.algs)
        ]
        return spl

    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        for component in spl.components:
            for _ in range(component.alg.n_iters):
                vi = component.alg.step(model, component, vi, False)
        return vi

    def step(self, model: Model, spl: Sampler, vi: VarInfo, is_first: bool) -> VarInfo:
        if is_first:
            runmodel(model, vi, None)
        else:
            vi = self.propose(model, spl, vi)
        spl.info["accept_his"].append(True)
        return vi
