"""
Importance sampling and sequential Monte Carlo.

Both algorithms draw latent variables from the prior and weight particles by
the likelihood of the observations. `SMC` advances a population of `Trace`s
one observation at a time and resamples whenever the effective sample size
drops below a fraction of the population.
"""

import logging

import jax.numpy as jnp
import jax.random as jrand
import jax.scipy.special
from tqdm.auto import tqdm

from varinfer.config import InferenceConfig
from varinfer.core import Array, PRNGKey, Pytree, next_key, seeded
from varinfer.model import Model, runmodel
from varinfer.sampler import Chain, InferenceAlgorithm, Sample, Sampler
from varinfer.trace import ParticleContainer
from varinfer.varinfo import VarInfo

logger = logging.getLogger(__name__)


def effective_sample_size(log_weights: Array) -> Array:
    """
    Compute the effective sample size from log importance weights.

    Args:
        log_weights: Array of log importance weights

    Returns:
        Effective sample size in [1, num_samples]
    """
    log_weights_normalized = log_weights - jax.scipy.special.logsumexp(log_weights)
    weights_normalized = jnp.exp(log_weights_normalized)
    return 1.0 / jnp.sum(weights_normalized**2)


def systematic_resample(key: PRNGKey, log_weights: Array, n_samples: int) -> Array:
    """
    Systematic resampling: one uniform offset, `n_samples` evenly spaced positions.

    Returns:
        Array of ancestor indices
    """
    log_weights_normalized = log_weights - jax.scipy.special.logsumexp(log_weights)
    weights = jnp.exp(log_weights_normalized)

    u = jrand.uniform(key)
    positions = (jnp.arange(n_samples) + u) / n_samples
    cumsum = jnp.cumsum(weights)

    indices = jnp.searchsorted(cumsum, positions)
    return jnp.minimum(indices, len(log_weights) - 1)


def categorical_resample(key: PRNGKey, log_weights: Array, n_samples: int) -> Array:
    return jrand.categorical(key, log_weights, shape=(n_samples,))


def resample_indices(
    method: str,
    key: PRNGKey,
    log_weights: Array,
    n_samples: int,
) -> Array:
    if method == "categorical":
        return categorical_resample(key, log_weights, n_samples)
    elif method == "systematic":
        return systematic_resample(key, log_weights, n_samples)
    else:
        raise ValueError(f"Unknown resampling method: {method}")


def _check_unsupported(resume_from: Chain | None, reuse_sampler_iterations: int) -> None:
    if resume_from is not None or reuse_sampler_iterations:
        raise ValueError("particle algorithms cannot resume a chain")


def _check_population(n_particles: int) -> None:
    if n_particles < 1:
        raise ValueError(f"need at least one particle, got {n_particles}")


def _likelihood(vi: VarInfo) -> Array:
    """Joint minus prior: the log-density of the observations alone."""
    prior = jnp.asarray(0.0)
    for vn in vi:
        prior = prior + vi.record(vn).logp
    return vi.logp - prior


######
# IS #
######


@Pytree.dataclass
class IS(InferenceAlgorithm):
    """Importance sampling with the prior as proposal.

    The returned chain's `weight` is the log marginal likelihood estimate and
    each sample carries its normalized importance weight.
    """

    n_particles: int = Pytree.static()
    space: frozenset = Pytree.static(default=frozenset())
    gid: int = Pytree.static(default=0)

    def validate(self, model: Model) -> None:
        _check_population(self.n_particles)

    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        return runmodel(model, vi, spl)

    def step(self, model: Model, spl: Sampler, vi: VarInfo, is_first: bool) -> VarInfo:
        vi = self.propose(model, spl, vi)
        spl.info["accept_his"].append(True)
        return vi

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
        _check_unsupported(resume_from, reuse_sampler_iterations)
        spl = self.make_sampler(model, config)
        show_progress = spl.config.progress if show_progress is None else show_progress
        key = next_key() if key is None else key

        stores, log_weights = [], []
        with seeded(key), tqdm(
            total=self.n_particles, desc="Importance sampling", disable=not show_progress
        ) as progress:
            for i in range(self.n_particles):
                vi = self.step(model, spl, VarInfo(), i == 0)
                stores.append(vi)
                log_weights.append(_likelihood(vi))
                progress.update(1)

        log_weights = jnp.stack(log_weights)
        log_norm = jax.scipy.special.logsumexp(log_weights)
        log_evidence = log_norm - jnp.log(self.n_particles)
        weights = jnp.exp(log_weights - log_norm)
        logger.info("log evidence: %.4f", float(log_evidence))

        samples = tuple(Sample.from_varinfo(vi, w) for vi, w in zip(stores, weights))
        info = {
            "log_evidence": log_evidence,
            "log_weights": log_weights,
            "ess": effective_sample_size(log_weights),
        }
        return Chain(log_evidence, samples, info)


#######
# SMC #
#######


@Pytree.dataclass
class SMC(InferenceAlgorithm):
    """Sequential Monte Carlo with the prior as proposal.

    Particles are advanced observation by observation. After each
    observation the population is resampled if its effective sample size is
    below `resample_threshold * n_particles`. Every particle must make the
    same number of observations.
    """

    n_particles: int = Pytree.static()
    resampler: str = Pytree.static(default="systematic")
    resample_threshold: float = Pytree.static(default=0.5)
    space: frozenset = Pytree.static(default=frozenset())
    gid: int = Pytree.static(default=0)

    def validate(self, model: Model) -> None:
        _check_population(self.n_particles)
        if self.resampler not in ("systematic", "categorical"):
            raise ValueError(f"Unknown resampling method: {self.resampler}")

    def propose(self, model: Model, spl: Sampler, vi: VarInfo) -> VarInfo:
        return runmodel(model, vi, spl)

    def step(self, model: Model, spl: Sampler, vi: VarInfo, is_first: bool) -> VarInfo:
        return self.propose(model, spl, vi)

    def run(self, model: Model, spl: Sampler, show_progress: bool) -> ParticleContainer:
        particles = ParticleContainer.from_model(model, self.n_particles, spl)
        n_observations, n_resampled = 0, 0
        with tqdm(desc="SMC", unit="obs", disable=not show_progress) as progress:
            while True:
                particles.advance()
                finished = particles.finished
                if all(finished):
                    break
                if any(finished):
                    raise ValueError(
                        "particles finished after different numbers of observations; "
                        "SMC needs every execution to observe the same data"
                    )
                n_observations += 1
                ess = particles.ess()
                if ess < self.resample_threshold * self.n_particles:
                    spl.config.debug(
                        logger, 1, "resampling after observation %d, ess=%s", n_observations, ess
                    )
                    particles.resample(self.resampler)
                    n_resampled += 1
                progress.update(1)
        spl.info["accept_his"].append(True)
        spl.info["n_observations"] = n_observations
        spl.info["n_resampled"] = n_resampled
        return particles

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
        _check_unsupported(resume_from, reuse_sampler_iterations)
        spl = self.make_sampler(model, config)
        show_progress = spl.config.progress if show_progress is None else show_progress
        key = next_key() if key is None else key

        with seeded(key):
            particles = self.run(model, spl, show_progress)

        log_evidence = particles.log_evidence()
        logger.info(
            "log evidence: %.4f (%d resampling steps)",
            float(log_evidence),
            spl.info["n_resampled"],
        )
        weights = particles.normalized_weights()
        samples = tuple(
            Sample.from_varinfo(t.vi, w) for t, w in zip(particles.traces, weights)
        )
        info = {
            "log_evidence": log_evidence,
            "log_weights": particles.log_weights,
            "ess": particles.ess(),
            "n_observations": spl.info["n_observations"],
            "n_resampled": spl.info["n_resampled"],
        }
        return Chain(log_evidence, samples, info)
