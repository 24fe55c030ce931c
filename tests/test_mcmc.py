"""
Test cases for the Markov chain algorithms.

Posterior checks run against conjugate models with known posteriors: the
Normal-InverseGamma `gdemo` model and a Normal-Normal hierarchy.
"""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from varinfer import (
    HMC,
    MH,
    Gibbs,
    InvalidSamplingSpace,
    MissingVariable,
    ModelParameterMismatch,
    Phase,
    UnsupportedVectorAssume,
    VarInfo,
    VarName,
    exponential,
    iid,
    model,
    normal,
    resume,
    sample,
    seeded,
)


@pytest.fixture
def mh_steps():
    return 1500


@pytest.fixture
def standard_normal():
    @model
    def standard_normal():
        return normal(0.0, 1.0) @ "x"

    return standard_normal()


def rw_acceptance_rate(sigma):
    """Stationary acceptance rate of a Gaussian random walk with scale `sigma`
    on a standard normal target."""
    return 2.0 / jnp.pi * jnp.arctan(2.0 / sigma)


# ============================================================================
# Metropolis-Hastings
# ============================================================================


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.slow
def test_mh_gdemo_posterior_means(gdemo, gdemo_posterior_means, mh_steps, base_key):
    chain = sample(gdemo, MH(mh_steps), key=base_key)
    burn_in = mh_steps // 5
    assert len(chain) == mh_steps
    assert jnp.abs(jnp.mean(chain["s"][burn_in:]) - gdemo_posterior_means["s"]) < 0.5
    assert jnp.abs(jnp.mean(chain["m"][burn_in:]) - gdemo_posterior_means["m"]) < 0.3


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.slow
def test_mh_gdemo_custom_proposals(gdemo, gdemo_posterior_means, mh_steps, base_key):
    alg = MH.from_space(
        mh_steps,
        ("s", lambda s: normal(s, 1.0)),
        ("m", lambda m: normal(m, 1.0)),
    )
    chain = sample(gdemo, alg, key=base_key)
    burn_in = mh_steps // 5
    assert jnp.all(chain["s"] > 0.0)
    assert jnp.abs(jnp.mean(chain["s"][burn_in:]) - gdemo_posterior_means["s"]) < 0.5
    assert jnp.abs(jnp.mean(chain["m"][burn_in:]) - gdemo_posterior_means["m"]) < 0.3


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.slow
def test_mh_gdemo_drift_on_variance_only(gdemo, gdemo_posterior_means, base_key):
    n = 1000
    alg = MH.from_space(n, ("s", lambda s: normal(s, 0.5)), "m")
    chain = sample(gdemo, alg, key=base_key)
    assert len(chain) == n
    assert jnp.all(chain["s"] > 0.0)
    assert jnp.abs(jnp.mean(chain["s"][200:]) - gdemo_posterior_means["s"]) < 0.5
    assert jnp.abs(jnp.mean(chain["m"][200:]) - gdemo_posterior_means["m"]) < 0.3


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.parametrize("sigma", [0.5, 2.4])
def test_random_walk_acceptance_rate(standard_normal, sigma, base_key):
    n = 2000
    alg = MH.from_space(n, ("x", lambda x: normal(x, sigma)))
    chain = sample(standard_normal, alg, key=base_key)
    # The first step is a prior draw recorded as accepted.
    observed = sum(chain.info["accepted"][1:]) / (n - 1)
    assert abs(observed - float(rw_acceptance_rate(sigma))) < 0.05
    assert chain.acceptance_rate == pytest.approx(sum(chain.info["accepted"]) / n)


@pytest.mark.mcmc
@pytest.mark.unit
def test_rejected_steps_repeat_the_previous_sample(gdemo, base_key):
    chain = sample(gdemo, MH(200), key=base_key)
    accepted = chain.info["accepted"]
    assert accepted[0]
    assert not all(accepted)
    for i in range(1, len(chain)):
        if not accepted[i]:
            assert chain.samples[i] is chain.samples[i - 1]
        else:
            assert chain.samples[i] is not chain.samples[i - 1]


@pytest.mark.mcmc
@pytest.mark.unit
def test_rejection_restores_store_exactly(gdemo, base_key):
    alg = MH(10)
    spl = alg.make_sampler(gdemo)
    vi = VarInfo()
    with seeded(base_key):
        vi = alg.step(gdemo, spl, vi, True)
        for _ in range(30):
            before = vi.snapshot()
            vi = alg.step(gdemo, spl, vi, False)
            if not spl.info["accept_his"][-1]:
                for vn, record in before.records.items():
                    assert jnp.array_equal(vi.record(vn).value, record.value)
                assert jnp.array_equal(vi.logp, before.logp)


@pytest.mark.mcmc
@pytest.mark.unit
def test_determinism_under_fixed_key(gdemo, base_key):
    a = sample(gdemo, MH(50), key=base_key)
    b = sample(gdemo, MH(50), key=base_key)
    c = sample(gdemo, MH(50), key=jrand.key(1))
    assert jnp.array_equal(a["s"], b["s"])
    assert jnp.array_equal(a["lp"], b["lp"])
    assert not jnp.array_equal(a["s"], c["s"])


@pytest.mark.mcmc
@pytest.mark.unit
def test_sampler_bookkeeping(gdemo, base_key):
    chain = sample(gdemo, MH(20), key=base_key, save_state=True)
    spl = chain.state.sampler
    assert spl.phase == Phase.TERMINATED
    assert len(spl.info["accept_his"]) == 20
    # One prior execution, then one proposal per steady-state step.
    assert spl.info["total_eval_num"] == 19
    assert len(chain.info["elapsed"]) == 20
    assert chain.names() == ["s", "m", "lp"]
    assert spl.acceptance_rate() == pytest.approx(chain.acceptance_rate)
    assert spl.acceptance_rate(last=1) in (0.0, 1.0)


# ============================================================================
# Sampling space
# ============================================================================


@pytest.mark.mcmc
@pytest.mark.unit
def test_space_not_covering_parameters_raises(gdemo, base_key):
    with pytest.raises(InvalidSamplingSpace):
        sample(gdemo, MH.from_space(10, "s"), key=base_key)


@pytest.mark.mcmc
@pytest.mark.unit
def test_extra_names_in_space_warn(gdemo, base_key):
    with pytest.warns(UserWarning, match="don't exist in model"):
        chain = sample(gdemo, MH.from_space(5, "s", "m", "z"), key=base_key)
    assert len(chain) == 5


@pytest.mark.mcmc
@pytest.mark.unit
def test_chain_needs_an_iteration(gdemo, base_key):
    with pytest.raises(ValueError, match="at least one iteration"):
        sample(gdemo, MH(0), key=base_key)
    chain = sample(gdemo, MH(5), key=base_key, save_state=True)
    with pytest.raises(ValueError, match="at least one iteration"):
        resume(chain, 0)


@pytest.mark.mcmc
@pytest.mark.unit
def test_missing_variable_raises(gdemo, base_key):
    alg = MH(10)
    spl = alg.make_sampler(gdemo)
    with pytest.raises(MissingVariable):
        alg.assume(spl, normal(0.0, 1.0), VarName("x"), VarInfo())


@pytest.mark.mcmc
@pytest.mark.unit
def test_vector_assume_is_unsupported(base_key):
    @model
    def vec():
        return iid(normal(0.0, 1.0), 2) @ "x"

    with pytest.raises(UnsupportedVectorAssume):
        sample(vec(), MH(5), key=base_key)


# ============================================================================
# Resuming
# ============================================================================


@pytest.mark.mcmc
@pytest.mark.integration
def test_resume_appends_samples(gdemo, base_key):
    first = sample(gdemo, MH(100), key=base_key, save_state=True)
    resumed = resume(first, 500)
    assert len(resumed) == 600
    assert all(a is b for a, b in zip(resumed.samples[:100], first.samples))
    assert len(resumed.info["accepted"]) == 600
    assert len(resumed.state.sampler.info["accept_his"]) == 600


@pytest.mark.mcmc
@pytest.mark.unit
def test_resume_leaves_the_saved_chain_untouched(gdemo, base_key):
    first = sample(gdemo, MH(20), key=base_key, save_state=True)
    saved = first.state.sampler
    history = list(saved.info["accept_his"])
    key = saved.info["key"]
    s_before = first.state.vi["s"]

    a = resume(first, 30)
    b = resume(first, 30)

    assert jnp.array_equal(a["s"], b["s"])
    assert jnp.array_equal(a["lp"], b["lp"])
    assert a.info["accepted"] == b.info["accepted"]
    assert first.state.sampler is saved
    assert saved.info["accept_his"] == history
    assert saved.info["key"] is key
    assert saved.phase == Phase.TERMINATED
    assert jnp.array_equal(first.state.vi["s"], s_before)
    assert len(first) == 20
    assert len(b.state.sampler.info["accept_his"]) == len(b) == 50


@pytest.mark.mcmc
@pytest.mark.unit
def test_resume_gibbs_forks_component_samplers(gdemo, base_key):
    alg = Gibbs(5, (MH.from_space(1, "s"), MH.from_space(1, "m")))
    first = sample(gdemo, alg, key=base_key, save_state=True)
    components = first.state.sampler.components
    lengths = [len(c.info["accept_his"]) for c in components]

    resumed = resume(first, 5)

    assert [len(c.info["accept_his"]) for c in components] == lengths
    assert all(
        a is not b for a, b in zip(resumed.state.sampler.components, components)
    )


@pytest.mark.mcmc
@pytest.mark.unit
def test_resume_requires_saved_state(gdemo, base_key):
    chain = sample(gdemo, MH(5), key=base_key)
    with pytest.raises(ValueError, match="save_state"):
        resume(chain, 5)


@pytest.mark.mcmc
@pytest.mark.unit
def test_resume_with_other_model_raises(gdemo, standard_normal, base_key):
    chain = sample(gdemo, MH(5), key=base_key, save_state=True)
    with pytest.raises(ModelParameterMismatch):
        sample(
            standard_normal,
            MH(5),
            resume_from=chain,
            reuse_sampler_iterations=5,
        )


# ============================================================================
# HMC
# ============================================================================


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.slow
def test_hmc_normal_posterior(hierarchical_normal, normal_posterior, base_key):
    ys = [0.4, 1.1, 0.9]
    mean, _ = normal_posterior(ys)
    chain = sample(hierarchical_normal(ys), HMC(200, 0.1, 5), key=base_key)
    assert chain.acceptance_rate > 0.5
    assert jnp.abs(jnp.mean(chain["mu"][20:]) - mean) < 0.15


@pytest.mark.mcmc
@pytest.mark.unit
def test_hmc_rejects_trajectories_leaving_support(base_key):
    @model
    def positive():
        return exponential(1.0) @ "rate"

    chain = sample(positive(), HMC(40, 1.5, 4), key=base_key)
    assert jnp.all(chain["rate"] >= 0.0)
    assert not all(chain.info["accepted"])


@pytest.mark.mcmc
@pytest.mark.unit
def test_hmc_vector_latent(base_key):
    @model
    def mvn():
        x = normal(jnp.zeros(2), 1.0) @ "x"
        normal(x, 1.0).observe(jnp.array([0.5, -0.5]))
        return x

    chain = sample(mvn(), HMC(10, 0.2, 3), key=base_key)
    assert chain["x"].shape == (10, 2)


# ============================================================================
# Gibbs
# ============================================================================


@pytest.mark.mcmc
@pytest.mark.integration
@pytest.mark.slow
def test_gibbs_gdemo(gdemo, gdemo_posterior_means, base_key):
    alg = Gibbs(
        300,
        (
            MH.from_space(1, ("s", lambda s: normal(s, 1.0))),
            HMC.from_space(1, 0.3, 4, "m"),
        ),
    )
    chain = sample(gdemo, alg, key=base_key, save_state=True)
    assert chain.state.vi.record("s").gid == 1
    assert chain.state.vi.record("m").gid == 2
    assert jnp.abs(jnp.mean(chain["s"][50:]) - gdemo_posterior_means["s"]) < 0.6
    assert jnp.abs(jnp.mean(chain["m"][50:]) - gdemo_posterior_means["m"]) < 0.35


@pytest.mark.mcmc
@pytest.mark.unit
def test_gibbs_component_leaves_other_group_untouched(gdemo, base_key):
    alg = Gibbs(1, (MH.from_space(1, "s"), MH.from_space(1, "m")))
    spl = alg.make_sampler(gdemo)
    component = spl.components[0]
    assert component.alg.gid == 1

    vi = VarInfo()
    outcomes = set()
    with seeded(base_key):
        vi = alg.step(gdemo, spl, vi, True)
        vi.set_gid("s", 1)
        vi.set_gid("m", 2)
        for _ in range(40):
            m_before = vi.record("m")
            vi = component.alg.step(gdemo, component, vi, False)
            outcomes.add(component.info["accept_his"][-1])
            assert jnp.array_equal(vi.record("m").value, m_before.value)
            assert vi.record("m").gid == 2
            assert vi.record("s").gid == 1
    assert outcomes == {True, False}


@pytest.mark.mcmc
@pytest.mark.unit
def test_gibbs_components_must_cover_parameters(gdemo, base_key):
    with pytest.raises(InvalidSamplingSpace, match="unsampled"):
        sample(gdemo, Gibbs(5, (MH.from_space(1, "s"),)), key=base_key)


@pytest.mark.mcmc
@pytest.mark.unit
def test_gibbs_components_must_name_variables(gdemo, base_key):
    with pytest.raises(InvalidSamplingSpace):
        sample(gdemo, Gibbs(5, (MH(1), MH.from_space(1, "m"))), key=base_key)
    with pytest.raises(InvalidSamplingSpace):
        sample(
            gdemo,
            Gibbs(5, (MH.from_space(1, "s", "z"), MH.from_space(1, "m"))),
            key=base_key,
        )
