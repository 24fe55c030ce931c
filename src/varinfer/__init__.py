import logging

from beartype import BeartypeConf
from beartype.claw import beartype_this_package

conf = BeartypeConf(
    is_color=True,
    is_debug=False,
    is_pep484_tower=True,
    violation_type=TypeError,
)

beartype_this_package(conf=conf)

logging.getLogger(__name__).addHandler(logging.NullHandler())

from .ad import gradient, log_density_fn
from .config import (
    ADBackend,
    InferenceConfig,
    configure,
    get_config,
    set_ad_safety,
    set_backend,
    set_chunk_size,
    set_config,
    set_progress,
    set_verbosity,
)
from .core import (
    Distribution,
    DistributionVector,
    Family,
    Pytree,
    VarName,
    iid,
    next_key,
    seed,
    seeded,
    stack,
    tfp_distribution,
)
from .distributions import (
    bernoulli,
    beta,
    categorical,
    cauchy,
    exponential,
    flip,
    gamma,
    half_normal,
    inverse_gamma,
    laplace,
    log_normal,
    multivariate_normal,
    normal,
    poisson,
    student_t,
    uniform,
)
from .errors import (
    InvalidSamplingSpace,
    MissingVariable,
    ModelParameterMismatch,
    SupportViolation,
    UnknownVariable,
    UnsupportedVectorAssume,
    VarInferError,
)
from .mcmc import HMC, MH, Gibbs, MetropolisAlgorithm
from .model import Model, ModelFn, model, runmodel
from .protocol import assume, assume_vector, observe, observe_vector
from .sampler import (
    Chain,
    InferenceAlgorithm,
    Phase,
    Sample,
    Sampler,
    SavedState,
    resume,
    sample,
)
from .smc import IS, SMC, effective_sample_size
from .trace import ParticleContainer, Trace
from .varinfo import Snapshot, VarInfo, VarRecord

__all__ = [
    "ADBackend",
    "Chain",
    "Distribution",
    "DistributionVector",
    "Family",
    "Gibbs",
    "HMC",
    "IS",
    "InferenceAlgorithm",
    "InferenceConfig",
    "InvalidSamplingSpace",
    "MH",
    "MetropolisAlgorithm",
    "MissingVariable",
    "Model",
    "ModelFn",
    "ModelParameterMismatch",
    "ParticleContainer",
    "Phase",
    "Pytree",
    "SMC",
    "Sample",
    "Sampler",
    "SavedState",
    "Snapshot",
    "SupportViolation",
    "Trace",
    "UnknownVariable",
    "UnsupportedVectorAssume",
    "VarInferError",
    "VarInfo",
    "VarName",
    "VarRecord",
    "assume",
    "assume_vector",
    "bernoulli",
    "beta",
    "categorical",
    "cauchy",
    "configure",
    "effective_sample_size",
    "exponential",
    "flip",
    "gamma",
    "get_config",
    "gradient",
    "half_normal",
    "iid",
    "inverse_gamma",
    "laplace",
    "log_density_fn",
    "log_normal",
    "model",
    "multivariate_normal",
    "next_key",
    "normal",
    "observe",
    "observe_vector",
    "poisson",
    "resume",
    "runmodel",
    "sample",
    "seed",
    "seeded",
    "set_ad_safety",
    "set_backend",
    "set_chunk_size",
    "set_config",
    "set_progress",
    "set_verbosity",
    "stack",
    "student_t",
    "tfp_distribution",
    "uniform",
]
