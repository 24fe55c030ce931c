"""Exceptions raised by the inference machinery.

Everything here derives from `VarInferError`. `SupportViolation` is the one
recoverable member: samplers catch it and reject the current step.
"""


class VarInferError(Exception):
    """Base class for inference errors."""


class UnknownVariable(VarInferError, KeyError):
    """A variable was read from a store that has no record for it."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class MissingVariable(VarInferError):
    """A sampler that needs pre-existing values met a variable with no record.

    Variables whose very existence is random are not supported.
    """


class UnsupportedVectorAssume(VarInferError):
    """A vector statement reached a sampler with no vectorized update rule."""


class InvalidSamplingSpace(VarInferError):
    """A sampler's variable restriction is inconsistent with the model."""


class ModelParameterMismatch(VarInferError):
    """A resumed sampler or chain does not match the model's parameters."""


class SupportViolation(VarInferError):
    """A proposed value lies outside its distribution's support."""
