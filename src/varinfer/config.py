"""Inference configuration.

An `InferenceConfig` is passed explicitly to `sample`. When none is given the
process-wide default is used; the setters below replace that default and
take effect for chains started afterwards. Changing the default while a
chain is running is not synchronized and should be avoided.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum

from varinfer.core import Any, Iterator

logger = logging.getLogger(__name__)


class ADBackend(str, Enum):
    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass(frozen=True)
class InferenceConfig:
    """
    Attributes:
        backend: differentiation mode for gradient-based samplers.
        chunk_size: number of seed directions pushed per forward-mode pass.
        ad_safe: evaluate gradients under `jax.debug_nans`.
        verbosity: decision-point tracing is emitted for levels below this.
        progress: default for the `show_progress` option of `sample`.
    """

    backend: ADBackend | str = ADBackend.REVERSE
    chunk_size: int = 40
    ad_safe: bool = False
    verbosity: int = 0
    progress: bool = True

    def __post_init__(self):
        try:
            backend = ADBackend(self.backend)
        except ValueError:
            raise ValueError(
                f"Unknown AD backend: {self.backend!r}, expected 'forward' or 'reverse'"
            ) from None
        object.__setattr__(self, "backend", backend)
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")

    def replace(self, **changes: Any) -> "InferenceConfig":
        return replace(self, **changes)

    def debug(self, log: logging.Logger, level: int, msg: str, *args: Any) -> None:
        """Trace a decision point when `level` is below the configured verbosity."""
        if level < self.verbosity:
            log.debug(msg, *args)


_default_config = InferenceConfig()


def get_config() -> InferenceConfig:
    return _default_config


def set_config(config: InferenceConfig) -> InferenceConfig:
    global _default_config
    previous, _default_config = _default_config, config
    return previous


def set_backend(backend: ADBackend | str) -> None:
    set_config(_default_config.replace(backend=backend))
    logger.info("AD backend is set as %s", _default_config.backend.value)


def set_chunk_size(chunk_size: int) -> None:
    if chunk_size != _default_config.chunk_size:
        set_config(_default_config.replace(chunk_size=chunk_size))
        logger.info("AD chunk size is set as %d", chunk_size)


def set_ad_safety(switch: bool) -> None:
    set_config(_default_config.replace(ad_safe=switch))
    logger.info("AD safety is set as %s", switch)


def set_verbosity(verbosity: int) -> None:
    set_config(_default_config.replace(verbosity=verbosity))


def set_progress(switch: bool) -> None:
    set_config(_default_config.replace(progress=switch))


@contextmanager
def configure(**changes: Any) -> Iterator[InferenceConfig]:
    """Temporarily replace the default configuration.

    Example:
        >>> with configure(backend="forward", chunk_size=8):
        ...     chain = sample(model, HMC(100, 0.1, 5))
    """
    config = _default_config.replace(**changes)
    previous = set_config(config)
    try:
        yield config
    finally:
        set_config(previous)
