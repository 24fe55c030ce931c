"""The variable store.

`VarInfo` records every random draw a model makes: its value (kept in flat,
vectorized form), the distribution it came from, the group id of the sampler
that owns it, and its log-density contribution. A single accumulator holds
the joint log-density of the current execution.

Records are immutable `Pytree`s, so copying a store only copies the mapping;
records are shared until one side writes a replacement.
"""

from dataclasses import dataclass
from types import MappingProxyType

import jax.numpy as jnp

from varinfer.core import (
    Addr,
    Any,
    ArrayLike,
    Iterator,
    Pytree,
    Sequence,
    VarName,
)
from varinfer.errors import UnknownVariable


@Pytree.dataclass
class VarRecord(Pytree):
    """One variable: flat value, original shape, generating distribution,
    owning group id and log-density contribution as of the last write."""

    shape: tuple = Pytree.static()
    gid: int = Pytree.static()
    value: ArrayLike
    dist: Any
    logp: ArrayLike

    def reshaped(self) -> Any:
        return jnp.reshape(self.value, self.shape)


@dataclass(frozen=True)
class Snapshot:
    """An independently owned, read-only copy of a store's content."""

    records: MappingProxyType
    logp: ArrayLike

    def __len__(self) -> int:
        return len(self.records)


def _vectorize(value: Any) -> tuple[ArrayLike, tuple]:
    value = jnp.asarray(value)
    return jnp.ravel(value), tuple(value.shape)


def _in_space(vn: VarName, space: frozenset) -> bool:
    return not space or vn.sym in space


class VarInfo:
    def __init__(self, records: dict | None = None, logp: ArrayLike = 0.0):
        self._records: dict = dict(records) if records else {}
        self.logp = jnp.asarray(logp)

    def __contains__(self, addr: Addr | VarName) -> bool:
        return VarName.parse(addr) in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[VarName]:
        return iter(list(self._records))

    def __getitem__(self, addr: Addr | VarName) -> Any:
        return self.read(addr)

    def __repr__(self) -> str:
        body = ", ".join(f"{vn}={r.reshaped()}" for vn, r in self._records.items())
        return f"VarInfo({body}; logp={self.logp})"

    def names(self) -> list[VarName]:
        return list(self._records)

    ###########
    # Records #
    ###########

    def record(self, addr: Addr | VarName) -> VarRecord:
        vn = VarName.parse(addr)
        try:
            return self._records[vn]
        except KeyError:
            raise UnknownVariable(f"no variable named {vn} in the store") from None

    def read(self, addr: Addr | VarName) -> Any:
        return self.record(addr).reshaped()

    def write(
        self,
        addr: Addr | VarName,
        value: Any,
        dist: Any,
        gid: int = 0,
        logp: ArrayLike = 0.0,
    ) -> None:
        """Upsert a record. The log-density accumulator is left alone;
        callers charge it separately with `accumulate`."""
        flat, shape = _vectorize(value)
        self._records[VarName.parse(addr)] = VarRecord(shape, gid, flat, dist, logp)

    def set_gid(self, addr: Addr | VarName, gid: int) -> None:
        r = self.record(addr)
        self._records[VarName.parse(addr)] = VarRecord(
            r.shape, gid, r.value, r.dist, r.logp
        )

    ###############
    # Log density #
    ###############

    def accumulate(self, delta: ArrayLike) -> None:
        self.logp = self.logp + jnp.sum(delta)

    def reset_logp(self) -> None:
        self.logp = jnp.asarray(0.0)

    def set_logp(self, logp: ArrayLike) -> None:
        self.logp = jnp.asarray(logp)

    #######################
    # Snapshots & copying #
    #######################

    def snapshot(self) -> Snapshot:
        return Snapshot(MappingProxyType(dict(self._records)), self.logp)

    def restore(self, snapshot: Snapshot) -> None:
        self._records = dict(snapshot.records)
        self.logp = snapshot.logp

    def copy(self) -> "VarInfo":
        return VarInfo(self._records, self.logp)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "VarInfo":
        return cls(dict(snapshot.records), snapshot.logp)

    ##################
    # Sampler access #
    ##################

    def owned(self, gid: int, space: frozenset = frozenset()) -> list[VarName]:
        """Variables a sampler with group id `gid` and sampling space `space`
        may update: owned by `gid` or unowned, and inside the space."""
        return [
            vn
            for vn, r in self._records.items()
            if r.gid in (0, gid) and _in_space(vn, space)
        ]

    def values_of(self, gid: int, space: frozenset = frozenset()) -> dict:
        return {vn: self._records[vn] for vn in self.owned(gid, space)}

    def restore_values(self, records: dict) -> None:
        self._records.update(records)

    def flatten(self, names: Sequence[VarName]) -> ArrayLike:
        if not names:
            return jnp.zeros((0,))
        return jnp.concatenate(
            [
                jnp.asarray(self._records[vn].value).astype(jnp.result_type(float))
                for vn in names
            ]
        )

    def unflatten(self, names: Sequence[VarName], theta: ArrayLike) -> None:
        """Write slices of `theta` back into the named records, in order."""
        offset = 0
        for vn in names:
            r = self._records[vn]
            size = r.value.size
            value = theta[offset : offset + size]
            self._records[vn] = VarRecord(r.shape, r.gid, value, r.dist, r.logp)
            offset += size

    def to_dict(self) -> dict:
        return {str(vn): r.reshaped() for vn, r in self._records.items()}
