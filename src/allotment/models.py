"""Records returned by allocator operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, NamedTuple


@dataclass(frozen=True)
class InstanceRecord:
    """An instance row with ``available`` normalized to a real ``bool``."""

    id: str
    available: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AllocationResult(NamedTuple):
    """Outcome of ``allocate``.

    ``persisted`` is True only for the call that wrote the allocation row;
    an existing allocation or a strategy veto both report False.
    """

    instance_id: str
    persisted: bool


__all__ = [
    "InstanceRecord",
    "AllocationResult",
]
