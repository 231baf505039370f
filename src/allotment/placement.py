"""Placement strategies: which instance a new job goes to.

A strategy is any callable ``(job_id, instance_ids) -> Placement`` (or an
awaitable of one).  It is consulted only for jobs that have no allocation
yet, inside the allocation transaction, with the ids of every available
instance.

``Placement.instance_id`` need not be one of the candidates: a strategy may
redirect.  ``Placement.persist=False`` means "this is the instance, but do
not write the allocation row", e.g. because the caller only records jobs for
its own instance and lets the owning instance persist the rest.

Examples:
    >>> hash_placement("bar2", ["foo", "foo2"])
    Placement(instance_id='foo2', persist=True)

    Persist only allocations that land on this process's instance:

    >>> strategy = local_only("foo")
    >>> allocator = Allocator("jobs.sqlite3", placement=strategy)
"""

from __future__ import annotations

import hashlib
import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import NamedTuple, Union

from allotment.core.errors import NoInstancesError


class Placement(NamedTuple):
    """The instance chosen for a job and whether to persist the choice."""

    instance_id: str
    persist: bool = True


PlacementStrategy = Callable[[str, Sequence[str]], Union[Placement, Awaitable[Placement]]]


def hash_placement(job_id: str, instance_ids: Sequence[str]) -> Placement:
    """Default strategy: stable hash of the job id modulo the candidate count.

    MD5 is used purely as a uniform, process-independent mapping, not for
    security.  The same job and the same candidate list always give the same
    instance, in any process.
    """
    if not instance_ids:
        raise NoInstancesError()
    digest = hashlib.md5(job_id.encode("utf-8"), usedforsecurity=False).digest()
    index = int.from_bytes(digest[:4], "big") % len(instance_ids)
    return Placement(instance_ids[index], True)


def local_only(instance_id: str, base: PlacementStrategy = hash_placement) -> PlacementStrategy:
    """Keep ``base``'s choice but persist it only when it is ``instance_id``."""

    async def strategy(job_id: str, instance_ids: Sequence[str]) -> Placement:
        choice = await resolve_placement(base, job_id, instance_ids)
        return Placement(choice.instance_id, choice.persist and choice.instance_id == instance_id)

    strategy.__name__ = f"local_only({instance_id})"
    return strategy


async def resolve_placement(
    strategy: PlacementStrategy,
    job_id: str,
    instance_ids: Sequence[str],
) -> Placement:
    """Call a sync or async strategy and normalize its answer to ``Placement``."""
    result = strategy(job_id, list(instance_ids))
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, Placement):
        return result
    if isinstance(result, tuple) and len(result) == 2:
        return Placement(str(result[0]), bool(result[1]))
    raise TypeError(
        f"Placement strategy {getattr(strategy, '__name__', strategy)!r} returned "
        f"{result!r}; expected Placement(instance_id, persist)"
    )


__all__ = [
    "Placement",
    "PlacementStrategy",
    "hash_placement",
    "local_only",
    "resolve_placement",
]
