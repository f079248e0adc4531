"""Keyed set difference between two snapshots of entities."""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from routerwatch.core.models import ConnectedClient

T = TypeVar("T")


@dataclass(frozen=True)
class SnapshotDiff(Generic[T]):
    """Entities that entered or left between two snapshots."""

    entered: list[T] = field(default_factory=list)
    left: list[T] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.entered or self.left)


def by_mac(client: ConnectedClient) -> str:
    return client.mac


def index(items: Iterable[T], key: Callable[[T], Hashable]) -> dict[Hashable, T]:
    """Index items by key; the first item wins on duplicate keys."""
    result: dict[Hashable, T] = {}
    for item in items:
        result.setdefault(key(item), item)
    return result


def diff(
    old: Iterable[T],
    new: Iterable[T],
    key: Callable[[T], Hashable] = by_mac,  # type: ignore[assignment]
) -> SnapshotDiff[T]:
    """Compute which entities entered and which left, compared by ``key``.

    ``entered`` keeps the order of ``new`` and ``left`` the order of ``old``.
    Runs in O(len(old) + len(new)).
    """
    old_index = index(old, key)
    new_index = index(new, key)
    entered = [item for k, item in new_index.items() if k not in old_index]
    left = [item for k, item in old_index.items() if k not in new_index]
    return SnapshotDiff(entered=entered, left=left)
