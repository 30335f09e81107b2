"""Content-addressed diff between a remote manifest and locally tracked records.

Pure functions only: no I/O, no mutation of the inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, TypeVar

R = TypeVar("R")
L = TypeVar("L")


@dataclass
class DiffResult(Generic[R, L]):
    to_fetch: list[R] = field(default_factory=list)
    to_delete: list[L] = field(default_factory=list)
    skipped_count: int = 0


def diff(
    remote_items: Iterable[R],
    local_items: Iterable[L],
    key_of: Callable[[R | L], str],
    hash_of: Callable[[R | L], str | None],
) -> DiffResult[R, L]:
    """Split remote items into fetch/skip and local items into keep/delete.

    A remote item is fetched when no local item shares its key, when the
    hashes differ, or when the remote hash is unknown. A local item is deleted
    when its key is absent from the remote side. Runs in O(n + m).
    """
    remote = list(remote_items)
    local_hashes: dict[str, str | None] = {}
    local_list = list(local_items)
    for item in local_list:
        local_hashes[key_of(item)] = hash_of(item)

    to_fetch: list[R] = []
    remote_keys: set[str] = set()
    for item in remote:
        key = key_of(item)
        remote_keys.add(key)
        remote_hash = hash_of(item)
        if remote_hash is None or key not in local_hashes or local_hashes[key] != remote_hash:
            to_fetch.append(item)

    to_delete = [item for item in local_list if key_of(item) not in remote_keys]
    return DiffResult(
        to_fetch=to_fetch,
        to_delete=to_delete,
        skipped_count=len(remote) - len(to_fetch),
    )
