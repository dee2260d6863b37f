"""
Concurrency-safe per-parameter state storage.

This module defines `ConcurrentStateMap`, a sharded dictionary used by
optimizers to hold per-parameter state (update counters, momentum buffers)
that is shared by every training thread for the lifetime of an optimizer.

Design
------
- Keys are hashed onto a fixed number of shards. Each shard owns a plain
  ``dict`` and a ``threading.Lock``, so first-touch on unrelated parameters
  never contends on a single global lock.
- `get_or_create` provides atomic "insert if absent" semantics: the factory
  is invoked at most once per key, under the shard lock, and every caller
  observes the same stored object afterwards.
- Reads of an existing key take a lock-free fast path; a single ``dict.get``
  is atomic under CPython.

Configuration
-------------
The shard count may be passed explicitly. Otherwise the
``KEYOPTIM_STATE_SHARDS`` environment variable is consulted, falling back to
`DEFAULT_NUM_SHARDS`.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple

DEFAULT_NUM_SHARDS: int = 16

_MISSING = object()


def _resolve_num_shards(num_shards: Optional[int]) -> int:
    """
    Resolve the shard count from the argument or the environment.

    Raises
    ------
    ValueError
        If the resolved value is not a positive integer.
    """
    if num_shards is None:
        raw = os.environ.get("KEYOPTIM_STATE_SHARDS", "")
        if raw:
            try:
                num_shards = int(raw)
            except ValueError as e:
                raise ValueError(
                    f"KEYOPTIM_STATE_SHARDS must be an integer, got {raw!r}"
                ) from e
        else:
            num_shards = DEFAULT_NUM_SHARDS

    if isinstance(num_shards, bool) or not isinstance(num_shards, int):
        raise ValueError(f"num_shards must be an int, got {type(num_shards)!r}")
    if num_shards <= 0:
        raise ValueError(f"num_shards must be > 0, got {num_shards}")
    return num_shards


@dataclass
class _Shard:
    """One lock-protected partition of a `ConcurrentStateMap`."""

    data: Dict[Hashable, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class ConcurrentStateMap:
    """
    Sharded, thread-safe mapping with atomic get-or-create.

    Parameters
    ----------
    num_shards : Optional[int]
        Number of independent lock partitions. If None, read from
        ``KEYOPTIM_STATE_SHARDS`` or default to 16.

    Notes
    -----
    - Entries are never removed; optimizer state lives as long as the map.
    - `items()` and `keys()` return snapshots, not live views.
    """

    def __init__(self, num_shards: Optional[int] = None) -> None:
        n = _resolve_num_shards(num_shards)
        self._shards: Tuple[_Shard, ...] = tuple(_Shard() for _ in range(n))

    @property
    def num_shards(self) -> int:
        return len(self._shards)

    def _shard_for(self, key: Hashable) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get_or_create(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        """
        Return the value stored under ``key``, creating it if absent.

        Parameters
        ----------
        key : Hashable
            Parameter identity.
        factory : Callable[[], Any]
            Zero-argument constructor for the initial value. Called at most
            once per key across all threads.

        Returns
        -------
        Any
            The stored value. Concurrent callers for the same key receive the
            same object.

        Notes
        -----
        If ``factory`` raises, nothing is stored and the exception propagates;
        a later call may retry creation.
        """
        shard = self._shard_for(key)
        value = shard.data.get(key, _MISSING)
        if value is not _MISSING:
            return value

        with shard._lock:
            value = shard.data.get(key, _MISSING)
            if value is _MISSING:
                value = factory()
                shard.data[key] = value
            return value

    def increment(self, key: Hashable, delta: int = 1) -> int:
        """
        Atomically add ``delta`` to the integer stored under ``key``.

        Missing keys start at 0. Returns the post-increment value.
        """
        shard = self._shard_for(key)
        with shard._lock:
            value = int(shard.data.get(key, 0)) + delta
            shard.data[key] = value
            return value

    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._shard_for(key).data.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        shard = self._shard_for(key)
        with shard._lock:
            shard.data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._shard_for(key).data  # type: ignore[arg-type]

    def __len__(self) -> int:
        return sum(len(s.data) for s in self._shards)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self.keys())

    def keys(self) -> List[Hashable]:
        return [k for k, _ in self.items()]

    def items(self) -> List[Tuple[Hashable, Any]]:
        """
        Return a snapshot of all entries.

        Each shard is copied under its own lock; the snapshot is therefore
        consistent per shard but not across shards.
        """
        out: List[Tuple[Hashable, Any]] = []
        for shard in self._shards:
            with shard._lock:
                out.extend(shard.data.items())
        return out

