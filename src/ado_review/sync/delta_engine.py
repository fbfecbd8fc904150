"""Delta Sync Engine.

Reconciles a local snapshot of a remote collection against what the server
returns, and reports only what changed. The engine owns every snapshot;
callers receive immutable ``DeltaResult`` values.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from pydantic import BaseModel

from ..remote.exceptions import SyncIntegrityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def content_hash(item: Any) -> str:
    """Stable SHA-256 of an item's content."""
    if isinstance(item, BaseModel):
        payload = item.model_dump_json().encode("utf-8")
    elif isinstance(item, (bytes, bytearray)):
        payload = bytes(item)
    else:
        payload = json.dumps(item, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    """Last reconciled state of one resource. Never mutated, only replaced."""

    resource_id: str
    version: Optional[str]
    items: Mapping[str, T]
    hashes: Mapping[str, str]

    @classmethod
    def build(
        cls,
        resource_id: str,
        version: Optional[str],
        items: Dict[str, T],
        hashes: Dict[str, str],
    ) -> "Snapshot[T]":
        return cls(
            resource_id=resource_id,
            version=version,
            items=MappingProxyType(dict(items)),
            hashes=MappingProxyType(dict(hashes)),
        )

    def values(self) -> List[T]:
        return list(self.items.values())


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """What a fetcher got from the server.

    ``partial`` results carry only changed items plus ``removed_keys``;
    ``not_modified`` means the server confirmed the prior version.
    """

    items: Sequence[T] = ()
    version: Optional[str] = None
    partial: bool = False
    not_modified: bool = False
    removed_keys: Sequence[str] = ()


@dataclass(frozen=True)
class DeltaResult(Generic[T]):
    resource_id: str
    added: Tuple[T, ...] = ()
    updated: Tuple[T, ...] = ()
    removed: Tuple[T, ...] = ()
    unchanged: bool = False
    version: Optional[str] = None
    reset: bool = False

    @property
    def changed(self) -> Tuple[T, ...]:
        return self.added + self.updated

    def __bool__(self) -> bool:
        return not self.unchanged


Fetcher = Callable[[Optional[Snapshot[T]]], Awaitable[FetchResult[T]]]
KeyFunc = Callable[[T], str]
HashFunc = Callable[[T], str]


def _default_key(item: Any) -> str:
    key = getattr(item, "key", None)
    if key is None:
        raise TypeError(f"No key function given and {type(item).__name__} has no key")
    return str(key)


@dataclass
class _Diff(Generic[T]):
    added: List[T] = field(default_factory=list)
    updated: List[T] = field(default_factory=list)
    removed: List[T] = field(default_factory=list)
    items: Dict[str, T] = field(default_factory=dict)
    hashes: Dict[str, str] = field(default_factory=dict)


class DeltaSyncEngine:
    """Per-resource snapshot reconciliation.

    Syncs of one resource are serialized; different resources run in
    parallel. A sync that is cancelled or fails leaves the prior snapshot
    in place.
    """

    def __init__(self):
        self._snapshots: Dict[str, Snapshot[Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_id] = lock
        return lock

    def snapshot(self, resource_id: str) -> Optional[Snapshot[Any]]:
        return self._snapshots.get(resource_id)

    def resources(self) -> List[str]:
        return list(self._snapshots)

    def discard(self, resource_id: str) -> bool:
        """Drop a resource's snapshot. Returns True if one existed."""
        existed = self._snapshots.pop(resource_id, None) is not None
        lock = self._locks.get(resource_id)
        if lock is not None and not lock.locked():
            del self._locks[resource_id]
        if existed:
            logger.debug(f"Discarded snapshot {resource_id}")
        return existed

    async def sync(
        self,
        resource_id: str,
        fetch: Fetcher,
        key: KeyFunc = _default_key,
        allow_removal: bool = True,
        hasher: HashFunc = content_hash,
    ) -> DeltaResult[Any]:
        """Fetch the resource and report the difference from the last sync.

        Args:
            resource_id: Identity of the synced collection
            fetch: Called with the prior snapshot (None for a full fetch)
            key: Item identity
            allow_removal: False for append-only resources, whose items are
                never removed once observed
            hasher: Item content hash

        Raises:
            SyncIntegrityError: If even a full resync cannot be applied
        """
        async with self._lock_for(resource_id):
            prior = self._snapshots.get(resource_id)
            reset = False

            try:
                result = await fetch(prior)
            except SyncIntegrityError as e:
                if prior is None:
                    raise
                logger.warning(f"Resyncing {resource_id} from scratch: {e}")
                result = await fetch(None)
                reset = True
                if result.partial or result.not_modified:
                    raise SyncIntegrityError(
                        f"Full resync of {resource_id} did not return a full payload"
                    )

            if result.not_modified and prior is not None and not reset:
                return DeltaResult(
                    resource_id=resource_id, unchanged=True, version=prior.version
                )

            base = None if reset else prior
            diff = self._diff(base, result, key, hasher, allow_removal)

            if reset:
                # The consumer rebuilds from scratch
                diff.removed = list(prior.values()) if prior is not None else []
                diff.added = list(diff.items.values())
                diff.updated = []
            elif (
                base is not None
                and not diff.added
                and not diff.updated
                and not diff.removed
            ):
                return DeltaResult(
                    resource_id=resource_id, unchanged=True, version=base.version
                )

            # No await between diff and swap
            snapshot = Snapshot.build(resource_id, result.version, diff.items, diff.hashes)
            self._snapshots[resource_id] = snapshot

            return DeltaResult(
                resource_id=resource_id,
                added=tuple(diff.added),
                updated=tuple(diff.updated),
                removed=tuple(diff.removed),
                unchanged=False,
                version=result.version,
                reset=reset,
            )

    @staticmethod
    def _diff(
        prior: Optional[Snapshot[Any]],
        result: FetchResult[Any],
        key: KeyFunc,
        hasher: HashFunc,
        allow_removal: bool,
    ) -> _Diff[Any]:
        prior_items: Mapping[str, Any] = prior.items if prior is not None else {}
        prior_hashes: Mapping[str, str] = prior.hashes if prior is not None else {}

        fetched: Dict[str, Any] = {}
        fetched_hashes: Dict[str, str] = {}
        for item in result.items:
            item_key = key(item)
            fetched[item_key] = item
            fetched_hashes[item_key] = hasher(item)

        diff: _Diff[Any] = _Diff()
        for item_key, item in fetched.items():
            if item_key not in prior_items:
                diff.added.append(item)
            elif prior_hashes.get(item_key) != fetched_hashes[item_key]:
                diff.updated.append(item)

        if result.partial:
            removed_keys = set(result.removed_keys) if allow_removal else set()
            removed_keys -= set(fetched)
        elif allow_removal:
            removed_keys = set(prior_items) - set(fetched)
        else:
            removed_keys = set()

        # Prior order first, then new items in fetch order
        keep_prior = result.partial or not allow_removal
        for item_key, item in prior_items.items():
            if item_key in removed_keys:
                diff.removed.append(item)
            elif item_key in fetched:
                diff.items[item_key] = fetched[item_key]
                diff.hashes[item_key] = fetched_hashes[item_key]
            elif keep_prior:
                diff.items[item_key] = item
                diff.hashes[item_key] = prior_hashes[item_key]

        for item_key, item in fetched.items():
            if item_key not in diff.items:
                diff.items[item_key] = item
                diff.hashes[item_key] = fetched_hashes[item_key]

        return diff
