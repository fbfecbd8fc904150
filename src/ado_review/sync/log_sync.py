"""Incremental pipeline log synchronization.

Logs only ever grow, except when a job restarts and its log is replaced.
Each sync requests the bytes past the recorded length and delivers every
byte exactly once, in order, with no gaps.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..api_clients.pipelines_client import LogChunk
from ..remote.exceptions import SyncIntegrityError
from .delta_engine import DeltaResult

logger = logging.getLogger(__name__)

RangeFetcher = Callable[[int], Awaitable[LogChunk]]


@dataclass(frozen=True)
class PipelineLogSegment:
    job_id: str
    byte_offset: int
    content: bytes

    @property
    def end(self) -> int:
        return self.byte_offset + len(self.content)

    @property
    def key(self) -> str:
        return f"{self.job_id}@{self.byte_offset}"

    def text(self, encoding: str = "utf-8") -> str:
        return self.content.decode(encoding, errors="replace")


@dataclass(frozen=True)
class _LogState:
    job_id: str
    length: int
    segments: Tuple[PipelineLogSegment, ...]


class _Truncated(Exception):
    pass


class LogSyncEngine:
    """Tracks delivered length per log and turns range fetches into segments."""

    def __init__(self):
        self._states: Dict[str, _LogState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_id] = lock
        return lock

    def delivered_length(self, resource_id: str) -> Optional[int]:
        state = self._states.get(resource_id)
        return state.length if state is not None else None

    def discard(self, resource_id: str) -> bool:
        existed = self._states.pop(resource_id, None) is not None
        lock = self._locks.get(resource_id)
        if lock is not None and not lock.locked():
            del self._locks[resource_id]
        return existed

    async def sync(
        self,
        resource_id: str,
        fetch_range: RangeFetcher,
        job_id: Optional[str] = None,
        since_offset: int = 0,
    ) -> DeltaResult[PipelineLogSegment]:
        """Fetch new log bytes and return them as an ``added`` segment.

        Args:
            resource_id: Identity of the log
            fetch_range: Fetches the log from a byte offset to its end
            job_id: Recorded on segments; defaults to ``resource_id``
            since_offset: Bytes before this offset count as delivered on the
                first sync of this log

        Raises:
            SyncIntegrityError: If a resync from offset 0 is inconsistent too
        """
        async with self._lock_for(resource_id):
            state = self._states.get(resource_id)
            if state is None:
                state = _LogState(
                    job_id=job_id or resource_id,
                    length=max(0, since_offset),
                    segments=(),
                )

            try:
                chunk = await fetch_range(state.length)
                segment = self._apply(state, chunk)
            except _Truncated as e:
                logger.info(f"Log {resource_id} was restarted ({e}), rereading")
                return await self._restart(resource_id, state, fetch_range)
            except SyncIntegrityError as e:
                logger.warning(f"Log {resource_id} is inconsistent ({e}), rereading")
                return await self._restart(resource_id, state, fetch_range)

            if segment is None:
                self._states[resource_id] = state
                return DeltaResult(
                    resource_id=resource_id,
                    unchanged=True,
                    version=str(state.length),
                )

            self._states[resource_id] = _LogState(
                job_id=state.job_id,
                length=segment.end,
                segments=state.segments + (segment,),
            )
            return DeltaResult(
                resource_id=resource_id,
                added=(segment,),
                version=str(segment.end),
            )

    async def _restart(
        self, resource_id: str, state: _LogState, fetch_range: RangeFetcher
    ) -> DeltaResult[PipelineLogSegment]:
        """Discard delivered segments and reread the log from offset 0."""
        fresh = _LogState(job_id=state.job_id, length=0, segments=())
        chunk = await fetch_range(0)
        try:
            segment = self._apply(fresh, chunk)
        except _Truncated as e:
            raise SyncIntegrityError(f"Log {resource_id} reread from 0 failed: {e}")

        segments = (segment,) if segment is not None else ()
        length = segment.end if segment is not None else 0
        self._states[resource_id] = _LogState(
            job_id=state.job_id, length=length, segments=segments
        )
        return DeltaResult(
            resource_id=resource_id,
            added=segments,
            removed=state.segments,
            unchanged=False,
            version=str(length),
            reset=True,
        )

    @staticmethod
    def _apply(state: _LogState, chunk: LogChunk) -> Optional[PipelineLogSegment]:
        known = state.length
        total = chunk.total_length

        if total is not None and total < known:
            raise _Truncated(f"length {total} < delivered {known}")

        if chunk.offset > known:
            raise SyncIntegrityError(
                f"Chunk starts at {chunk.offset}, past delivered length {known}"
            )

        if total is not None and chunk.end > total:
            raise SyncIntegrityError(
                f"Chunk ends at {chunk.end}, past reported length {total}"
            )

        content = chunk.content
        if chunk.offset < known:
            # Server ignored the range; drop what was already delivered
            content = content[known - chunk.offset :]

        if not content:
            return None

        return PipelineLogSegment(job_id=state.job_id, byte_offset=known, content=content)
