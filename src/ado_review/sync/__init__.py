"""Delta synchronization of remote collections and pipeline logs."""

from .delta_engine import (
    DeltaResult,
    DeltaSyncEngine,
    FetchResult,
    Snapshot,
    content_hash,
)
from .log_sync import LogSyncEngine, PipelineLogSegment

__all__ = [
    "DeltaResult",
    "DeltaSyncEngine",
    "FetchResult",
    "Snapshot",
    "content_hash",
    "LogSyncEngine",
    "PipelineLogSegment",
]
