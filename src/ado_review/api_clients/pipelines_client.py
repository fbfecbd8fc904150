"""Pipelines API Client.

Builds, build definitions, timelines (stage/job/task records) and build log
ranges for one project.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..remote.exceptions import ServiceError
from .base_client import ServiceApiClient, decode_object
from .pull_requests_client import strip_ref, to_ref

logger = logging.getLogger(__name__)

_CONTENT_RANGE = re.compile(r"bytes\s+(?:(\d+)-(\d+)|\*)/(\d+|\*)", re.IGNORECASE)


class BuildDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    path: str = ""

    @property
    def display_name(self) -> str:
        if not self.path or self.path == "\\":
            return self.name
        return f"{self.path}\\{self.name}"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BuildDefinition":
        return cls(id=data["id"], name=data.get("name") or "", path=data.get("path") or "")


class Build(BaseModel):
    """A pipeline run."""

    model_config = ConfigDict(frozen=True)

    id: int
    build_number: str = ""
    status: str = "none"
    result: Optional[str] = None
    definition_id: Optional[int] = None
    definition_name: str = ""
    source_branch: str = ""
    queue_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status == "inProgress"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Build":
        definition = data.get("definition") or {}
        return cls(
            id=data["id"],
            build_number=data.get("buildNumber") or "",
            status=data.get("status") or "none",
            result=data.get("result"),
            definition_id=definition.get("id"),
            definition_name=definition.get("name") or "",
            source_branch=strip_ref(data.get("sourceBranch") or ""),
            queue_time=data.get("queueTime"),
            start_time=data.get("startTime"),
            finish_time=data.get("finishTime"),
        )


class TimelineRecord(BaseModel):
    """One Stage, Phase, Job, Task or Checkpoint record of a build timeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: Optional[str] = None
    type: str = ""
    name: str = ""
    state: Optional[str] = None
    result: Optional[str] = None
    order: int = 0
    log_id: Optional[int] = None
    start_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None
    error_count: int = 0
    warning_count: int = 0

    @property
    def key(self) -> str:
        return self.id

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TimelineRecord":
        log = data.get("log") or {}
        return cls(
            id=data["id"],
            parent_id=data.get("parentId"),
            type=data.get("type") or "",
            name=data.get("name") or "",
            state=data.get("state"),
            result=data.get("result"),
            order=data.get("order") or 0,
            log_id=log.get("id"),
            start_time=data.get("startTime"),
            finish_time=data.get("finishTime"),
            error_count=data.get("errorCount") or 0,
            warning_count=data.get("warningCount") or 0,
        )


class PipelineJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    record: TimelineRecord
    tasks: List[TimelineRecord] = Field(default_factory=list)


class PipelineStage(BaseModel):
    """A stage record with its ordered jobs, each with ordered tasks."""

    model_config = ConfigDict(frozen=True)

    record: TimelineRecord
    jobs: List[PipelineJob] = Field(default_factory=list)


class Timeline(BaseModel):
    records: List[TimelineRecord] = Field(default_factory=list)
    change_id: Optional[int] = None

    def children(self, parent_id: str) -> List[TimelineRecord]:
        return sorted(
            (r for r in self.records if r.parent_id == parent_id),
            key=lambda r: r.order,
        )

    def stages(self) -> List[PipelineStage]:
        """Stage -> Job -> Task hierarchy.

        Jobs are found under a stage either directly or through Phase
        records, which classic and YAML pipelines interpose differently.
        """
        result = []
        stage_records = sorted(
            (r for r in self.records if r.type == "Stage"), key=lambda r: r.order
        )
        for stage in stage_records:
            jobs = []
            for child in self.children(stage.id):
                if child.type == "Job":
                    jobs.append(child)
                elif child.type == "Phase":
                    jobs.extend(c for c in self.children(child.id) if c.type == "Job")
            jobs.sort(key=lambda r: r.order)
            result.append(
                PipelineStage(
                    record=stage,
                    jobs=[
                        PipelineJob(
                            record=job,
                            tasks=[t for t in self.children(job.id) if t.type == "Task"],
                        )
                        for job in jobs
                    ],
                )
            )
        return result


@dataclass(frozen=True)
class LogChunk:
    """Bytes of a build log starting at ``offset``.

    ``total_length`` is the log length the server reported, when it did.
    """

    offset: int
    content: bytes
    total_length: Optional[int] = None

    @property
    def end(self) -> int:
        return self.offset + len(self.content)


def parse_content_range(value: Optional[str]) -> Optional[tuple]:
    """Parse ``bytes start-end/total`` (or ``bytes */total``).

    Returns:
        (start or None, total or None), or None when absent or malformed
    """
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if not match:
        return None
    start = int(match.group(1)) if match.group(1) is not None else None
    total = int(match.group(3)) if match.group(3) != "*" else None
    return start, total


class PipelinesAPIClient(ServiceApiClient):
    """API client for build and pipeline operations."""

    def _builds_url(self, suffix: str = "") -> str:
        return self.project_url(f"build/builds{suffix}")

    async def list_definitions(self) -> List[BuildDefinition]:
        request = self.build_request("GET", self.project_url("build/definitions"))
        items = await self.transport.paginate(request).collect()
        return [BuildDefinition.from_api(item) for item in items]

    async def list_builds(
        self,
        branch: Optional[str] = None,
        top: int = 20,
        definition_id: Optional[int] = None,
    ) -> List[Build]:
        params: Dict[str, Any] = {"$top": top, "queryOrder": "queueTimeDescending"}
        if branch:
            params["branchName"] = to_ref(branch)
        if definition_id is not None:
            params["definitions"] = definition_id
        data = await self._get_json(self._builds_url(), **params)
        return [Build.from_api(item) for item in (data.get("value") or [])[:top]]

    async def get_build(self, build_id: int) -> Build:
        return Build.from_api(await self._get_json(self._builds_url(f"/{build_id}")))

    async def queue_build(self, definition_id: int, branch: str) -> Build:
        body = {"definition": {"id": definition_id}, "sourceBranch": to_ref(branch)}
        logger.info(f"Queueing definition {definition_id} on {branch}")
        response = await self.transport.execute(
            self.build_request("POST", self._builds_url(), json_body=body)
        )
        return Build.from_api(decode_object(response))

    async def get_timeline(self, build_id: int) -> Timeline:
        response = await self.transport.execute(
            self.build_request("GET", self._builds_url(f"/{build_id}/timeline"))
        )
        # A build that has not started yet has no timeline body
        data = decode_object(response, default={})
        return Timeline(
            records=[TimelineRecord.from_api(r) for r in data.get("records") or []],
            change_id=data.get("changeId"),
        )

    async def fetch_log_range(
        self, build_id: int, log_id: int, offset: int = 0
    ) -> LogChunk:
        """Fetch the log bytes from ``offset`` to the current end.

        A 206 carries the requested range; a 200 means the server ignored the
        range and sent the whole log; a 416 means there is nothing past
        ``offset`` (or the log shrank).
        """
        headers = {"Accept": "text/plain"}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        request = self.build_request(
            "GET",
            self._builds_url(f"/{build_id}/logs/{log_id}"),
            headers=headers,
            accept_statuses=(416,),
        )
        response = await self.transport.execute(request)
        content_range = parse_content_range(response.headers.get("Content-Range"))

        if response.status_code == 416:
            total = content_range[1] if content_range else None
            return LogChunk(offset=offset, content=b"", total_length=total)

        if response.status_code == 206:
            if content_range is None or content_range[0] is None:
                raise ServiceError(
                    "Partial log response without Content-Range",
                    status_code=206,
                )
            start, total = content_range
            return LogChunk(offset=start, content=response.content, total_length=total)

        content = response.content
        return LogChunk(offset=0, content=content, total_length=len(content))
