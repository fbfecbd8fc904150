"""Pull Request API Client.

Pull requests, reviewers, votes, comment threads, completion and changed
files for one repository.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..remote.exceptions import ConflictError, ReviewClientError
from .base_client import ServiceApiClient, decode_object

logger = logging.getLogger(__name__)

PROFILE_URL = "https://app.vssps.visualstudio.com/_apis/profile/profiles/me"
REFS_HEADS = "refs/heads/"


class PullRequestStatus(str, Enum):
    NOT_SET = "notSet"
    ACTIVE = "active"
    ABANDONED = "abandoned"
    COMPLETED = "completed"
    ALL = "all"


class ThreadStatus(str, Enum):
    UNKNOWN = "unknown"
    ACTIVE = "active"
    FIXED = "fixed"
    WONT_FIX = "wontFix"
    CLOSED = "closed"
    BY_DESIGN = "byDesign"
    PENDING = "pending"

    @classmethod
    def parse(cls, value: Any) -> "ThreadStatus":
        # The service sometimes reports numeric statuses
        numeric = {
            0: cls.UNKNOWN,
            1: cls.ACTIVE,
            2: cls.FIXED,
            3: cls.WONT_FIX,
            4: cls.CLOSED,
            5: cls.BY_DESIGN,
            6: cls.PENDING,
        }
        if isinstance(value, int):
            return numeric.get(value, cls.UNKNOWN)
        for status in cls:
            if isinstance(value, str) and status.value.lower() == value.lower():
                return status
        return cls.UNKNOWN


class Vote(int, Enum):
    APPROVED = 10
    APPROVED_WITH_SUGGESTIONS = 5
    NO_VOTE = 0
    WAITING_FOR_AUTHOR = -5
    REJECTED = -10


class MergeStrategy(str, Enum):
    NO_FAST_FORWARD = "noFastForward"
    SQUASH = "squash"
    REBASE = "rebase"
    REBASE_MERGE = "rebaseMerge"

    @property
    def display_name(self) -> str:
        return {
            MergeStrategy.NO_FAST_FORWARD: "Merge commit (no fast-forward)",
            MergeStrategy.SQUASH: "Squash commit",
            MergeStrategy.REBASE: "Rebase and fast-forward",
            MergeStrategy.REBASE_MERGE: "Rebase and merge",
        }[self]


class IdentityRef(BaseModel):
    """A user as referenced from pull requests and comments."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    display_name: str = ""
    unique_name: str = ""
    image_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "IdentityRef":
        data = data or {}
        return cls(
            id=data.get("id") or "",
            display_name=data.get("displayName") or "",
            unique_name=data.get("uniqueName") or "",
            image_url=data.get("imageUrl")
            or ((data.get("_links") or {}).get("avatar") or {}).get("href"),
        )


class Reviewer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    unique_name: str = ""
    vote: int = 0
    is_required: bool = False
    image_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Reviewer":
        return cls(
            id=data.get("id") or "",
            display_name=data.get("displayName") or "",
            unique_name=data.get("uniqueName") or "",
            vote=int(data.get("vote") or 0),
            is_required=bool(data.get("isRequired")),
            image_url=data.get("imageUrl"),
        )

    def to_identity(self) -> IdentityRef:
        return IdentityRef(
            id=self.id,
            display_name=self.display_name,
            unique_name=self.unique_name,
            image_url=self.image_url,
        )


class PullRequest(BaseModel):
    """Read-through copy of a pull request."""

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    description: str = ""
    source_branch: str
    target_branch: str
    status: str = PullRequestStatus.ACTIVE.value
    reviewers: List[Reviewer] = Field(default_factory=list)
    created_by: IdentityRef = Field(default_factory=IdentityRef)
    created_at: Optional[datetime] = None
    is_draft: bool = False
    url: Optional[str] = None
    merge_status: Optional[str] = None
    last_merge_source_commit: Optional[str] = None
    auto_complete_set_by: Optional[IdentityRef] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PullRequest":
        return cls(
            id=data["pullRequestId"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            source_branch=strip_ref(data.get("sourceRefName") or ""),
            target_branch=strip_ref(data.get("targetRefName") or ""),
            status=data.get("status") or PullRequestStatus.NOT_SET.value,
            reviewers=[Reviewer.from_api(r) for r in data.get("reviewers") or []],
            created_by=IdentityRef.from_api(data.get("createdBy")),
            created_at=data.get("creationDate"),
            is_draft=bool(data.get("isDraft")),
            url=data.get("url"),
            merge_status=data.get("mergeStatus"),
            last_merge_source_commit=(data.get("lastMergeSourceCommit") or {}).get(
                "commitId"
            ),
            auto_complete_set_by=(
                IdentityRef.from_api(data["autoCompleteSetBy"])
                if data.get("autoCompleteSetBy")
                else None
            ),
        )


class CompletionOptions(BaseModel):
    """How a pull request is merged when it completes."""

    model_config = ConfigDict(frozen=True)

    merge_strategy: MergeStrategy = MergeStrategy.SQUASH
    delete_source_branch: bool = False
    merge_commit_message: Optional[str] = None
    bypass_policy: bool = False
    bypass_reason: Optional[str] = None
    transition_work_items: bool = True

    @model_validator(mode="after")
    def check_bypass_reason(self) -> "CompletionOptions":
        if self.bypass_policy and not (self.bypass_reason or "").strip():
            raise ValueError("bypass_policy requires a bypass_reason")
        return self

    def to_api(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "mergeStrategy": self.merge_strategy.value,
            "deleteSourceBranch": self.delete_source_branch,
            "transitionWorkItems": self.transition_work_items,
        }
        if self.merge_commit_message:
            body["mergeCommitMessage"] = self.merge_commit_message
        if self.bypass_policy:
            body["bypassPolicy"] = True
            body["bypassReason"] = self.bypass_reason
        return body


class PullRequestChange(BaseModel):
    """A file touched by the latest iteration of a pull request."""

    model_config = ConfigDict(frozen=True)

    change_id: int = 0
    change_type: str = ""
    path: str = ""
    original_path: Optional[str] = None
    object_id: Optional[str] = None
    commit_id: Optional[str] = None
    is_folder: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PullRequestChange":
        item = data.get("item") or {}
        return cls(
            change_id=data.get("changeId") or 0,
            change_type=data.get("changeType") or "",
            path=item.get("path") or "",
            original_path=data.get("originalPath"),
            object_id=item.get("objectId"),
            commit_id=item.get("commitId"),
            is_folder=bool(item.get("isFolder")) or item.get("gitObjectType") == "tree",
        )


class Comment(BaseModel):
    """One comment; identity is (thread_id, id)."""

    model_config = ConfigDict(frozen=True)

    id: int
    thread_id: int
    parent_comment_id: int = 0
    author: IdentityRef = Field(default_factory=IdentityRef)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    body: str = ""
    is_deleted: bool = False

    @property
    def key(self) -> str:
        return f"{self.thread_id}:{self.id}"

    @classmethod
    def from_api(cls, data: Dict[str, Any], thread_id: int) -> "Comment":
        return cls(
            id=data["id"],
            thread_id=thread_id,
            parent_comment_id=data.get("parentCommentId") or 0,
            author=IdentityRef.from_api(data.get("author")),
            created_at=data.get("publishedDate"),
            updated_at=data.get("lastContentUpdatedDate") or data.get("lastUpdatedDate"),
            body=data.get("content") or "",
            is_deleted=bool(data.get("isDeleted")),
        )


class CommentThread(BaseModel):
    """A comment thread; no ``file_path`` means a general pull request comment."""

    model_config = ConfigDict(frozen=True)

    id: int
    file_path: Optional[str] = None
    line: Optional[int] = None
    status: ThreadStatus = ThreadStatus.UNKNOWN
    comments: List[Comment] = Field(default_factory=list)
    is_deleted: bool = False

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def is_resolved(self) -> bool:
        return self.status in (ThreadStatus.FIXED, ThreadStatus.CLOSED)

    @property
    def is_general(self) -> bool:
        return not self.file_path

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CommentThread":
        context = data.get("pullRequestThreadContext") or {}
        file_context = data.get("threadContext") or {}
        file_path = context.get("filePath") or file_context.get("filePath")
        start = context.get("rightFileStart") or file_context.get("rightFileStart") or {}
        thread_id = data["id"]
        return cls(
            id=thread_id,
            file_path=file_path,
            line=start.get("line"),
            status=ThreadStatus.parse(data.get("status")),
            comments=[
                Comment.from_api(c, thread_id) for c in data.get("comments") or []
            ],
            is_deleted=bool(data.get("isDeleted")),
        )


class ThreadListing(BaseModel):
    """Result of a conditional thread listing."""

    threads: List[CommentThread] = Field(default_factory=list)
    etag: Optional[str] = None
    not_modified: bool = False


def strip_ref(ref_name: str) -> str:
    return ref_name[len(REFS_HEADS) :] if ref_name.startswith(REFS_HEADS) else ref_name


def to_ref(branch: str) -> str:
    branch = branch.strip()
    return branch if branch.startswith("refs/") else f"{REFS_HEADS}{branch}"


def ensure_distinct_branches(source_branch: str, target_branch: str) -> None:
    """Raise ``ConflictError`` when source and target name the same branch."""
    if to_ref(source_branch) == to_ref(target_branch):
        raise ConflictError(
            "Source and target branch are the same",
            status_code=None,
            detail=f"{strip_ref(to_ref(source_branch))} -> {strip_ref(to_ref(target_branch))}",
        )


class PullRequestsAPIClient(ServiceApiClient):
    """API client for pull request operations."""

    _current_user_id: Optional[str] = None

    def _pull_requests_url(self, suffix: str = "") -> str:
        return self.repository_url(f"pullrequests{suffix}")

    async def list_pull_requests(
        self, status: str = "active", top: int = 100
    ) -> List[PullRequest]:
        """List pull requests for the repository.

        Args:
            status: active, completed, abandoned or all
            top: Maximum number of pull requests to return
        """
        request = self.build_request(
            "GET",
            self._pull_requests_url(),
            params={"searchCriteria.status": status, "$top": top},
        )
        items = await self.transport.paginate(request).collect()
        return [PullRequest.from_api(item) for item in items[:top]]

    async def get_pull_request(self, pull_request_id: int) -> PullRequest:
        data = await self._get_json(self._pull_requests_url(f"/{pull_request_id}"))
        return PullRequest.from_api(data)

    async def find_pull_request_for_branch(
        self, branch: str, target_branch: Optional[str] = None
    ) -> Optional[PullRequest]:
        """Return the active pull request whose source is ``branch``, if any."""
        params = {
            "searchCriteria.status": "active",
            "searchCriteria.sourceRefName": to_ref(branch),
        }
        if target_branch:
            params["searchCriteria.targetRefName"] = to_ref(target_branch)
        data = await self._get_json(self._pull_requests_url(), **params)
        values = data.get("value") or []
        return PullRequest.from_api(values[0]) if values else None

    async def create_pull_request(
        self,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str = "",
        reviewers: Optional[List[Dict[str, Any]]] = None,
    ) -> PullRequest:
        """Create a pull request.

        Args:
            reviewers: ``{"id": ..., "isRequired": bool}`` entries

        Raises:
            ConflictError: If source equals target (no request is sent) or
                the service reports a conflicting pull request
        """
        ensure_distinct_branches(source_branch, target_branch)
        source_ref = to_ref(source_branch)
        target_ref = to_ref(target_branch)

        body: Dict[str, Any] = {
            "sourceRefName": source_ref,
            "targetRefName": target_ref,
            "title": title,
            "description": description,
        }
        if reviewers:
            body["reviewers"] = reviewers

        logger.info(f"Creating pull request {source_ref} -> {target_ref}")
        response = await self.transport.execute(
            self.build_request("POST", self._pull_requests_url(), json_body=body)
        )
        return PullRequest.from_api(decode_object(response))

    async def _update_pull_request(
        self, pull_request_id: int, body: Dict[str, Any]
    ) -> PullRequest:
        response = await self.transport.execute(
            self.build_request(
                "PATCH", self._pull_requests_url(f"/{pull_request_id}"), json_body=body
            )
        )
        return PullRequest.from_api(decode_object(response))

    async def complete_pull_request(
        self, pull_request_id: int, options: Optional[CompletionOptions] = None
    ) -> PullRequest:
        """Merge an active pull request.

        Raises:
            ConflictError: If the pull request is not active or has no merge
                source commit yet (no update is sent)
        """
        options = options or CompletionOptions()
        current = await self.get_pull_request(pull_request_id)
        if current.status != PullRequestStatus.ACTIVE.value:
            raise ConflictError(
                f"Pull request #{pull_request_id} is not active",
                status_code=None,
                detail=current.status,
            )
        if not current.last_merge_source_commit:
            raise ConflictError(
                f"Pull request #{pull_request_id} has no merge source commit",
                status_code=None,
            )

        logger.info(
            f"Completing pull request #{pull_request_id} "
            f"({options.merge_strategy.display_name})"
        )
        return await self._update_pull_request(
            pull_request_id,
            {
                "status": PullRequestStatus.COMPLETED.value,
                "lastMergeSourceCommit": {"commitId": current.last_merge_source_commit},
                "completionOptions": options.to_api(),
            },
        )

    async def set_auto_complete(
        self, pull_request_id: int, options: Optional[CompletionOptions] = None
    ) -> PullRequest:
        """Complete the pull request on the current user's behalf once policies pass."""
        options = options or CompletionOptions()
        user_id = await self.get_current_user_id()
        logger.info(f"Setting auto-complete on pull request #{pull_request_id}")
        return await self._update_pull_request(
            pull_request_id,
            {
                "autoCompleteSetBy": {"id": user_id},
                "completionOptions": options.to_api(),
            },
        )

    async def list_changes(self, pull_request_id: int) -> List[PullRequestChange]:
        """Files changed by the latest iteration of the pull request."""
        iterations = await self.transport.paginate(
            self.build_request(
                "GET", self._pull_requests_url(f"/{pull_request_id}/iterations")
            )
        ).collect()
        if not iterations:
            return []

        latest = max(int(iteration.get("id") or 0) for iteration in iterations)
        request = self.build_request(
            "GET",
            self._pull_requests_url(f"/{pull_request_id}/iterations/{latest}/changes"),
        )
        entries = await self.transport.paginate(
            request, items_key="changeEntries"
        ).collect()
        return [PullRequestChange.from_api(entry) for entry in entries]

    async def search_identities(self, text: str, limit: int = 10) -> List[IdentityRef]:
        """Find reviewer candidates among people active in recent pull requests.

        Matches ``text`` case-insensitively against display and unique names
        of the creators and reviewers of the 100 most recent pull requests.
        """
        pull_requests = await self.list_pull_requests(
            status=PullRequestStatus.ALL.value, top=100
        )
        known: Dict[str, IdentityRef] = {}
        for pull_request in pull_requests:
            people = [pull_request.created_by]
            people.extend(reviewer.to_identity() for reviewer in pull_request.reviewers)
            for person in people:
                if person.id and person.id not in known:
                    known[person.id] = person

        needle = text.strip().lower()
        matches = [
            person
            for person in known.values()
            if person.display_name.strip()
            and (
                needle in person.display_name.lower()
                or needle in person.unique_name.lower()
            )
        ]
        matches.sort(key=lambda person: person.display_name.lower())
        logger.debug(f"{len(matches)} of {len(known)} known identities match '{text}'")
        return matches[:limit]

    async def list_threads(
        self, pull_request_id: int, etag: Optional[str] = None
    ) -> ThreadListing:
        """List comment threads, conditionally when ``etag`` is given."""
        headers = {"If-None-Match": etag} if etag else {}
        request = self.build_request(
            "GET",
            self._pull_requests_url(f"/{pull_request_id}/threads"),
            headers=headers,
            accept_statuses=(304,),
        )
        response = await self.transport.execute(request)
        if response.status_code == 304:
            return ThreadListing(etag=etag, not_modified=True)

        values = decode_object(response).get("value") or []
        threads = [
            CommentThread.from_api(item)
            for item in values
            if not item.get("isDeleted")
        ]
        return ThreadListing(threads=threads, etag=response.headers.get("ETag"))

    async def create_thread(
        self,
        pull_request_id: int,
        content: str,
        file_path: Optional[str] = None,
        line: Optional[int] = None,
    ) -> CommentThread:
        """Start a new thread, anchored to a file line when ``file_path`` is set."""
        body: Dict[str, Any] = {
            "comments": [{"parentCommentId": 0, "content": content, "commentType": 1}],
            "status": 1,
        }
        if file_path:
            position = {"line": line or 1, "offset": 1}
            body["threadContext"] = {
                "filePath": file_path if file_path.startswith("/") else f"/{file_path}",
                "rightFileStart": position,
                "rightFileEnd": position,
            }

        response = await self.transport.execute(
            self.build_request(
                "POST",
                self._pull_requests_url(f"/{pull_request_id}/threads"),
                json_body=body,
            )
        )
        return CommentThread.from_api(decode_object(response))

    async def reply_to_thread(
        self,
        pull_request_id: int,
        thread_id: int,
        content: str,
        parent_comment_id: int = 1,
    ) -> Comment:
        body = {
            "content": content,
            "parentCommentId": parent_comment_id,
            "commentType": 1,
        }
        response = await self.transport.execute(
            self.build_request(
                "POST",
                self._pull_requests_url(
                    f"/{pull_request_id}/threads/{thread_id}/comments"
                ),
                json_body=body,
            )
        )
        return Comment.from_api(decode_object(response), thread_id)

    async def update_thread_status(
        self, pull_request_id: int, thread_id: int, status: ThreadStatus
    ) -> CommentThread:
        response = await self.transport.execute(
            self.build_request(
                "PATCH",
                self._pull_requests_url(f"/{pull_request_id}/threads/{thread_id}"),
                json_body={"status": status.value},
            )
        )
        return CommentThread.from_api(decode_object(response))

    async def get_current_user_id(self) -> str:
        if self._current_user_id:
            return self._current_user_id

        data = await self._get_json(PROFILE_URL)
        user_id = data.get("id")
        if not user_id:
            raise ReviewClientError("No user id in profile response")
        self._current_user_id = user_id
        return user_id

    async def vote(self, pull_request_id: int, vote: Vote) -> Reviewer:
        reviewer_id = await self.get_current_user_id()
        logger.info(f"Voting {vote.value} on pull request #{pull_request_id}")
        response = await self.transport.execute(
            self.build_request(
                "PUT",
                self._pull_requests_url(
                    f"/{pull_request_id}/reviewers/{reviewer_id}"
                ),
                json_body={"vote": vote.value},
            )
        )
        return Reviewer.from_api(decode_object(response))
