"""Review Service Business Logic.

The one component the UI layer talks to. Every operation resolves the
account for the repository, runs through the API clients (which acquire
tokens inside the transport), routes collection results through the sync
engines and returns an ``OperationResult`` instead of raising.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

import httpx

from ..api_clients.base_client import ApiRequest, RestTransport
from ..api_clients.network_error_handler import UserGuidance, UserGuidanceProvider
from ..api_clients.pipelines_client import (
    Build,
    BuildDefinition,
    PipelinesAPIClient,
    PipelineStage,
    Timeline,
    TimelineRecord,
)
from ..api_clients.pull_requests_client import (
    Comment,
    CommentThread,
    CompletionOptions,
    IdentityRef,
    PullRequest,
    PullRequestChange,
    PullRequestsAPIClient,
    Reviewer,
    ThreadStatus,
    Vote,
    ensure_distinct_branches,
)
from ..config import Config
from ..remote.account_resolver import AccountResolver
from ..remote.credential_manager import CredentialStore, EncryptedFileCredentialStore
from ..remote.exceptions import (
    AccountNotFoundError,
    AuthError,
    AvatarUnavailableError,
    BadRequestError,
    MalformedResponseError,
    NoMatchingAccountError,
    ReviewClientError,
    SyncIntegrityError,
)
from ..remote.models import AccountKey, AccountSummary, AuthResult
from ..remote.oauth import OAuthTokenRefresher, TokenRefresher
from ..remote.polling import CancellationToken, Poller, Ticker
from ..remote.token_manager import TokenLifecycleManager
from ..remote.url_parser import RepositoryIdentity, parse_remote_url
from ..services.avatar_cache import AvatarCache
from ..sync.delta_engine import DeltaResult, DeltaSyncEngine, FetchResult, content_hash
from ..sync.log_sync import LogSyncEngine, PipelineLogSegment

logger = logging.getLogger(__name__)

T = TypeVar("T")

Repository = Union[RepositoryIdentity, str]


class ErrorCategory(str, Enum):
    """How the UI should react to a failed operation."""

    RETRY_SILENTLY = "retry_silently"
    PROMPT_REAUTH = "prompt_reauth"
    SHOW_MESSAGE = "show_message"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a facade operation: a value, or a categorized error."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    category: Optional[ErrorCategory] = None
    message: str = ""
    guidance: Optional[UserGuidance] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the error of a failed result."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map an exception to the UI reaction it calls for."""
    if isinstance(error, (AuthError, NoMatchingAccountError)):
        return ErrorCategory.PROMPT_REAUTH
    if isinstance(error, ReviewClientError) and error.is_retryable:
        return ErrorCategory.RETRY_SILENTLY
    return ErrorCategory.SHOW_MESSAGE


@dataclass(frozen=True)
class CommentThreadsView:
    """Current threads of a pull request plus what changed since last time."""

    threads: List[CommentThread]
    threads_delta: DeltaResult[CommentThread]
    comments_delta: DeltaResult[Comment]

    @property
    def unchanged(self) -> bool:
        return self.threads_delta.unchanged and self.comments_delta.unchanged


@dataclass(frozen=True)
class PipelineStagesView:
    """Stage/job/task tree of a build plus the timeline records that changed."""

    stages: List[PipelineStage]
    delta: DeltaResult[TimelineRecord]

    @property
    def unchanged(self) -> bool:
        return self.delta.unchanged


@dataclass
class WatchHandle:
    """A running watch; ``stop_watching(resource_id)`` ends it."""

    resource_id: str
    token: CancellationToken
    poller: Poller = field(repr=False)
    task: "asyncio.Task[None]" = field(repr=False)

    @property
    def is_active(self) -> bool:
        return not self.token.is_cancelled and not self.task.done()


def resource_id_for(repository: RepositoryIdentity, kind: str, *parts: Any) -> str:
    """Sync resource identity, unique across organizations and projects."""
    scope = (
        f"{repository.organization_key}/{repository.project}/{repository.repository}"
    )
    suffix = ":".join(str(p) for p in parts)
    return f"{kind}:{scope}:{suffix}"


class ReviewService:
    """Pull request review, pipeline and account operations for the UI."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        transport: Optional[RestTransport] = None,
        config: Optional[Config] = None,
        resolver: Optional[AccountResolver] = None,
        sync_engine: Optional[DeltaSyncEngine] = None,
        log_engine: Optional[LogSyncEngine] = None,
        ticker: Optional[Ticker] = None,
    ):
        self.config = config or Config()
        self.token_manager = token_manager
        self.transport = transport or RestTransport(
            token_manager, config=self.config.transport
        )
        self.resolver = resolver or AccountResolver(token_manager)
        self.sync_engine = sync_engine or DeltaSyncEngine()
        self.log_engine = log_engine or LogSyncEngine()
        self.ticker = ticker
        self.guidance_provider = UserGuidanceProvider()

        self._avatar_caches: Dict[str, AvatarCache] = {}
        self._watches: Dict[str, WatchHandle] = {}
        self._related: Dict[str, Tuple[str, ...]] = {}

    @classmethod
    def create(
        cls,
        config: Optional[Config] = None,
        store: Optional[CredentialStore] = None,
        refresher: Optional[TokenRefresher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ReviewService":
        """Wire the production stack: encrypted account files, OAuth refresh."""
        config = config or Config()
        store = store or EncryptedFileCredentialStore(config.accounts_dir)
        refresher = refresher or OAuthTokenRefresher(config.tokens)
        token_manager = TokenLifecycleManager(store, refresher, config=config.tokens)
        transport = RestTransport(
            token_manager, config=config.transport, client=http_client
        )
        return cls(token_manager, transport=transport, config=config)

    async def load(self) -> OperationResult[int]:
        """Load stored accounts. Call once before other operations."""
        return await self._run("load accounts", self.token_manager.load_accounts)

    async def close(self) -> None:
        for resource_id in list(self._watches):
            self.stop_watching(resource_id)
        await self.transport.close()
        close_refresher = getattr(self.token_manager.refresher, "close", None)
        if close_refresher is not None:
            await close_refresher()

    async def __aenter__(self) -> "ReviewService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Result mapping

    async def _run(
        self, description: str, operation: Callable[[], Awaitable[T]]
    ) -> OperationResult[T]:
        try:
            value = await operation()
        except asyncio.CancelledError:
            raise
        except ReviewClientError as e:
            return self._failure(description, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {description}")
            return OperationResult(
                error=e,
                category=ErrorCategory.SHOW_MESSAGE,
                message=f"Unexpected error: {e}",
                guidance=self.guidance_provider.get_guidance(e),
            )
        return OperationResult(value=value)

    def _failure(self, description: str, error: Exception) -> OperationResult[Any]:
        category = categorize_error(error)
        if category == ErrorCategory.RETRY_SILENTLY:
            logger.info(f"{description} failed, will retry: {error}")
        else:
            logger.warning(f"{description} failed: {error}")
        return OperationResult(
            error=error,
            category=category,
            message=str(error),
            guidance=self.guidance_provider.get_guidance(error),
        )

    # Client construction

    @staticmethod
    def _repository(repo: Repository) -> RepositoryIdentity:
        if isinstance(repo, RepositoryIdentity):
            return repo
        return parse_remote_url(repo)

    def _pull_requests(self, repository: RepositoryIdentity) -> PullRequestsAPIClient:
        account = self.resolver.resolve(repository)
        return PullRequestsAPIClient(self.transport, repository, account.key)

    def _pipelines(self, repository: RepositoryIdentity) -> PipelinesAPIClient:
        account = self.resolver.resolve(repository)
        return PipelinesAPIClient(self.transport, repository, account.key)

    # Pull requests

    async def list_pull_requests(
        self, repo: Repository, status: str = "active", top: int = 100
    ) -> OperationResult[List[PullRequest]]:
        async def operation() -> List[PullRequest]:
            client = self._pull_requests(self._repository(repo))
            return await client.list_pull_requests(status=status, top=top)

        return await self._run("list pull requests", operation)

    async def get_pull_request(
        self, repo: Repository, pr_id: int
    ) -> OperationResult[PullRequest]:
        async def operation() -> PullRequest:
            client = self._pull_requests(self._repository(repo))
            return await client.get_pull_request(pr_id)

        return await self._run(f"get pull request #{pr_id}", operation)

    async def create_pull_request(
        self,
        repo: Repository,
        source: str,
        target: str,
        title: str,
        description: str = "",
        reviewers: Optional[List[Dict[str, Any]]] = None,
    ) -> OperationResult[PullRequest]:
        async def operation() -> PullRequest:
            ensure_distinct_branches(source, target)
            client = self._pull_requests(self._repository(repo))
            return await client.create_pull_request(
                source, target, title, description=description, reviewers=reviewers
            )

        return await self._run("create pull request", operation)

    async def find_pull_request_for_branch(
        self, repo: Repository, branch: str, target: Optional[str] = None
    ) -> OperationResult[Optional[PullRequest]]:
        """The active pull request whose source is ``branch``; None when there is none."""

        async def operation() -> Optional[PullRequest]:
            client = self._pull_requests(self._repository(repo))
            return await client.find_pull_request_for_branch(branch, target_branch=target)

        return await self._run(f"find pull request for {branch}", operation)

    async def complete_pull_request(
        self,
        repo: Repository,
        pr_id: int,
        options: Optional[CompletionOptions] = None,
        comment: Optional[str] = None,
    ) -> OperationResult[PullRequest]:
        async def operation() -> PullRequest:
            client = self._pull_requests(self._repository(repo))
            completed = await client.complete_pull_request(pr_id, options)
            await self._post_follow_up(client, pr_id, comment)
            return completed

        return await self._run(f"complete pull request #{pr_id}", operation)

    async def set_auto_complete(
        self,
        repo: Repository,
        pr_id: int,
        options: Optional[CompletionOptions] = None,
        comment: Optional[str] = None,
    ) -> OperationResult[PullRequest]:
        async def operation() -> PullRequest:
            client = self._pull_requests(self._repository(repo))
            updated = await client.set_auto_complete(pr_id, options)
            await self._post_follow_up(client, pr_id, comment)
            return updated

        return await self._run(f"set auto-complete on #{pr_id}", operation)

    @staticmethod
    async def _post_follow_up(
        client: PullRequestsAPIClient, pr_id: int, comment: Optional[str]
    ) -> None:
        # Runs after the update succeeded; failures are only logged
        if not comment or not comment.strip():
            return
        try:
            await client.create_thread(pr_id, comment)
        except ReviewClientError as e:
            logger.warning(f"Could not post comment on #{pr_id}: {e}")

    async def get_pull_request_changes(
        self, repo: Repository, pr_id: int
    ) -> OperationResult[List[PullRequestChange]]:
        async def operation() -> List[PullRequestChange]:
            client = self._pull_requests(self._repository(repo))
            return await client.list_changes(pr_id)

        return await self._run(f"get changes of #{pr_id}", operation)

    async def search_identities(
        self, repo: Repository, text: str, limit: int = 10
    ) -> OperationResult[List[IdentityRef]]:
        """Reviewer candidates matching ``text``."""

        async def operation() -> List[IdentityRef]:
            client = self._pull_requests(self._repository(repo))
            return await client.search_identities(text, limit=limit)

        return await self._run("search identities", operation)

    # Comments

    async def get_comment_threads(
        self, repo: Repository, pr_id: int
    ) -> OperationResult[CommentThreadsView]:
        """Sync the pull request's threads and comments.

        The first call reports every thread and comment as added; later
        calls report only the difference, or ``unchanged``.
        """
        return await self._run(
            f"get comments for #{pr_id}",
            lambda: self._sync_comment_threads(self._repository(repo), pr_id),
        )

    async def _sync_comment_threads(
        self, repository: RepositoryIdentity, pr_id: int
    ) -> CommentThreadsView:
        client = self._pull_requests(repository)
        threads_id = resource_id_for(repository, "threads", pr_id)
        comments_id = resource_id_for(repository, "comments", pr_id)

        async def fetch_threads(prior) -> FetchResult[CommentThread]:
            etag = prior.version if prior is not None else None
            try:
                listing = await client.list_threads(pr_id, etag=etag)
            except MalformedResponseError as e:
                raise SyncIntegrityError(
                    f"Unreadable thread listing for #{pr_id}", str(e)
                ) from e
            if listing.not_modified:
                return FetchResult(version=etag, not_modified=True)
            version = listing.etag or content_hash(
                [content_hash(thread) for thread in listing.threads]
            )
            return FetchResult(items=listing.threads, version=version)

        threads_delta = await self.sync_engine.sync(threads_id, fetch_threads)
        snapshot = self.sync_engine.snapshot(threads_id)
        threads: List[CommentThread] = snapshot.values() if snapshot else []

        if threads_delta.unchanged and self.sync_engine.snapshot(comments_id):
            comments_delta: DeltaResult[Comment] = DeltaResult(
                resource_id=comments_id,
                unchanged=True,
                version=threads_delta.version,
            )
        else:

            async def fetch_comments(prior) -> FetchResult[Comment]:
                comments = [c for thread in threads for c in thread.comments]
                return FetchResult(items=comments, version=threads_delta.version)

            # Comments are append-only; one missing from a listing stays known
            comments_delta = await self.sync_engine.sync(
                comments_id, fetch_comments, allow_removal=False
            )

        return CommentThreadsView(
            threads=threads,
            threads_delta=threads_delta,
            comments_delta=comments_delta,
        )

    async def post_comment(
        self,
        repo: Repository,
        pr_id: int,
        body: str,
        thread_id: Optional[int] = None,
        file_path: Optional[str] = None,
        line: Optional[int] = None,
    ) -> OperationResult[Union[Comment, CommentThread]]:
        """Reply to ``thread_id``, or start a new thread when it is None."""

        async def operation() -> Union[Comment, CommentThread]:
            client = self._pull_requests(self._repository(repo))
            if thread_id is not None:
                return await client.reply_to_thread(pr_id, thread_id, body)
            return await client.create_thread(
                pr_id, body, file_path=file_path, line=line
            )

        return await self._run(f"post comment on #{pr_id}", operation)

    async def update_thread_status(
        self,
        repo: Repository,
        pr_id: int,
        thread_id: int,
        status: Union[ThreadStatus, str, int],
    ) -> OperationResult[CommentThread]:
        async def operation() -> CommentThread:
            parsed = status if isinstance(status, ThreadStatus) else ThreadStatus.parse(status)
            if parsed == ThreadStatus.UNKNOWN:
                raise BadRequestError(f"Unknown thread status: {status!r}")
            client = self._pull_requests(self._repository(repo))
            return await client.update_thread_status(pr_id, thread_id, parsed)

        return await self._run(f"update thread {thread_id}", operation)

    async def vote(
        self, repo: Repository, pr_id: int, vote: Union[Vote, int]
    ) -> OperationResult[Reviewer]:
        async def operation() -> Reviewer:
            try:
                parsed = Vote(vote)
            except ValueError:
                raise BadRequestError(f"Invalid vote: {vote!r}")
            client = self._pull_requests(self._repository(repo))
            return await client.vote(pr_id, parsed)

        return await self._run(f"vote on #{pr_id}", operation)

    # Pipelines

    async def list_builds(
        self, repo: Repository, branch: Optional[str] = None, top: int = 20
    ) -> OperationResult[List[Build]]:
        async def operation() -> List[Build]:
            client = self._pipelines(self._repository(repo))
            return await client.list_builds(branch=branch, top=top)

        return await self._run("list builds", operation)

    async def list_build_definitions(
        self, repo: Repository
    ) -> OperationResult[List[BuildDefinition]]:
        async def operation() -> List[BuildDefinition]:
            client = self._pipelines(self._repository(repo))
            return await client.list_definitions()

        return await self._run("list build definitions", operation)

    async def get_build(self, repo: Repository, build_id: int) -> OperationResult[Build]:
        async def operation() -> Build:
            client = self._pipelines(self._repository(repo))
            return await client.get_build(build_id)

        return await self._run(f"get build {build_id}", operation)

    async def queue_build(
        self, repo: Repository, definition_id: int, branch: str
    ) -> OperationResult[Build]:
        async def operation() -> Build:
            client = self._pipelines(self._repository(repo))
            return await client.queue_build(definition_id, branch)

        return await self._run(f"queue definition {definition_id}", operation)

    async def get_pipeline_stages(
        self, repo: Repository, build_id: int
    ) -> OperationResult[PipelineStagesView]:
        async def operation() -> PipelineStagesView:
            repository = self._repository(repo)
            client = self._pipelines(repository)
            resource_id = resource_id_for(repository, "timeline", build_id)

            async def fetch(prior) -> FetchResult[TimelineRecord]:
                try:
                    timeline = await client.get_timeline(build_id)
                except MalformedResponseError as e:
                    raise SyncIntegrityError(
                        f"Unreadable timeline for build {build_id}", str(e)
                    ) from e
                version = timeline.change_id
                return FetchResult(
                    items=timeline.records,
                    version=str(version) if version is not None else None,
                )

            delta = await self.sync_engine.sync(resource_id, fetch)
            snapshot = self.sync_engine.snapshot(resource_id)
            records = snapshot.values() if snapshot else []
            return PipelineStagesView(
                stages=Timeline(records=records).stages(), delta=delta
            )

        return await self._run(f"get stages of build {build_id}", operation)

    async def stream_pipeline_log(
        self,
        repo: Repository,
        build_id: int,
        log_id: int,
        since_offset: int = 0,
    ) -> OperationResult[DeltaResult[PipelineLogSegment]]:
        """Return the log bytes appended since the previous call."""
        return await self._run(
            f"stream log {log_id} of build {build_id}",
            lambda: self._sync_log(
                self._repository(repo), build_id, log_id, since_offset
            ),
        )

    async def _sync_log(
        self,
        repository: RepositoryIdentity,
        build_id: int,
        log_id: int,
        since_offset: int,
    ) -> DeltaResult[PipelineLogSegment]:
        client = self._pipelines(repository)
        resource_id = resource_id_for(repository, "log", build_id, log_id)
        return await self.log_engine.sync(
            resource_id,
            lambda offset: client.fetch_log_range(build_id, log_id, offset),
            job_id=f"{build_id}:{log_id}",
            since_offset=since_offset,
        )

    # Watches

    async def watch_comment_threads(
        self,
        repo: Repository,
        pr_id: int,
        on_change: Callable[[OperationResult[CommentThreadsView]], None],
        interval: Optional[float] = None,
        ticker: Optional[Ticker] = None,
    ) -> OperationResult[WatchHandle]:
        """Poll the pull request's threads until ``stop_watching``.

        ``on_change`` receives each changed view and each failure; a
        failure asking for a new sign-in ends the watch.
        """

        def start() -> WatchHandle:
            repository = self._repository(repo)
            return self._start_watch(
                resource_id_for(repository, "threads", pr_id),
                lambda: self._sync_comment_threads(repository, pr_id),
                on_change,
                interval or self.config.polling.comments_interval,
                ticker,
                is_changed=lambda view: not view.unchanged,
                related=(resource_id_for(repository, "comments", pr_id),),
            )

        return await self._run(f"watch comments of #{pr_id}", _async(start))

    async def watch_pipeline_log(
        self,
        repo: Repository,
        build_id: int,
        log_id: int,
        on_change: Callable[[OperationResult[DeltaResult[PipelineLogSegment]]], None],
        since_offset: int = 0,
        interval: Optional[float] = None,
        ticker: Optional[Ticker] = None,
    ) -> OperationResult[WatchHandle]:
        """Poll a pipeline log and deliver appended segments in order."""

        def start() -> WatchHandle:
            repository = self._repository(repo)
            return self._start_watch(
                resource_id_for(repository, "log", build_id, log_id),
                lambda: self._sync_log(repository, build_id, log_id, since_offset),
                on_change,
                interval or self.config.polling.log_interval,
                ticker,
                is_changed=bool,
            )

        return await self._run(f"watch log {log_id} of build {build_id}", _async(start))

    def _start_watch(
        self,
        resource_id: str,
        operation: Callable[[], Awaitable[T]],
        on_change: Callable[[OperationResult[T]], None],
        interval: float,
        ticker: Optional[Ticker],
        is_changed: Callable[[T], bool],
        related: tuple = (),
    ) -> WatchHandle:
        self.stop_watching(resource_id, discard=False)

        token = CancellationToken()
        poller: Poller[T] = Poller(
            operation,
            on_result=lambda value: on_change(OperationResult(value=value)),
            interval=interval,
            ticker=ticker or self.ticker,
            token=token,
            on_error=lambda e: on_change(self._failure(f"watch {resource_id}", e)),
            is_changed=is_changed,
            max_interval=self.config.polling.max_interval,
            max_backoff_multiplier=self.config.polling.max_backoff_multiplier,
            name=f"watch {resource_id}",
        )
        task = poller.start()
        handle = WatchHandle(
            resource_id=resource_id, token=token, poller=poller, task=task
        )
        self._watches[resource_id] = handle
        self._related[resource_id] = related
        logger.debug(f"Started watch {resource_id}")
        return handle

    def stop_watching(self, resource_id: str, discard: bool = True) -> bool:
        """Cancel the watch on ``resource_id`` and drop its sync state.

        Returns:
            True if a watch was running
        """
        handle = self._watches.pop(resource_id, None)
        related = self._related.pop(resource_id, ())
        if handle is not None:
            handle.token.cancel()
            logger.debug(f"Stopped watch {resource_id}")
        if discard:
            for rid in (resource_id,) + tuple(related):
                self.sync_engine.discard(rid)
                self.log_engine.discard(rid)
        return handle is not None

    def watches(self) -> List[str]:
        return [rid for rid, handle in self._watches.items() if handle.is_active]

    # Avatars

    async def get_avatar(
        self,
        repo: Repository,
        user: Union[IdentityRef, str],
        size: Optional[int] = None,
    ) -> OperationResult[Optional[bytes]]:
        """Return picture bytes, or a None value when no picture is available."""

        async def operation() -> Optional[bytes]:
            repository = self._repository(repo)
            cache = self._avatar_cache(repository)
            try:
                return await cache.get(user, size=size)
            except AvatarUnavailableError as e:
                logger.debug(f"No avatar: {e}")
                return None

        return await self._run("get avatar", operation)

    def _avatar_cache(self, repository: RepositoryIdentity) -> AvatarCache:
        organization_key = repository.organization_key
        cache = self._avatar_caches.get(organization_key)
        if cache is None:

            async def fetch(url: str) -> bytes:
                account = self.resolver.resolve(repository)
                response = await self.transport.execute(
                    ApiRequest(
                        method="GET",
                        url=url,
                        account_key=account.key,
                        headers={"Accept": "image/*"},
                    )
                )
                return response.content

            cache = AvatarCache(fetch, config=self.config.avatars)
            self._avatar_caches[organization_key] = cache
        return cache

    # Accounts

    async def add_account(
        self, organization_url: str, auth_result: AuthResult
    ) -> OperationResult[AccountSummary]:
        async def operation() -> AccountSummary:
            account = await self.token_manager.add_account(
                organization_url, auth_result
            )
            return account.summary()

        return await self._run("add account", operation)

    async def remove_account(
        self, key: Union[AccountKey, str]
    ) -> OperationResult[None]:
        async def operation() -> None:
            if isinstance(key, AccountKey):
                account_key = key
            else:
                try:
                    account_key = AccountKey.parse(key)
                except ValueError as e:
                    raise AccountNotFoundError(str(e))
            await self.token_manager.remove_account(account_key)

        return await self._run("remove account", operation)

    async def list_accounts(self) -> OperationResult[List[AccountSummary]]:
        return await self._run("list accounts", _async(self.token_manager.summaries))


def _async(function: Callable[[], T]) -> Callable[[], Awaitable[T]]:
    async def call() -> T:
        return function()

    return call
