"""Profile picture cache: LRU with TTL, negative caching and shared fetches."""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Union
from urllib.parse import parse_qsl, urlsplit

from ..api_clients.pull_requests_client import IdentityRef
from ..config import AvatarCacheConfig
from ..remote.exceptions import AvatarUnavailableError

logger = logging.getLogger(__name__)

AvatarFetcher = Callable[[str], Awaitable[bytes]]


def append_size_param(image_url: str, size: int) -> str:
    """Add ``size=<n>`` to the URL unless it already has a size parameter."""
    query = urlsplit(image_url).query
    if any(name.lower() == "size" for name, _ in parse_qsl(query, keep_blank_values=True)):
        return image_url
    separator = "&" if "?" in image_url else "?"
    return f"{image_url}{separator}size={size}"


@dataclass(frozen=True)
class _Entry:
    data: Optional[bytes]
    expires_at: float
    error: str = ""

    @property
    def is_failure(self) -> bool:
        return self.data is None


class AvatarCache:
    """Caches picture bytes by sized URL.

    Entries are evicted least-recently-used beyond ``capacity`` and expire
    after ``ttl_seconds``; failures are remembered for
    ``negative_ttl_seconds`` so a broken picture is not refetched on every
    render.
    """

    def __init__(
        self,
        fetcher: AvatarFetcher,
        config: Optional[AvatarCacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.config = config or AvatarCacheConfig()
        self.clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Task[bytes]"] = {}
        self.fetch_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    async def get(
        self, user: Union[IdentityRef, str], size: Optional[int] = None
    ) -> bytes:
        """Return the user's picture bytes.

        Raises:
            AvatarUnavailableError: If the user has no picture, the fetch
                failed, or a recent failure is cached
        """
        image_url = user if isinstance(user, str) else user.image_url
        if not image_url:
            raise AvatarUnavailableError("User has no profile picture")

        url = append_size_param(image_url, size or self.config.size)

        entry = self._lookup(url)
        if entry is not None:
            if entry.is_failure:
                raise AvatarUnavailableError("Profile picture unavailable", entry.error)
            assert entry.data is not None
            return entry.data

        task = self._inflight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._fetch(url))
            self._inflight[url] = task
            task.add_done_callback(lambda t, u=url: self._fetch_done(u, t))

        return await asyncio.shield(task)

    def _lookup(self, url: str) -> Optional[_Entry]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            del self._entries[url]
            return None
        self._entries.move_to_end(url)
        return entry

    def _store(self, url: str, entry: _Entry) -> None:
        self._entries[url] = entry
        self._entries.move_to_end(url)
        while len(self._entries) > self.config.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted avatar {evicted}")

    async def _fetch(self, url: str) -> bytes:
        self.fetch_count += 1
        try:
            data = await self.fetcher(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to load avatar from {url}: {e}")
            self._store(
                url,
                _Entry(
                    data=None,
                    expires_at=self.clock() + self.config.negative_ttl_seconds,
                    error=str(e),
                ),
            )
            raise AvatarUnavailableError("Profile picture unavailable", str(e)) from e

        self._store(url, _Entry(data=data, expires_at=self.clock() + self.config.ttl_seconds))
        return data

    def _fetch_done(self, url: str, task: "asyncio.Task[bytes]") -> None:
        if self._inflight.get(url) is task:
            del self._inflight[url]
        if not task.cancelled():
            task.exception()
