"""Supporting services: avatar caching and background execution."""

from .avatar_cache import AvatarCache, append_size_param
from .worker_pool import BackgroundExecutor, ExecutorShutdownError

__all__ = [
    "AvatarCache",
    "append_size_param",
    "BackgroundExecutor",
    "ExecutorShutdownError",
]
