"""Business Logic for review operations.

Clean business logic that uses API client abstractions with no raw HTTP calls.
All HTTP functionality is delegated to dedicated API client classes.
"""

from .review_service import (
    CommentThreadsView,
    ErrorCategory,
    OperationResult,
    PipelineStagesView,
    ReviewService,
    WatchHandle,
    categorize_error,
)

__all__ = [
    "CommentThreadsView",
    "ErrorCategory",
    "OperationResult",
    "PipelineStagesView",
    "ReviewService",
    "WatchHandle",
    "categorize_error",
]
