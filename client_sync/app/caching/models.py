"""
Cache entry data models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple

from shared.errors import ClassifiedError, ErrorClassification
from shared.retry import RetryPolicy

QueryKey = Tuple[str, ...]


class EntryStatus(str, Enum):
    """Lifecycle of a cache entry."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ErrorInfo:
    """Read-only view of the error that ended a fetch."""
    classification: ErrorClassification
    message: str
    status_code: Optional[int] = None

    @classmethod
    def from_error(cls, error: ClassifiedError) -> "ErrorInfo":
        return cls(
            classification=error.classification,
            message=error.message,
            status_code=error.status_code
        )


@dataclass(frozen=True)
class ResourceOptions:
    """Per-resource cache options. ``None`` means use the cache default."""
    stale_time: Optional[float] = None
    gc_time: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None
    enabled: bool = True


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of one cache entry handed to consumers."""
    key: QueryKey
    value: Any = None
    has_value: bool = False
    fetched_at: Optional[float] = None
    stale_after: float = 0.0
    expire_after: float = 0.0
    status: EntryStatus = EntryStatus.IDLE
    error: Optional[ErrorInfo] = None
    failure_count: int = 0
    is_fetching: bool = False
    is_invalidated: bool = False

    def is_stale(self, now: float) -> bool:
        """An entry without a value, or one explicitly invalidated, is stale."""
        if not self.has_value or self.is_invalidated or self.fetched_at is None:
            return True
        return now - self.fetched_at >= self.stale_after


@dataclass
class _EntryState:
    """Mutable entry owned by the cache."""
    key: QueryKey
    stale_after: float
    expire_after: float
    value: Any = None
    has_value: bool = False
    fetched_at: Optional[float] = None
    status: EntryStatus = EntryStatus.IDLE
    error: Optional[ErrorInfo] = None
    failure_count: int = 0
    is_invalidated: bool = False
    issued_seq: int = 0
    applied_seq: int = 0
    retry_policy: Optional[RetryPolicy] = None
    fetcher: Any = None
    subscribers: list = field(default_factory=list)
    gc_handle: Any = None

    def snapshot(self, is_fetching: bool) -> CacheEntry:
        return CacheEntry(
            key=self.key,
            value=self.value,
            has_value=self.has_value,
            fetched_at=self.fetched_at,
            stale_after=self.stale_after,
            expire_after=self.expire_after,
            status=self.status,
            error=self.error,
            failure_count=self.failure_count,
            is_fetching=is_fetching,
            is_invalidated=self.is_invalidated
        )
