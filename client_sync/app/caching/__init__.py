"""
Remote resource caching package.

Provides the key-indexed cache used by every screen to decide whether
cached data is fresh enough to show, when to refetch in the background,
and how to retry failed reads and writes. Prefer explicit invalidation
over short stale windows.
"""

from .models import CacheEntry, EntryStatus, ErrorInfo, ResourceOptions
from .resource_cache import RemoteResourceCache

__all__ = [
    "CacheEntry",
    "EntryStatus",
    "ErrorInfo",
    "ResourceOptions",
    "RemoteResourceCache",
]
