"""
Scheduled Jobs Package.

This package contains all job implementations that can be scheduled
via the task engine.
"""

from tasks.provider_sync import ProviderSyncTask
from tasks.title_merge import TitleMergeTask
from tasks.cache_purge import CachePurgeTask

__all__ = [
    "ProviderSyncTask",
    "TitleMergeTask",
    "CachePurgeTask",
]
