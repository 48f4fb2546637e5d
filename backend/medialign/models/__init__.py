"""Data models for MediAlign."""

from medialign.models.cache_entry import CacheEntry, CacheKind
from medialign.models.media_file import (
    AudioSegmentRecord,
    ExtractionStatus,
    FileStatus,
    MediaFile,
    ProcessingStep,
)
from medialign.models.series import Episode, Series
from medialign.models.setting import Setting

__all__ = [
    "Series",
    "Episode",
    "MediaFile",
    "FileStatus",
    "ExtractionStatus",
    "ProcessingStep",
    "AudioSegmentRecord",
    "CacheEntry",
    "CacheKind",
    "Setting",
]
