"""Core identification building blocks for MediAlign."""

from medialign.core.audio_sampler import AudioSampler, AudioSegment, SegmentSpec
from medialign.core.filename_matcher import FilenameMatcher, generate_filename
from medialign.core.transcript_matcher import TranscriptMatcher

__all__ = [
    "AudioSampler",
    "AudioSegment",
    "SegmentSpec",
    "FilenameMatcher",
    "generate_filename",
    "TranscriptMatcher",
]
