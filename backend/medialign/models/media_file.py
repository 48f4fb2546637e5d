"""MediaFile model - the per-file identification state machine record."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from medialign.core.clock import utcnow


class FileStatus(str, Enum):
    """Identification lifecycle of a file."""

    PENDING = "pending"
    NEEDS_AUDIO_ANALYSIS = "needs_audio_analysis"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    MATCHING = "matching"
    CORRECT = "correct"  # Filename agrees with the identified episode
    INCORRECT = "incorrect"  # Content points to a different episode; rename proposed
    UNKNOWN = "unknown"  # Not enough evidence
    ERROR = "error"
    FIXED = "fixed"  # Renamed by the user


class ExtractionStatus(str, Enum):
    """Audio extraction sub-state, orthogonal to FileStatus."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class ProcessingStep(str, Enum):
    """Fine-grained pipeline position, for display only."""

    PENDING = "pending"
    ANALYZING_FILENAME = "analyzing_filename"
    FILENAME_ANALYZED = "filename_analyzed"
    EXTRACTING_AUDIO = "extracting_audio"
    AUDIO_EXTRACTED = "audio_extracted"
    TRANSCRIBING_AUDIO = "transcribing_audio"
    AUDIO_TRANSCRIBED = "audio_transcribed"
    MATCHING_CONTENT = "matching_content"
    CONTENT_MATCHED = "content_matched"
    ERROR = "error"


class MediaFile(SQLModel, table=True):
    """One on-disk video file belonging to a series."""

    __tablename__ = "files"

    id: int | None = Field(default=None, primary_key=True)
    series_id: int = Field(foreign_key="series.id", index=True)
    episode_id: int | None = Field(default=None, foreign_key="episodes.id")

    original_path: str
    original_filename: str
    corrected_filename: str | None = None  # Proposed (incorrect) or applied (fixed)

    status: FileStatus = FileStatus.PENDING
    confidence: float = 0.0
    is_verified: bool = False

    audio_extraction_status: ExtractionStatus = Field(default=ExtractionStatus.PENDING, index=True)
    audio_extraction_progress: int = 0  # 0-100
    processing_step: ProcessingStep = ProcessingStep.PENDING

    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AudioSegmentRecord(SQLModel, table=True):
    """Transcript of one sampled segment, kept for debugging. Raw audio is not stored."""

    __tablename__ = "audio_segments"

    id: int | None = Field(default=None, primary_key=True)
    file_id: int = Field(foreign_key="files.id", index=True)
    segment_number: int
    start_seconds: float
    duration_seconds: float
    transcript: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
