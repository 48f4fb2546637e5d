"""File state machine - per-file identification lifecycle.

Tries the filename first and falls back to content analysis (sampled audio,
transcription, synopsis matching). Every persisted change is a targeted
UPDATE of one field set, guarded by the status the change was made from,
so a concurrent user fix is never overwritten by a pipeline step.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError

from medialign.core.audio_sampler import AudioSampler, AudioSegment
from medialign.core.clock import utcnow
from medialign.core.errors import (
    MatchingError,
    PersistenceError,
    PipelineCancelledError,
    error_context,
)
from medialign.core.filename_matcher import (
    EpisodeGuess,
    FilenameMatcher,
    filename_matcher,
    generate_filename,
)
from medialign.core.filesystem import FileSystem, LocalFileSystem, rename_file
from medialign.core.transcriber import Transcriber
from medialign.core.transcript_matcher import TranscriptMatcher
from medialign.database import async_session
from medialign.models import (
    AudioSegmentRecord,
    Episode,
    ExtractionStatus,
    FileStatus,
    MediaFile,
    ProcessingStep,
)
from medialign.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.3

# (file_id, percent 0-100)
FileProgressCallback = Callable[[int, float], None]

# Statuses a file passes through while the content pipeline owns it
IN_FLIGHT_STATUSES = frozenset(
    {
        FileStatus.NEEDS_AUDIO_ANALYSIS,
        FileStatus.EXTRACTING,
        FileStatus.TRANSCRIBING,
        FileStatus.MATCHING,
    }
)


@dataclass
class StatusUpdate:
    """Outcome of one identification pass."""

    file_id: int
    status: FileStatus
    confidence: float
    episode_id: int | None
    corrected_filename: str | None
    is_verified: bool
    error_message: str | None = None

    @classmethod
    def from_file(cls, media_file: MediaFile) -> "StatusUpdate":
        return cls(
            file_id=media_file.id,
            status=media_file.status,
            confidence=media_file.confidence,
            episode_id=media_file.episode_id,
            corrected_filename=media_file.corrected_filename,
            is_verified=media_file.is_verified,
            error_message=media_file.error_message,
        )


class FileStateConflict(Exception):
    """The persisted status moved away from the one a transition started from."""


class FileStateMachine:
    """Drives a file through identification with validated, persisted transitions."""

    # Forward transitions. ERROR, FIXED and PENDING are reachable from any state
    # (unrecoverable failure, user fix, reprocess/resume).
    VALID_TRANSITIONS = {
        FileStatus.PENDING: {FileStatus.CORRECT, FileStatus.NEEDS_AUDIO_ANALYSIS},
        FileStatus.NEEDS_AUDIO_ANALYSIS: {FileStatus.EXTRACTING},
        FileStatus.EXTRACTING: {FileStatus.TRANSCRIBING},
        FileStatus.TRANSCRIBING: {FileStatus.MATCHING},
        FileStatus.MATCHING: {FileStatus.CORRECT, FileStatus.INCORRECT, FileStatus.UNKNOWN},
        FileStatus.CORRECT: set(),
        FileStatus.INCORRECT: set(),
        FileStatus.UNKNOWN: set(),
        FileStatus.ERROR: set(),
        FileStatus.FIXED: set(),
    }
    UNIVERSAL_TARGETS = frozenset({FileStatus.ERROR, FileStatus.FIXED, FileStatus.PENDING})

    def __init__(
        self,
        event_broadcaster: EventBroadcaster,
        sampler: AudioSampler | None = None,
        transcriber: Transcriber | None = None,
        matcher: TranscriptMatcher | None = None,
        name_matcher: FilenameMatcher | None = None,
        fs: FileSystem | None = None,
    ):
        self._broadcaster = event_broadcaster
        self._sampler = sampler
        self._transcriber = transcriber
        self._matcher = matcher or TranscriptMatcher()
        self._filename_matcher = name_matcher or filename_matcher
        self._fs = fs or LocalFileSystem()

    def can_transition(self, from_status: FileStatus, to_status: FileStatus) -> bool:
        """Validate if status transition is allowed."""
        # Allow staying in same status
        if from_status == to_status:
            return True
        if to_status in self.UNIVERSAL_TARGETS:
            return True
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def get_next_states(self, current_status: FileStatus) -> set[FileStatus]:
        return self.VALID_TRANSITIONS.get(current_status, set()) | self.UNIVERSAL_TARGETS

    async def transition(
        self,
        media_file: MediaFile,
        to_status: FileStatus,
        broadcast: bool = True,
        guard: bool = True,
        **values,
    ) -> bool:
        """Validate, persist and broadcast a status change plus related fields.

        With guard set, the UPDATE only applies if the row still holds the
        status the in-memory file was read with.

        Returns:
            False if the transition is not allowed

        Raises:
            FileStateConflict: If the stored status changed underneath us
        """
        from_status = media_file.status
        if not self.can_transition(from_status, to_status):
            logger.warning(
                f"Invalid status transition for file {media_file.id}: "
                f"{from_status.value} -> {to_status.value}"
            )
            return False

        values["status"] = to_status
        statement = update(MediaFile).where(MediaFile.id == media_file.id)
        if guard:
            statement = statement.where(MediaFile.status == from_status)

        async with async_session() as session:
            result = await session.execute(statement.values(**values))
            await session.commit()

        if result.rowcount == 0:
            raise FileStateConflict(
                f"File {media_file.id} is no longer {from_status.value}, "
                f"not applying {to_status.value}"
            )

        for key, value in values.items():
            setattr(media_file, key, value)
        if from_status != to_status:
            logger.info(
                f"[FILE {media_file.id}] status transition: "
                f"{from_status.value} -> {to_status.value}"
            )

        # Broadcast failure is non-fatal since DB is committed
        if broadcast:
            try:
                await self._broadcaster.broadcast_file_updated(media_file)
            except Exception as e:
                logger.error(
                    f"[FILE {media_file.id}] broadcast failed after committing "
                    f"{to_status.value}: {e}",
                    exc_info=True,
                )
        return True

    async def _advance(self, media_file: MediaFile, to_status: FileStatus, **values) -> None:
        if not await self.transition(media_file, to_status, **values):
            raise MatchingError(
                f"File {media_file.id} cannot move from {media_file.status.value} "
                f"to {to_status.value}"
            )

    async def identify(
        self,
        media_file: MediaFile,
        episodes: Sequence[Episode],
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        on_progress: FileProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StatusUpdate:
        """Identify one file against the series' episodes and persist the outcome.

        Failures end in status ERROR with no episode linkage. A cancellation
        puts the file back to pending and is re-raised.

        Raises:
            PipelineCancelledError: If cancel_event was set mid-analysis
            PersistenceError: If the failure itself could not be recorded
        """

        def report(percent: float) -> None:
            if on_progress is not None:
                on_progress(media_file.id, percent)

        try:
            if media_file.status != FileStatus.PENDING:
                # Resumed after a crash or re-queued
                await self._advance(
                    media_file,
                    FileStatus.PENDING,
                    processing_step=ProcessingStep.PENDING,
                    audio_extraction_progress=0,
                )

            await self._advance(
                media_file,
                FileStatus.PENDING,
                processing_step=ProcessingStep.ANALYZING_FILENAME,
                broadcast=False,
            )
            match = self._filename_matcher.match_with_pattern(media_file.original_filename)
            guess = match[0] if match else None
            episode = _find_episode(episodes, guess)

            if guess is not None and (episode is not None or not episodes):
                logger.info(
                    f"[FILE {media_file.id}] '{media_file.original_filename}' identified as "
                    f"{guess.code} by filename ({match[1]} pattern)"
                )
                await self._advance(
                    media_file,
                    FileStatus.CORRECT,
                    processing_step=ProcessingStep.FILENAME_ANALYZED,
                    episode_id=episode.id if episode else None,
                    confidence=1.0,
                    is_verified=True,
                    corrected_filename=None,
                    audio_extraction_status=ExtractionStatus.COMPLETED,
                    audio_extraction_progress=100,
                    error_message=None,
                    processed_at=utcnow(),
                )
                report(100.0)
                return StatusUpdate.from_file(media_file)

            if guess is not None:
                logger.info(
                    f"[FILE {media_file.id}] filename says {guess.code} but the series has no "
                    f"such episode, verifying by content"
                )
            await self._advance(
                media_file,
                FileStatus.NEEDS_AUDIO_ANALYSIS,
                processing_step=ProcessingStep.FILENAME_ANALYZED,
            )
            return await self._analyze_content(
                media_file, episodes, guess, threshold, report, cancel_event
            )

        except PipelineCancelledError:
            logger.info(f"[FILE {media_file.id}] analysis cancelled, returning to pending")
            await self._reset_quietly(media_file)
            raise
        except FileStateConflict as e:
            logger.warning(f"[FILE {media_file.id}] {e}")
            return await self._reload(media_file)
        except Exception as e:
            logger.error(f"[FILE {media_file.id}] identification failed: {e}", exc_info=True)
            return await self._record_failure(media_file, str(e))

    async def _analyze_content(
        self,
        media_file: MediaFile,
        episodes: Sequence[Episode],
        guess: EpisodeGuess | None,
        threshold: float,
        report: Callable[[float], None],
        cancel_event: asyncio.Event | None,
    ) -> StatusUpdate:
        if self._sampler is None or self._transcriber is None:
            raise MatchingError("Content analysis is not configured (no sampler/transcriber)")

        file_path = Path(media_file.original_path)
        await self._advance(
            media_file,
            FileStatus.EXTRACTING,
            processing_step=ProcessingStep.EXTRACTING_AUDIO,
            audio_extraction_status=ExtractionStatus.IN_PROGRESS,
            audio_extraction_progress=0,
        )
        report(0.0)

        def on_sampling_progress(fraction: float) -> None:
            # Leave the last percent for matching
            report(min(99.0, fraction * 100))

        async with self._sampler.sampled(
            file_path, on_progress=on_sampling_progress, cancel_event=cancel_event
        ) as segments:
            await self._advance(
                media_file,
                FileStatus.TRANSCRIBING,
                processing_step=ProcessingStep.TRANSCRIBING_AUDIO,
                audio_extraction_progress=100,
            )
            for segment in segments:
                segment.transcript = await self._transcriber.transcribe(segment.path)
            await self._record_segments(media_file.id, segments)

        transcripts = [segment.transcript or "" for segment in segments]
        await self._advance(
            media_file,
            FileStatus.MATCHING,
            processing_step=ProcessingStep.MATCHING_CONTENT,
        )
        result = self._matcher.match(transcripts, episodes)

        final = {
            "processing_step": ProcessingStep.CONTENT_MATCHED,
            "audio_extraction_status": ExtractionStatus.COMPLETED,
            "audio_extraction_progress": 100,
            "is_verified": False,
            "error_message": None,
            "processed_at": utcnow(),
        }

        if result.episode is None or result.score < threshold:
            logger.info(
                f"[FILE {media_file.id}] best transcript score {result.score:.3f} is below "
                f"{threshold}, marking unknown"
            )
            await self._advance(
                media_file,
                FileStatus.UNKNOWN,
                episode_id=None,
                confidence=result.score,
                corrected_filename=None,
                **final,
            )
        elif guess == (result.episode.season_number, result.episode.episode_number):
            logger.info(
                f"[FILE {media_file.id}] content confirms {result.episode.code} "
                f"(score {result.score:.3f})"
            )
            await self._advance(
                media_file,
                FileStatus.CORRECT,
                episode_id=result.episode.id,
                confidence=result.score,
                corrected_filename=None,
                **final,
            )
        else:
            corrected = generate_filename(
                media_file.original_path,
                result.episode.season_number,
                result.episode.episode_number,
                result.episode.title,
            )
            logger.info(
                f"[FILE {media_file.id}] content points to {result.episode.code} "
                f"(score {result.score:.3f}), proposing '{corrected}'"
            )
            await self._advance(
                media_file,
                FileStatus.INCORRECT,
                episode_id=result.episode.id,
                confidence=result.score,
                corrected_filename=corrected,
                **final,
            )

        report(100.0)
        return StatusUpdate.from_file(media_file)

    async def _record_segments(self, file_id: int, segments: Sequence[AudioSegment]) -> None:
        """Replace the file's stored segment transcripts."""
        async with async_session() as session:
            await session.execute(
                delete(AudioSegmentRecord).where(AudioSegmentRecord.file_id == file_id)
            )
            for number, segment in enumerate(segments, start=1):
                session.add(
                    AudioSegmentRecord(
                        file_id=file_id,
                        segment_number=number,
                        start_seconds=segment.start,
                        duration_seconds=segment.duration,
                        transcript=segment.transcript,
                    )
                )
            await session.commit()

    async def fail(self, media_file: MediaFile, error_message: str) -> None:
        """Move the file to ERROR, dropping any episode linkage."""
        await self.transition(
            media_file,
            FileStatus.ERROR,
            episode_id=None,
            confidence=0.0,
            is_verified=False,
            processing_step=ProcessingStep.ERROR,
            audio_extraction_status=ExtractionStatus.ERROR,
            error_message=error_message,
            processed_at=utcnow(),
        )

    async def reset(self, media_file: MediaFile) -> None:
        """Back to pending so the next series run picks the file up again."""
        await self.transition(
            media_file,
            FileStatus.PENDING,
            episode_id=None,
            confidence=0.0,
            is_verified=False,
            corrected_filename=None,
            processing_step=ProcessingStep.PENDING,
            audio_extraction_status=ExtractionStatus.PENDING,
            audio_extraction_progress=0,
            error_message=None,
        )

    async def _record_failure(self, media_file: MediaFile, error_message: str) -> StatusUpdate:
        """Mark the file failed and return what is actually stored."""
        try:
            await self.fail(media_file, error_message)
        except FileStateConflict as e:
            # A user fix got there first
            logger.warning(f"[FILE {media_file.id}] {e}")
            return await self._reload(media_file)
        except Exception as e:
            logger.error(f"[FILE {media_file.id}] could not record failure: {e}", exc_info=True)
            raise PersistenceError(
                f"Could not record failure of file {media_file.id}: {e}"
            ) from e
        return StatusUpdate.from_file(media_file)

    async def _reset_quietly(self, media_file: MediaFile) -> None:
        try:
            await self.reset(media_file)
        except Exception as e:
            logger.error(f"[FILE {media_file.id}] could not reset to pending: {e}", exc_info=True)

    async def _reload(self, media_file: MediaFile) -> StatusUpdate:
        async with async_session() as session:
            current = await session.get(MediaFile, media_file.id)
        return StatusUpdate.from_file(current or media_file)

    async def apply_fix(self, media_file: MediaFile, episode: Episode) -> Path:
        """Rename the file after the chosen episode and mark it fixed.

        The rename happens first; if it fails nothing is persisted. If the
        database write fails the file gets its old name back.

        Raises:
            InputError: If the file is missing on disk
            RenameError: If the target exists or the OS refuses the rename
            PersistenceError: If the fix could not be recorded
        """
        new_name = generate_filename(
            media_file.original_path,
            episode.season_number,
            episode.episode_number,
            episode.title,
        )
        old_path = Path(media_file.original_path)
        new_path = await asyncio.to_thread(rename_file, self._fs, old_path, new_name)

        try:
            with error_context(
                error_types=(SQLAlchemyError,),
                default_message=f"Failed to record fix of file {media_file.id}",
                wrap_as=PersistenceError,
            ):
                # A user fix wins over whatever the pipeline last wrote
                await self.transition(
                    media_file,
                    FileStatus.FIXED,
                    guard=False,
                    episode_id=episode.id,
                    confidence=1.0,
                    is_verified=True,
                    corrected_filename=new_path.name,
                    original_path=str(new_path),
                    original_filename=new_path.name,
                    processing_step=ProcessingStep.CONTENT_MATCHED,
                    audio_extraction_status=ExtractionStatus.COMPLETED,
                    audio_extraction_progress=100,
                    error_message=None,
                    processed_at=utcnow(),
                )
        except (PersistenceError, FileStateConflict):
            await asyncio.to_thread(self._fs.rename, new_path, old_path)
            logger.info(f"[FILE {media_file.id}] fix not recorded, restored {old_path.name}")
            raise
        logger.info(f"[FILE {media_file.id}] fixed as {episode.code}: {new_path}")
        return new_path


def _find_episode(episodes: Sequence[Episode], guess: EpisodeGuess | None) -> Episode | None:
    if guess is None:
        return None
    for episode in episodes:
        if (episode.season_number, episode.episode_number) == guess:
            return episode
    return None


async def create_file_state_machine(event_broadcaster: EventBroadcaster) -> FileStateMachine:
    """State machine wired to ffmpeg and Whisper with the stored tool paths."""
    from medialign.core.ffmpeg import FfmpegAudioExtractor
    from medialign.core.transcriber import whisper_transcriber
    from medialign.services.config_service import FFMPEG_PATH, FFPROBE_PATH, get_settings

    config = await get_settings()
    extractor = FfmpegAudioExtractor(
        ffmpeg_path=config.get(FFMPEG_PATH) or None,
        ffprobe_path=config.get(FFPROBE_PATH) or None,
    )
    return FileStateMachine(
        event_broadcaster,
        sampler=AudioSampler(extractor),
        transcriber=whisper_transcriber,
    )
