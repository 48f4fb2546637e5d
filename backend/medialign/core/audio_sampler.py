"""Audio Sampler - picks time segments of a video and drives their extraction.

Three one-minute samples (start, middle, end) are usually enough dialogue to
tell episodes apart without decoding the whole file. Each segment is retried
independently; the sampler only fails when no segment could be extracted.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from medialign.core.errors import ExtractionError, PipelineCancelledError
from medialign.core.filesystem import FileSystem, LocalFileSystem

logger = logging.getLogger(__name__)

# Progress callback: fraction of the whole file's sampling work, 0.0-1.0
SamplingProgressCallback = Callable[[float], None]
# Progress callback from the tool: fraction of one segment, 0.0-1.0
SegmentProgressCallback = Callable[[float], None]

DEFAULT_SEGMENT_SECONDS = 60.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0


@dataclass(frozen=True)
class SegmentSpec:
    """A time window to sample, in seconds."""

    start: float
    duration: float


@dataclass
class AudioSegment:
    """An extracted audio sample. The payload lives on disk until cleanup()."""

    start: float
    duration: float
    path: Path
    transcript: str | None = None


class AudioExtractor(Protocol):
    """The external audio extraction tool."""

    async def probe_duration(self, file_path: Path) -> float: ...

    async def extract(
        self,
        file_path: Path,
        start: float,
        duration: float,
        on_progress: SegmentProgressCallback | None = None,
    ) -> Path: ...


def default_segments(
    total_duration: float, segment_seconds: float = DEFAULT_SEGMENT_SECONDS
) -> list[SegmentSpec]:
    """First, middle (centered) and last minute of the media.

    Short media collapses to fewer segments: windows are clamped to the
    media bounds and duplicates removed.
    """
    if total_duration <= 0:
        raise ExtractionError(f"Invalid media duration: {total_duration}")

    length = min(segment_seconds, total_duration)
    starts = [
        0.0,
        max(0.0, float(int(total_duration // 2)) - length / 2),
        max(0.0, total_duration - length),
    ]

    segments: list[SegmentSpec] = []
    for start in starts:
        spec = SegmentSpec(start=start, duration=length)
        if spec not in segments:
            segments.append(spec)
    return segments


class AudioSampler:
    """Extracts audio segments from a video with per-segment retry and cleanup."""

    def __init__(
        self,
        extractor: AudioExtractor,
        fs: FileSystem | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
    ) -> None:
        self._extractor = extractor
        self._fs = fs or LocalFileSystem()
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.segment_seconds = segment_seconds

    async def extract_segments(
        self,
        file_path: Path,
        segments: Sequence[SegmentSpec] | None = None,
        on_progress: SamplingProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AudioSegment]:
        """Extract the given segments (or the default three) from file_path.

        Returns the successfully extracted subset, in segment order.

        Raises:
            ExtractionError: If every segment failed
            PipelineCancelledError: If cancel_event was set mid-extraction
        """
        if not segments:
            total = await self._extractor.probe_duration(file_path)
            segments = default_segments(total, self.segment_seconds)
            logger.debug(f"Default segments for {file_path.name} ({total:.0f}s): {segments}")

        count = len(segments)
        extracted: list[AudioSegment] = []
        failures: list[tuple[SegmentSpec, Exception]] = []

        def report(index: int, fraction: float) -> None:
            if on_progress is not None:
                fraction = min(1.0, max(0.0, fraction))
                on_progress((index + fraction) / count)

        try:
            for index, spec in enumerate(segments):
                try:
                    path = await self._extract_with_retry(
                        file_path,
                        spec,
                        lambda f, i=index: report(i, f),
                        cancel_event,
                    )
                except ExtractionError as e:
                    failures.append((spec, e))
                else:
                    extracted.append(AudioSegment(spec.start, spec.duration, path))
                report(index, 1.0)
        except BaseException:
            # Cancellation or an unexpected error: nothing escapes on disk
            self.cleanup(extracted)
            raise

        if failures:
            for spec, error in failures:
                logger.warning(
                    f"Segment {spec.start:.0f}s+{spec.duration:.0f}s of {file_path.name} "
                    f"skipped: {error}"
                )
        if not extracted:
            raise ExtractionError(
                f"All {count} audio segments failed for {file_path.name}: {failures[-1][1]}"
            )

        logger.info(f"Extracted {len(extracted)}/{count} audio segments from {file_path.name}")
        return extracted

    async def _extract_with_retry(
        self,
        file_path: Path,
        spec: SegmentSpec,
        on_progress: SegmentProgressCallback,
        cancel_event: asyncio.Event | None,
    ) -> Path:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelledError(f"Extraction of {file_path.name} cancelled")

            try:
                return await self._extractor.extract(
                    file_path, spec.start, spec.duration, on_progress
                )
            except (ExtractionError, OSError) as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                logger.warning(
                    f"Segment at {spec.start:.0f}s of {file_path.name} failed "
                    f"(attempt {attempt}/{self.max_attempts}), retrying in {self.retry_delay}s: {e}"
                )
                await self._backoff(cancel_event)

        raise ExtractionError(
            f"Segment at {spec.start:.0f}s failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _backoff(self, cancel_event: asyncio.Event | None) -> None:
        """Fixed delay between attempts, cut short by cancellation."""
        if cancel_event is None:
            await asyncio.sleep(self.retry_delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.retry_delay)
        except TimeoutError:
            return

    def cleanup(self, items: Iterable[AudioSegment | Path]) -> None:
        """Delete segment artifacts. Missing files are ignored."""
        for item in items:
            path = item.path if isinstance(item, AudioSegment) else item
            try:
                self._fs.unlink(path)
                logger.debug(f"Deleted temporary audio file: {path}")
            except OSError as e:
                logger.warning(f"Could not delete temporary audio file {path}: {e}")

    @asynccontextmanager
    async def sampled(
        self,
        file_path: Path,
        segments: Sequence[SegmentSpec] | None = None,
        on_progress: SamplingProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[list[AudioSegment]]:
        """Scope extracted segments to a block; artifacts are removed on exit."""
        extracted = await self.extract_segments(file_path, segments, on_progress, cancel_event)
        try:
            yield extracted
        finally:
            self.cleanup(extracted)
