"""FFmpeg wrapper - the audio extraction tool behind the AudioSampler.

Produces mono MP3 samples. Blocking process work runs in a worker thread;
progress from `-progress pipe:1` is marshalled back onto the event loop.
"""

import asyncio
import logging
import subprocess
import uuid
from pathlib import Path

from medialign.config import settings
from medialign.core.audio_sampler import SegmentProgressCallback
from medialign.core.errors import ExtractionError

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 30
EXTRACT_TIMEOUT_MARGIN = 60


class FfmpegAudioExtractor:
    """Extracts single-track mono lossy audio segments with ffmpeg."""

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        output_dir: Path | None = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path or "ffmpeg"
        self.ffprobe_path = ffprobe_path or "ffprobe"
        self.output_dir = output_dir or settings.audio_temp_dir

    async def probe_duration(self, file_path: Path) -> float:
        """Return media duration in seconds.

        Raises:
            ExtractionError: If ffprobe fails or reports no usable duration
        """
        cmd = [
            self.ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(file_path),
        ]

        def run_probe() -> subprocess.CompletedProcess:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT)

        try:
            result = await asyncio.to_thread(run_probe)
        except FileNotFoundError as e:
            raise ExtractionError(f"ffprobe not found at: {self.ffprobe_path}") from e
        except subprocess.TimeoutExpired as e:
            raise ExtractionError(f"ffprobe timed out on {file_path}") from e

        if result.returncode != 0:
            error_msg = f"ffprobe failed with return code {result.returncode}"
            if result.stderr:
                error_msg += f". Error: {result.stderr.strip()}"
            raise ExtractionError(error_msg)

        try:
            duration = float(result.stdout.strip())
        except ValueError as e:
            raise ExtractionError(
                f"Failed to parse duration from ffprobe output for {file_path}: {result.stdout!r}"
            ) from e
        if duration <= 0:
            raise ExtractionError(f"Invalid duration for {file_path}: {duration}")

        logger.debug(f"Video duration: {duration:.1f} seconds ({file_path.name})")
        return duration

    def build_command(
        self, file_path: Path, start: float, duration: float, output: Path
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-loglevel",
            "error",  # Keeps stderr small; it is only drained after stdout
            "-ss",
            f"{start:.3f}",
            "-t",
            f"{duration:.3f}",
            "-i",
            str(file_path),
            "-vn",  # Disable video
            "-sn",  # Disable subtitles
            "-dn",  # Disable data streams
            "-map",
            "0:a:0",  # First audio track only
            "-ac",
            "1",
            "-acodec",
            "libmp3lame",
            "-b:a",
            "128k",
            "-progress",
            "pipe:1",
            "-y",
            str(output),
        ]

    async def extract(
        self,
        file_path: Path,
        start: float,
        duration: float,
        on_progress: SegmentProgressCallback | None = None,
    ) -> Path:
        """Extract one segment and return the path of the audio file.

        Raises:
            ExtractionError: On a non-zero exit, timeout or missing output
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output = self.output_dir / f"{file_path.stem}-{int(start)}-{uuid.uuid4().hex[:8]}.mp3"
        cmd = self.build_command(file_path, start, duration, output)
        loop = asyncio.get_running_loop()

        def emit(fraction: float) -> None:
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, fraction)

        def run_ffmpeg() -> tuple[int, str]:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,  # Line buffered
            )
            try:
                for line in iter(process.stdout.readline, ""):
                    key, _, value = line.strip().partition("=")
                    if key == "out_time_ms" and value.isdigit() and duration > 0:
                        # Despite the name, ffmpeg reports microseconds here
                        emit(int(value) / 1_000_000 / duration)
                stderr = process.stderr.read()
                returncode = process.wait(timeout=duration + EXTRACT_TIMEOUT_MARGIN)
            except subprocess.TimeoutExpired:
                process.kill()
                raise
            return returncode, stderr

        logger.debug(
            f"Extracting audio segment from {file_path.name} at {start:.0f}s "
            f"(duration: {duration:.0f}s)"
        )
        try:
            returncode, stderr = await asyncio.to_thread(run_ffmpeg)
        except FileNotFoundError as e:
            raise ExtractionError(f"ffmpeg not found at: {self.ffmpeg_path}") from e
        except subprocess.TimeoutExpired as e:
            output.unlink(missing_ok=True)
            raise ExtractionError(f"ffmpeg timed out while extracting from {file_path}") from e

        if returncode != 0:
            output.unlink(missing_ok=True)
            error_msg = f"ffmpeg failed with return code {returncode}"
            if stderr:
                error_msg += f". Error: {stderr.strip()[-500:]}"
            raise ExtractionError(error_msg)

        if not output.exists():
            raise ExtractionError(f"ffmpeg completed but output file was not created: {output}")

        emit(1.0)
        logger.debug(f"Extracted {output.stat().st_size} byte audio segment {output.name}")
        return output
