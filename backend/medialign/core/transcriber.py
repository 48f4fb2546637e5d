"""Transcription engine used by the content pipeline.

Any object with an async ``transcribe(audio_path) -> str`` satisfies the
pipeline. WhisperTranscriber is the bundled implementation (``asr`` extra).
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Protocol

from medialign.core.errors import TranscriptionError

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    async def transcribe(self, audio_path: Path) -> str: ...


class WhisperTranscriber:
    """Speech-to-text via faster-whisper. The model is loaded once, on first use."""

    def __init__(
        self,
        model_name: str = "small",
        device: str = "auto",
        compute_type: str = "default",
        language: str | None = "en",
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        with self._lock:
            if self._model is None:
                from faster_whisper import WhisperModel

                logger.info(f"Loading Whisper model '{self.model_name}' on {self.device}")
                self._model = WhisperModel(
                    self.model_name, device=self.device, compute_type=self.compute_type
                )
            return self._model

    def _transcribe_sync(self, audio_path: Path) -> str:
        model = self._get_model()
        segments, _info = model.transcribe(
            str(audio_path), language=self.language, vad_filter=True
        )
        return " ".join(segment.text.strip() for segment in segments).strip()

    async def transcribe(self, audio_path: Path) -> str:
        """Transcribe one audio file.

        Raises:
            TranscriptionError: If the model cannot be loaded or decoding fails
        """
        try:
            text = await asyncio.to_thread(self._transcribe_sync, audio_path)
        except Exception as e:
            raise TranscriptionError(f"Transcription failed for {audio_path.name}: {e}") from e
        logger.debug(f"Transcribed {audio_path.name}: {len(text)} chars")
        return text


# Singleton instance; the model itself loads on first transcription
whisper_transcriber = WhisperTranscriber()
