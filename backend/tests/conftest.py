"""Core pytest fixtures for MediAlign tests.

Every test gets a fresh in-memory database: async_session is patched in
each module that imported it, so nothing touches medialign.db. External
collaborators (ffmpeg, Whisper, TMDB) are replaced by the fakes below.
"""

import importlib
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from medialign.api.websocket import ConnectionManager
from medialign.core.errors import ExtractionError, TranscriptionError
from medialign.models import Episode, MediaFile, Series
from medialign.services.event_broadcaster import EventBroadcaster

_test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

_test_session_factory = sessionmaker(_test_engine, class_=AsyncSession, expire_on_commit=False)

# Modules holding their own reference to async_session
_SESSION_MODULES = [
    "medialign.database",
    "medialign.services.config_service",
    "medialign.services.metadata_cache",
    "medialign.services.file_state_machine",
    "medialign.services.series_scheduler",
    "medialign.services.series_service",
]


@pytest.fixture(autouse=True)
async def isolate_database(monkeypatch):
    """Patch async_session everywhere so no test touches medialign.db."""
    async with _test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    for module_name in _SESSION_MODULES:
        module = importlib.import_module(module_name)
        monkeypatch.setattr(module, "async_session", _test_session_factory)

    yield

    async with _test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
def session_factory():
    return _test_session_factory


class FakeExtractor:
    """Stands in for ffmpeg: writes a small file per segment.

    failures maps a segment start to how many times it fails before
    succeeding; fail_all makes every attempt fail.
    """

    def __init__(
        self,
        output_dir: Path,
        duration: float = 1800.0,
        failures: dict[float, int] | None = None,
        fail_all: bool = False,
    ) -> None:
        self.output_dir = output_dir
        self.duration = duration
        self.failures = dict(failures or {})
        self.fail_all = fail_all
        self.calls: list[tuple[Path, float, float]] = []

    async def probe_duration(self, file_path: Path) -> float:
        return self.duration

    async def extract(self, file_path, start, duration, on_progress=None) -> Path:
        self.calls.append((Path(file_path), start, duration))
        if self.fail_all:
            raise ExtractionError(f"ffmpeg failed on {file_path}")
        if self.failures.get(start, 0) > 0:
            self.failures[start] -= 1
            raise ExtractionError(f"ffmpeg failed at {start}")

        if on_progress is not None:
            on_progress(0.5)
            on_progress(1.0)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output = self.output_dir / f"{Path(file_path).stem}-{int(start)}.mp3"
        output.write_bytes(b"ID3fake")
        return output


class FakeTranscriber:
    """Returns canned text per source file (keyed by the video's stem)."""

    def __init__(self, texts: dict[str, str] | None = None, fail: bool = False) -> None:
        self.texts = texts or {}
        self.fail = fail
        self.calls: list[Path] = []

    async def transcribe(self, audio_path: Path) -> str:
        self.calls.append(audio_path)
        if self.fail:
            raise TranscriptionError(f"Transcription failed for {audio_path.name}")
        source_stem = audio_path.stem.rsplit("-", 1)[0]
        return self.texts.get(source_stem, "")


@pytest.fixture
def broadcaster():
    """Event broadcaster with no connected clients."""
    return EventBroadcaster(ConnectionManager())


@pytest.fixture
def audio_dir(tmp_path):
    return tmp_path / "audio"


@pytest.fixture
def library_dir(tmp_path):
    """Series directory on disk."""
    directory = tmp_path / "Show"
    directory.mkdir()
    return directory


@pytest.fixture
def make_series(session_factory, library_dir):
    """Create a series with episodes given as (season, episode, title, synopsis)."""

    async def _make(episodes=(), title="Show", tmdb_id="1399"):
        async with session_factory() as session:
            series = Series(tmdb_id=tmdb_id, title=title, directory=str(library_dir))
            session.add(series)
            await session.commit()
            await session.refresh(series)

            for season, number, ep_title, synopsis in episodes:
                session.add(
                    Episode(
                        series_id=series.id,
                        season_number=season,
                        episode_number=number,
                        title=ep_title,
                        synopsis=synopsis,
                        external_id=f"{tmdb_id}-{season}-{number}",
                    )
                )
            await session.commit()
        return series

    return _make


@pytest.fixture
def make_file(session_factory, library_dir):
    """Create a video file on disk and its File row."""

    async def _make(series, filename, **fields):
        path = library_dir / filename
        path.write_bytes(b"\x00" * 16)
        async with session_factory() as session:
            media_file = MediaFile(
                series_id=series.id,
                original_path=str(path),
                original_filename=filename,
                **fields,
            )
            session.add(media_file)
            await session.commit()
            await session.refresh(media_file)
        return media_file

    return _make


@pytest.fixture
def load_episodes(session_factory):
    async def _load(series_id):
        from sqlmodel import select

        async with session_factory() as session:
            result = await session.execute(
                select(Episode)
                .where(Episode.series_id == series_id)
                .order_by(Episode.season_number, Episode.episode_number)
            )
            return list(result.scalars().all())

    return _load


@pytest.fixture
def load_file(session_factory):
    async def _load(file_id):
        async with session_factory() as session:
            return await session.get(MediaFile, file_id)

    return _load


@pytest.fixture
def fake_extractor(audio_dir):
    """Extractor that succeeds on every segment unless told otherwise."""
    return FakeExtractor(audio_dir)


@pytest.fixture
def fake_transcriber():
    """Transcriber with no canned text; set .texts per test."""
    return FakeTranscriber()


@pytest.fixture
def sampler(fake_extractor):
    """AudioSampler over the fake extractor, without retry delays."""
    from medialign.core.audio_sampler import AudioSampler

    return AudioSampler(fake_extractor, retry_delay=0)


@pytest.fixture
def state_machine(broadcaster, sampler, fake_transcriber):
    """FileStateMachine wired to the in-test collaborators."""
    from medialign.services.file_state_machine import FileStateMachine

    return FileStateMachine(broadcaster, sampler=sampler, transcriber=fake_transcriber)
