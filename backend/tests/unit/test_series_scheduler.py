"""Unit tests for SeriesScheduler and JobContext.

Tests bounded batches, failure isolation, single-run-per-series,
cancellation and extraction status reporting.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from medialign.core.audio_sampler import AudioSampler
from medialign.core.errors import (
    ExtractionError,
    NotFoundError,
    SeriesAlreadyRunningError,
)
from medialign.models import ExtractionStatus, FileStatus
from medialign.services.config_service import update_settings
from medialign.services.event_broadcaster import EventBroadcaster
from medialign.services.file_state_machine import FileStateMachine, StatusUpdate
from medialign.services.series_scheduler import JobContext, SeriesScheduler


class ConcurrencyProbe:
    """Wraps an extractor and records how many files are extracted at once."""

    def __init__(self, inner, delay: float = 0.01, fail_for: set[str] | None = None):
        self.inner = inner
        self.delay = delay
        self.fail_for = fail_for or set()
        self.active = 0
        self.peak = 0

    async def probe_duration(self, file_path):
        return await self.inner.probe_duration(file_path)

    async def extract(self, file_path, start, duration, on_progress=None):
        if file_path.name in self.fail_for:
            raise ExtractionError(f"corrupt stream in {file_path.name}")
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            return await self.inner.extract(file_path, start, duration, on_progress)
        finally:
            self.active -= 1


class GatedExtractor:
    """Blocks every extraction until the gate opens."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def probe_duration(self, file_path):
        return await self.inner.probe_duration(file_path)

    async def extract(self, file_path, start, duration, on_progress=None):
        self.entered.set()
        await self.gate.wait()
        return await self.inner.extract(file_path, start, duration, on_progress)


@pytest.fixture
def mock_broadcaster():
    """Create a mock EventBroadcaster."""
    broadcaster = MagicMock(spec=EventBroadcaster)
    broadcaster.broadcast_file_updated = AsyncMock()
    broadcaster.broadcast_series_progress = AsyncMock()
    broadcaster.broadcast_series_completed = AsyncMock()
    return broadcaster


@pytest.fixture
def build_scheduler(mock_broadcaster, fake_transcriber):
    """Scheduler whose pipeline extracts through the given extractor."""

    def _build(extractor):
        machine = FileStateMachine(
            mock_broadcaster,
            sampler=AudioSampler(extractor, retry_delay=0),
            transcriber=fake_transcriber,
        )

        async def factory(_broadcaster):
            return machine

        return SeriesScheduler(mock_broadcaster, pipeline_factory=factory)

    return _build


@pytest.fixture
def seed_files(make_series, make_file):
    async def _seed(count, prefix="mystery"):
        series = await make_series([(1, n, f"Episode {n}", f"synopsis {n}") for n in range(1, 4)])
        files = [await make_file(series, f"{prefix}{i}.mkv") for i in range(count)]
        return series, files

    return _seed


class TestJobContext:
    """Test the per-run progress table and event channel."""

    def test_overall_progress_is_mean(self):
        job = JobContext(1)
        job.track([1, 2, 3, 4])
        job.report(1, 100)
        job.report(2, 50)
        assert job.overall_progress == pytest.approx(37.5)
        assert job.completed_files == 1

    def test_report_clamps(self):
        job = JobContext(1)
        job.track([1])
        job.report(1, 140)
        assert job.progress[1] == 100.0
        job.report(1, -3)
        assert job.progress[1] == 0.0

    def test_empty_run_finishes_at_100(self):
        from medialign.services.series_scheduler import RunSummary

        job = JobContext(1)
        job.track([])
        assert job.overall_progress == 0.0
        job.finish(RunSummary(series_id=1, total_files=0))
        assert job.overall_progress == 100.0

    async def test_stream_delivers_until_completed(self):
        from medialign.services.series_scheduler import RunSummary

        job = JobContext(7)
        job.track([1, 2])
        events = job.stream()

        job.report(1, 40)
        job.report(1, 40)  # Duplicate, not republished
        job.record(
            StatusUpdate(
                file_id=2,
                status=FileStatus.UNKNOWN,
                confidence=0.1,
                episode_id=None,
                corrected_filename=None,
                is_verified=False,
            )
        )
        job.finish(RunSummary(series_id=7, total_files=2, succeeded=1))

        received = [event async for event in events]
        assert [e.type for e in received] == ["file_progress", "file_status", "completed"]
        assert received[-1].summary.succeeded == 1

    async def test_stream_after_finish(self):
        from medialign.services.series_scheduler import RunSummary

        job = JobContext(7)
        job.finish(RunSummary(series_id=7, total_files=0))

        received = [event async for event in job.stream()]
        assert [e.type for e in received] == ["completed"]


class TestBatching:
    """Test bounded-concurrency batches."""

    async def test_batches_respect_max_processes(
        self, build_scheduler, seed_files, fake_extractor
    ):
        await update_settings(max_extraction_processes=2)
        probe = ConcurrencyProbe(fake_extractor)
        scheduler = build_scheduler(probe)
        series, _files = await seed_files(5)

        summary = await scheduler.run(series.id)

        assert summary.batch_sizes == [2, 2, 1]
        assert probe.peak == 2
        assert summary.total_files == 5
        assert summary.succeeded == 5
        assert summary.failed == 0

    async def test_single_process_is_sequential(
        self, build_scheduler, seed_files, fake_extractor
    ):
        await update_settings(max_extraction_processes=1)
        probe = ConcurrencyProbe(fake_extractor)
        scheduler = build_scheduler(probe)
        series, _files = await seed_files(3)

        summary = await scheduler.run(series.id)

        assert summary.batch_sizes == [1, 1, 1]
        assert probe.peak == 1

    async def test_failure_is_isolated(
        self, build_scheduler, seed_files, fake_extractor, load_file
    ):
        await update_settings(max_extraction_processes=3)
        probe = ConcurrencyProbe(fake_extractor, fail_for={"mystery1.mkv"})
        scheduler = build_scheduler(probe)
        series, files = await seed_files(3)

        summary = await scheduler.run(series.id)

        assert summary.failed == 1
        assert summary.succeeded == 2
        assert summary.statuses[files[1].id] == FileStatus.ERROR
        assert (await load_file(files[1].id)).status == FileStatus.ERROR
        assert (await load_file(files[0].id)).status == FileStatus.UNKNOWN
        assert (await load_file(files[2].id)).status == FileStatus.UNKNOWN

    async def test_only_pending_files_are_scheduled(
        self, build_scheduler, seed_files, fake_extractor, make_file
    ):
        series, _files = await seed_files(2)
        await make_file(
            series,
            "done.mkv",
            status=FileStatus.CORRECT,
            audio_extraction_status=ExtractionStatus.COMPLETED,
        )
        scheduler = build_scheduler(ConcurrencyProbe(fake_extractor))

        summary = await scheduler.run(series.id)

        assert summary.total_files == 2

    async def test_empty_series(self, build_scheduler, make_series, fake_extractor):
        series = await make_series()
        scheduler = build_scheduler(fake_extractor)

        summary = await scheduler.run(series.id)

        assert summary.total_files == 0
        assert summary.batch_sizes == []
        assert not scheduler.is_running(series.id)

    async def test_completion_is_broadcast(
        self, build_scheduler, seed_files, fake_extractor, mock_broadcaster
    ):
        await update_settings(max_extraction_processes=2)
        scheduler = build_scheduler(fake_extractor)
        series, _files = await seed_files(3)

        await scheduler.run(series.id)

        mock_broadcaster.broadcast_series_completed.assert_awaited_once_with(
            series.id, 3, 3, 0, cancelled=False
        )
        assert mock_broadcaster.broadcast_series_progress.await_count >= 1


class TestRunControl:
    """Test single-run ownership and cancellation."""

    async def test_unknown_series(self, build_scheduler, fake_extractor):
        scheduler = build_scheduler(fake_extractor)
        with pytest.raises(NotFoundError):
            await scheduler.run(999)

    async def test_second_run_rejected(self, build_scheduler, seed_files, fake_extractor):
        gated = GatedExtractor(fake_extractor)
        scheduler = build_scheduler(gated)
        series, _files = await seed_files(1)

        job = await scheduler.start(series.id)
        events = job.stream()
        await gated.entered.wait()

        with pytest.raises(SeriesAlreadyRunningError):
            await scheduler.run(series.id)
        with pytest.raises(SeriesAlreadyRunningError):
            await scheduler.start(series.id)

        gated.gate.set()
        received = [event async for event in events]
        assert received[-1].type == "completed"
        assert received[-1].summary.succeeded == 1
        await scheduler.stop()

    async def test_cancel_stops_at_boundary(
        self, build_scheduler, seed_files, fake_extractor, load_file
    ):
        await update_settings(max_extraction_processes=1)
        gated = GatedExtractor(fake_extractor)
        scheduler = build_scheduler(gated)
        series, files = await seed_files(3)

        run = asyncio.create_task(scheduler.run(series.id))
        await gated.entered.wait()
        assert scheduler.cancel(series.id)
        gated.gate.set()
        summary = await run

        assert summary.cancelled
        assert summary.batch_sizes == [1]
        assert summary.succeeded == 0
        assert summary.failed == 0
        for media_file in files:
            assert (await load_file(media_file.id)).status == FileStatus.PENDING
        assert not scheduler.is_running(series.id)

    async def test_cancel_when_idle(self, build_scheduler, fake_extractor):
        assert not build_scheduler(fake_extractor).cancel(1)

    async def test_run_can_repeat_after_completion(
        self, build_scheduler, seed_files, fake_extractor
    ):
        scheduler = build_scheduler(fake_extractor)
        series, _files = await seed_files(1)

        first = await scheduler.run(series.id)
        second = await scheduler.run(series.id)

        assert first.total_files == 1
        # Completed files are not picked up again
        assert second.total_files == 0


class TestExtractionStatus:
    """Test aggregate extraction status."""

    async def test_idle_status_from_database(
        self, build_scheduler, seed_files, fake_extractor, make_file
    ):
        series, _files = await seed_files(1)
        await make_file(
            series,
            "half.mkv",
            audio_extraction_status=ExtractionStatus.IN_PROGRESS,
            audio_extraction_progress=50,
        )
        await make_file(series, "broken.mkv", audio_extraction_status=ExtractionStatus.ERROR)
        scheduler = build_scheduler(fake_extractor)

        status = await scheduler.get_extraction_status(series.id)

        assert not status["is_processing"]
        assert status["total_files"] == 3
        assert status["pending_files"] == 1
        assert status["in_progress_files"] == 1
        assert status["error_files"] == 1
        # (0 + 50 + 100) / 3
        assert status["overall_progress"] == pytest.approx(50.0)

    async def test_status_after_run(self, build_scheduler, seed_files, fake_extractor):
        scheduler = build_scheduler(fake_extractor)
        series, _files = await seed_files(2)

        await scheduler.run(series.id)
        status = await scheduler.get_extraction_status(series.id)

        assert status["completed_files"] == 2
        assert status["overall_progress"] == 100.0
        assert all(f["audio_extraction_progress"] == 100 for f in status["files"])

    async def test_live_status_during_run(self, build_scheduler, seed_files, fake_extractor):
        gated = GatedExtractor(fake_extractor)
        scheduler = build_scheduler(gated)
        series, _files = await seed_files(2)

        job = await scheduler.start(series.id)
        events = job.stream()
        await gated.entered.wait()

        status = await scheduler.get_extraction_status(series.id)
        assert status["is_processing"]
        assert status["overall_progress"] < 100.0

        gated.gate.set()
        async for _event in events:
            pass
        await scheduler.stop()

    async def test_unknown_series(self, build_scheduler, fake_extractor):
        with pytest.raises(NotFoundError):
            await build_scheduler(fake_extractor).get_extraction_status(42)
