"""Series Scheduler - bounded-concurrency batch runs over a series' files.

Each run owns a JobContext: the per-file progress table, the cancellation
token and the event channel clients consume. Files are processed in
batches of at most max_extraction_processes; a batch fully drains before
the next one starts.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from medialign.api.websocket import manager as ws_manager
from medialign.core.clock import utcnow
from medialign.core.errors import (
    NotFoundError,
    PersistenceError,
    PipelineCancelledError,
    SeriesAlreadyRunningError,
    error_context,
)
from medialign.database import async_session
from medialign.models import Episode, ExtractionStatus, FileStatus, MediaFile, Series
from medialign.services.config_service import (
    get_confidence_threshold,
    get_max_extraction_processes,
)
from medialign.services.event_broadcaster import EventBroadcaster
from medialign.services.file_state_machine import (
    FileStateMachine,
    StatusUpdate,
    create_file_state_machine,
)

logger = logging.getLogger(__name__)

# Files still owed an identification pass
SCHEDULABLE_EXTRACTION_STATUSES = (ExtractionStatus.PENDING, ExtractionStatus.IN_PROGRESS)


@dataclass
class RunSummary:
    """What a series run did. Always produced, even for all-failed or cancelled runs."""

    series_id: int
    total_files: int
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    batch_sizes: list[int] = field(default_factory=list)
    statuses: dict[int, FileStatus] = field(default_factory=dict)


@dataclass
class JobEvent:
    """One item of a run's event channel."""

    type: str  # "file_progress", "file_status" or "completed"
    series_id: int
    overall_progress: float
    file_id: int | None = None
    file_progress: float | None = None
    status: StatusUpdate | None = None
    summary: RunSummary | None = None


class JobContext:
    """State of one series run.

    The progress table has one writer per file: only the task processing a
    file reports for it. Subscribers each get their own queue.
    """

    def __init__(self, series_id: int) -> None:
        self.series_id = series_id
        self.cancel_event = asyncio.Event()
        self.progress: dict[int, float] = {}
        self.summary: RunSummary | None = None
        self._subscribers: list[asyncio.Queue] = []

    def track(self, file_ids: Sequence[int]) -> None:
        self.progress = {file_id: 0.0 for file_id in file_ids}

    @property
    def total_files(self) -> int:
        return len(self.progress)

    @property
    def completed_files(self) -> int:
        return sum(1 for value in self.progress.values() if value >= 100.0)

    @property
    def overall_progress(self) -> float:
        """Mean per-file percentage; untouched files count as 0."""
        if not self.progress:
            return 100.0 if self.finished else 0.0
        return sum(self.progress.values()) / len(self.progress)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def finished(self) -> bool:
        return self.summary is not None

    def cancel(self) -> None:
        self.cancel_event.set()

    def report(self, file_id: int, percent: float) -> None:
        """Record a file's progress and publish it."""
        percent = min(100.0, max(0.0, percent))
        if self.progress.get(file_id) == percent:
            return
        self.progress[file_id] = percent
        self._publish(
            JobEvent(
                "file_progress",
                self.series_id,
                self.overall_progress,
                file_id=file_id,
                file_progress=percent,
            )
        )

    def record(self, update: StatusUpdate) -> None:
        self.progress[update.file_id] = 100.0
        self._publish(
            JobEvent(
                "file_status",
                self.series_id,
                self.overall_progress,
                file_id=update.file_id,
                file_progress=100.0,
                status=update,
            )
        )

    def finish(self, summary: RunSummary) -> None:
        self.summary = summary
        self._publish(
            JobEvent("completed", self.series_id, self.overall_progress, summary=summary)
        )
        for queue in self._subscribers:
            queue.put_nowait(None)

    def stream(self) -> AsyncIterator[JobEvent]:
        """Events from now until the run completes.

        Subscribes immediately, so nothing published after this call is missed.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if self.finished:
            queue.put_nowait(
                JobEvent("completed", self.series_id, self.overall_progress, summary=self.summary)
            )
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[JobEvent]:
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def _publish(self, event: JobEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)


PipelineFactory = Callable[[EventBroadcaster], Awaitable[FileStateMachine]]


class SeriesScheduler:
    """Runs series identification, at most one run per series at a time."""

    def __init__(
        self,
        event_broadcaster: EventBroadcaster,
        pipeline_factory: PipelineFactory = create_file_state_machine,
    ) -> None:
        self._broadcaster = event_broadcaster
        self._pipeline_factory = pipeline_factory
        self._jobs: dict[int, JobContext] = {}
        self._tasks: dict[int, asyncio.Task] = {}

    def is_running(self, series_id: int) -> bool:
        return series_id in self._jobs

    def get_job(self, series_id: int) -> JobContext | None:
        return self._jobs.get(series_id)

    def _claim(self, series_id: int) -> JobContext:
        # No await between the check and the insert
        if series_id in self._jobs:
            raise SeriesAlreadyRunningError(series_id)
        job = JobContext(series_id)
        self._jobs[series_id] = job
        return job

    async def run(self, series_id: int) -> RunSummary:
        """Run the series to completion in the caller's task.

        Raises:
            NotFoundError: If the series does not exist
            SeriesAlreadyRunningError: If a run for the series is in flight
            PersistenceError: If the series record could not be updated
        """
        await self._require_series(series_id)
        job = self._claim(series_id)
        return await self._execute(job)

    async def start(self, series_id: int) -> JobContext:
        """Start a run in the background and return its context.

        Raises:
            NotFoundError: If the series does not exist
            SeriesAlreadyRunningError: If a run for the series is in flight
        """
        await self._require_series(series_id)
        job = self._claim(series_id)
        task = asyncio.create_task(self._execute(job))
        self._tasks[series_id] = task

        def on_done(t: asyncio.Task) -> None:
            self._tasks.pop(series_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"[SERIES {series_id}] run failed: {t.exception()}")

        task.add_done_callback(on_done)
        return job

    def cancel(self, series_id: int) -> bool:
        """Request cancellation; honored at the next batch boundary or retry."""
        job = self._jobs.get(series_id)
        if job is None:
            return False
        logger.info(f"[SERIES {series_id}] cancellation requested")
        job.cancel()
        return True

    async def stop(self) -> None:
        """Cancel all runs and wait for them to unwind."""
        for job in self._jobs.values():
            job.cancel()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _require_series(self, series_id: int) -> Series:
        async with async_session() as session:
            series = await session.get(Series, series_id)
        if series is None:
            raise NotFoundError(f"Series {series_id} not found")
        return series

    async def _load_work(self, series_id: int) -> tuple[list[MediaFile], list[Episode]]:
        async with async_session() as session:
            files = await session.execute(
                select(MediaFile)
                .where(
                    MediaFile.series_id == series_id,
                    MediaFile.audio_extraction_status.in_(SCHEDULABLE_EXTRACTION_STATUSES),
                )
                .order_by(MediaFile.id)
            )
            episodes = await session.execute(
                select(Episode)
                .where(Episode.series_id == series_id)
                .order_by(Episode.season_number, Episode.episode_number)
            )
            return list(files.scalars().all()), list(episodes.scalars().all())

    async def _execute(self, job: JobContext) -> RunSummary:
        series_id = job.series_id
        summary = RunSummary(series_id=series_id, total_files=0)
        forwarder = asyncio.create_task(self._forward_events(job, job.stream()))
        try:
            max_processes = await get_max_extraction_processes()
            threshold = await get_confidence_threshold()
            files, episodes = await self._load_work(series_id)
            job.track([f.id for f in files])
            summary.total_files = len(files)

            logger.info(
                f"[SERIES {series_id}] processing {len(files)} files against "
                f"{len(episodes)} episodes (max {max_processes} concurrent)"
            )

            if files:
                machine = await self._pipeline_factory(self._broadcaster)
                for start in range(0, len(files), max_processes):
                    if job.cancelled:
                        logger.info(
                            f"[SERIES {series_id}] cancelled before batch "
                            f"{len(summary.batch_sizes) + 1}"
                        )
                        break
                    batch = files[start : start + max_processes]
                    summary.batch_sizes.append(len(batch))
                    await self._run_batch(job, machine, batch, episodes, threshold, summary)

            summary.cancelled = job.cancelled
            await self._mark_processed(series_id)

            logger.info(
                f"[SERIES {series_id}] run finished: {summary.succeeded} identified, "
                f"{summary.failed} failed, {len(summary.batch_sizes)} batches"
                + (" (cancelled)" if summary.cancelled else "")
            )
            job.finish(summary)
            return summary
        except BaseException:
            # Subscribers always get a completion event
            if not job.finished:
                summary.cancelled = job.cancelled
                job.finish(summary)
            raise
        finally:
            await asyncio.gather(forwarder, return_exceptions=True)
            self._jobs.pop(series_id, None)

    async def _run_batch(
        self,
        job: JobContext,
        machine: FileStateMachine,
        batch: list[MediaFile],
        episodes: list[Episode],
        threshold: float,
        summary: RunSummary,
    ) -> None:
        logger.debug(
            f"[SERIES {job.series_id}] batch {len(summary.batch_sizes)}: "
            f"files {[f.id for f in batch]}"
        )
        results = await asyncio.gather(
            *(
                machine.identify(
                    media_file,
                    episodes,
                    threshold=threshold,
                    on_progress=job.report,
                    cancel_event=job.cancel_event,
                )
                for media_file in batch
            ),
            return_exceptions=True,
        )

        for media_file, result in zip(batch, results, strict=True):
            if isinstance(result, PipelineCancelledError):
                # Back to pending; counts as neither success nor failure
                continue
            if isinstance(result, BaseException):
                logger.error(
                    f"[SERIES {job.series_id}] file {media_file.id} raised "
                    f"{type(result).__name__}: {result}"
                )
                summary.failed += 1
                summary.statuses[media_file.id] = FileStatus.ERROR
                job.report(media_file.id, 100.0)
                continue

            summary.statuses[media_file.id] = result.status
            if result.status == FileStatus.ERROR:
                summary.failed += 1
            else:
                summary.succeeded += 1
            job.record(result)

    async def _mark_processed(self, series_id: int) -> None:
        """Stamp the series record. Failure here is fatal to the run."""
        with error_context(
            error_types=(SQLAlchemyError,),
            default_message=f"Failed to record run completion for series {series_id}",
            wrap_as=PersistenceError,
        ):
            async with async_session() as session:
                await session.execute(
                    update(Series).where(Series.id == series_id).values(last_processed_at=utcnow())
                )
                await session.commit()

    async def _forward_events(self, job: JobContext, events: AsyncIterator[JobEvent]) -> None:
        """Relay the run's channel to WebSocket clients."""
        last_percent = -1
        async for event in events:
            try:
                if event.type == "completed":
                    summary = event.summary
                    await self._broadcaster.broadcast_series_completed(
                        job.series_id,
                        summary.total_files,
                        summary.succeeded,
                        summary.failed,
                        cancelled=summary.cancelled,
                    )
                    continue

                # Progress ticks are throttled to whole percents of the aggregate
                percent = int(event.overall_progress)
                if event.type == "file_progress" and percent == last_percent:
                    continue
                last_percent = percent
                await self._broadcaster.broadcast_series_progress(
                    job.series_id,
                    event.overall_progress,
                    job.completed_files,
                    job.total_files,
                    file_id=event.file_id,
                    file_progress=event.file_progress,
                )
            except Exception as e:
                logger.warning(f"[SERIES {job.series_id}] failed to broadcast event: {e}")

    async def get_extraction_status(self, series_id: int) -> dict:
        """Aggregate extraction progress of a series.

        While a run is in flight, progress comes from its live context;
        otherwise from the persisted per-file progress.

        Raises:
            NotFoundError: If the series does not exist
        """
        await self._require_series(series_id)
        async with async_session() as session:
            result = await session.execute(
                select(MediaFile).where(MediaFile.series_id == series_id).order_by(MediaFile.id)
            )
            files = list(result.scalars().all())

        job = self._jobs.get(series_id)
        counts = dict.fromkeys(ExtractionStatus, 0)
        per_file = []
        for media_file in files:
            counts[media_file.audio_extraction_status] += 1
            progress = media_file.audio_extraction_progress
            if job is not None and media_file.id in job.progress:
                progress = int(job.progress[media_file.id])
            per_file.append(
                {
                    "id": media_file.id,
                    "filename": media_file.original_filename,
                    "status": media_file.status.value,
                    "audio_extraction_status": media_file.audio_extraction_status.value,
                    "audio_extraction_progress": progress,
                    "processing_step": media_file.processing_step.value,
                }
            )

        if job is not None:
            overall = job.overall_progress
        elif files:
            overall = sum(_persisted_percent(f) for f in files) / len(files)
        else:
            overall = 0.0

        return {
            "series_id": series_id,
            "is_processing": job is not None,
            "total_files": len(files),
            "pending_files": counts[ExtractionStatus.PENDING],
            "in_progress_files": counts[ExtractionStatus.IN_PROGRESS],
            "completed_files": counts[ExtractionStatus.COMPLETED],
            "error_files": counts[ExtractionStatus.ERROR],
            "overall_progress": round(overall, 1),
            "files": per_file,
        }


def _persisted_percent(media_file: MediaFile) -> float:
    if media_file.audio_extraction_status in (ExtractionStatus.COMPLETED, ExtractionStatus.ERROR):
        return 100.0
    if media_file.audio_extraction_status == ExtractionStatus.PENDING:
        return 0.0
    return float(media_file.audio_extraction_progress)


# Create domain-specific event broadcaster
event_broadcaster = EventBroadcaster(ws_manager)

# Singleton instance
series_scheduler = SeriesScheduler(event_broadcaster)
