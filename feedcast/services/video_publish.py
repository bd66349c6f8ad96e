"""
Video publish state machine for Bluesky.

Drives one video from raw bytes to a posted record:

    transcode -> Submitted -> (Processing)* -> Ready -> post
                                          \\-> Failed

The transcode finishes before any network call. The processing poll is
bounded by a wall-clock timeout and an optional cancellation event. The post
is created exactly once, and only after the job reaches Ready. Temporary files
are removed on every exit path.
"""

import asyncio
import contextlib
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, stop_when_event_set, wait_fixed

from ..adapters.bluesky import BlueskyAdapter, BlueskySession, PostRef, VideoJobStatus, video_embed
from ..core.config import BlueskyConfig, settings
from ..core.exceptions import JobCancelledError, JobTimeoutError, VideoJobFailedError
from ..core.logging import get_logger, with_logging_context
from ..media.ffmpeg_wrapper import transcode_for_bluesky
from ..observability.metrics import metrics

logger = get_logger("services.video_publish")

Transcoder = Callable[[str, str], Awaitable[Any]]


class JobState(str, Enum):
    """Lifecycle of a video publish job."""
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class VideoPublishJob:
    """Transient state of one video processing job."""
    job_id: str
    state: JobState = JobState.SUBMITTED
    blob: dict[str, Any] | None = None
    polls: int = 0
    error: str | None = None

    def apply(self, status: VideoJobStatus) -> None:
        """Fold a service status report into the job."""
        if status.is_failed:
            self.state = JobState.FAILED
            self.error = status.message or status.error or "video processing failed"
        elif status.blob:
            self.state = JobState.READY
            self.blob = status.blob
        elif status.is_completed:
            # Completed without a blob is not usable
            self.state = JobState.FAILED
            self.error = "video job completed without a blob"
        else:
            self.state = JobState.PROCESSING


class VideoPublishStateMachine:
    """
    Publish one video to Bluesky in two steps.

    ``prepare`` transcodes into a private temp dir and makes no network
    call; ``publish`` submits the result, waits for processing and posts:

        machine = VideoPublishStateMachine()
        async with machine.prepare(source, "clip.gif") as video_bytes:
            async with BlueskyAdapter() as bsky:
                session = await bsky.login()
                await machine.publish(bsky, session, video_bytes, "text")

    The caller owns the adapter and session.
    """

    def __init__(
        self,
        config: BlueskyConfig | None = None,
        transcoder: Transcoder | None = None,
        work_dir: str | None = None,
    ):
        self.config = config or settings.bluesky
        self.transcoder = transcoder or transcode_for_bluesky
        self.work_dir = work_dir
        self.poll_interval = self.config.video_poll_interval
        self.poll_timeout = self.config.video_poll_timeout

    @contextlib.asynccontextmanager
    async def prepare(self, source: bytes, name: str = "video.mp4") -> AsyncIterator[bytes]:
        """
        Transcode ``source`` and yield the MP4 bytes.

        The temp dir lives until the block exits, however it exits.

        Raises:
            TransformError: Transcode failed
        """
        temp_dir = tempfile.mkdtemp(prefix="feedcast-video-", dir=self.work_dir)
        try:
            yield await self._transcode(source, Path(temp_dir), name)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    async def publish(
        self,
        adapter: BlueskyAdapter,
        session: BlueskySession,
        video_bytes: bytes,
        status_text: str,
        cancel_event: asyncio.Event | None = None,
        name: str = "video.mp4",
        facets: list[dict[str, Any]] | None = None,
    ) -> PostRef:
        """
        Submit transcoded bytes, wait for processing, then post once.

        Args:
            adapter: Open Bluesky adapter
            session: Logged-in session
            video_bytes: MP4 produced by ``prepare``
            status_text: Post text
            cancel_event: Setting this event aborts the wait for processing
            name: File name reported to the video service
            facets: Rich-text facets for ``status_text``

        Raises:
            BlueskyError: Submission, polling or posting was rejected
            VideoJobFailedError: The service reported the job as failed
            JobTimeoutError: The job did not finish within the poll timeout
            JobCancelledError: ``cancel_event`` was set before the job finished
        """
        with with_logging_context(video_name=name):
            job = await self._submit(adapter, session, video_bytes, name)
            if job.state is not JobState.READY:
                await self._await_ready(adapter, session, job, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError()
            return await adapter.create_post(session, text=status_text, facets=facets, embed=video_embed(job.blob))

    async def run(
        self,
        adapter: BlueskyAdapter,
        session: BlueskySession,
        source: bytes,
        status_text: str,
        cancel_event: asyncio.Event | None = None,
        name: str = "video.mp4",
        facets: list[dict[str, Any]] | None = None,
    ) -> PostRef:
        """``prepare`` then ``publish`` with an already open session."""
        async with self.prepare(source, name) as video_bytes:
            return await self.publish(
                adapter, session, video_bytes, status_text, cancel_event=cancel_event, name=name, facets=facets
            )

    async def _transcode(self, source: bytes, temp_dir: Path, name: str) -> bytes:
        input_path = temp_dir / f"input{Path(name).suffix or '.bin'}"
        output_path = temp_dir / "output.mp4"
        input_path.write_bytes(source)

        start_time = time.time()
        await self.transcoder(str(input_path), str(output_path))
        metrics.track_media_processing("video", "transcode", time.time() - start_time)
        return output_path.read_bytes()

    async def _submit(
        self, adapter: BlueskyAdapter, session: BlueskySession, video_bytes: bytes, name: str
    ) -> VideoPublishJob:
        status = await adapter.upload_video(session, video_bytes, name)
        job = VideoPublishJob(job_id=status.job_id)
        if status.blob:
            job.apply(status)
        elif status.is_failed:
            job.apply(status)
            raise VideoJobFailedError(f"Video job {job.job_id} failed: {job.error}")
        logger.info("Video job submitted", job_id=job.job_id, state=job.state.value)
        return job

    async def _poll(self, adapter: BlueskyAdapter, session: BlueskySession, job: VideoPublishJob) -> VideoPublishJob:
        status = await adapter.get_job_status(session, job.job_id)
        job.polls += 1
        job.apply(status)
        metrics.track_video_poll(job.state.value)
        logger.debug("Video job polled", job_id=job.job_id, state=job.state.value, polls=job.polls, progress=status.progress)
        if job.state is JobState.FAILED:
            raise VideoJobFailedError(f"Video job {job.job_id} failed: {job.error}")
        return job

    async def _await_ready(
        self,
        adapter: BlueskyAdapter,
        session: BlueskySession,
        job: VideoPublishJob,
        cancel_event: asyncio.Event | None,
    ) -> None:
        stop = stop_after_delay(self.poll_timeout)
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)

        async def _sleep(seconds: float) -> None:
            if cancel_event is None:
                await asyncio.sleep(seconds)
                return
            # Wake early when cancelled
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(cancel_event.wait(), timeout=seconds)

        retrying = AsyncRetrying(
            retry=retry_if_result(lambda polled: polled.state is not JobState.READY),
            wait=wait_fixed(self.poll_interval),
            stop=stop,
            sleep=_sleep,
        )
        try:
            await retrying(self._poll, adapter, session, job)
        except RetryError as e:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Video publish cancelled", job_id=job.job_id, polls=job.polls)
                raise JobCancelledError() from e
            logger.warning("Video job timed out", job_id=job.job_id, polls=job.polls, timeout=self.poll_timeout)
            raise JobTimeoutError(f"Video job {job.job_id} not ready after {self.poll_timeout}s") from e

        logger.info("Video job ready", job_id=job.job_id, polls=job.polls)
