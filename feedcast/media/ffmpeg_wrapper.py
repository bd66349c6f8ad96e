"""
FFmpeg wrapper for feedcast.

Transcodes source video (or animated GIFs) into a baseline H.264 MP4 that the
Bluesky video service accepts:
- even pixel dimensions (width/height rounded down to the nearest even value)
- yuv420p pixel format
- ``faststart`` layout so playback can begin before the download finishes

The transcode runs to completion before any network call; failures are
terminal and not retried.
"""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any

from ..core.config import settings
from ..core.exceptions import TransformError
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import metrics

logger = get_logger("media.ffmpeg_wrapper")

EVEN_SCALE_FILTER = "scale=trunc(iw/2)*2:trunc(ih/2)*2"


@dataclass
class TranscodeParams:
    """Parameters for a baseline-profile transcode."""

    input_path: str
    output_path: str
    video_codec: str = "libx264"
    profile: str = "baseline"
    pixel_format: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    timeout_seconds: int = 600


@dataclass
class TranscodeResult:
    """Result of a transcode operation."""

    input_path: str
    output_path: str
    execution_time: float
    file_size_input: int
    file_size_output: int
    dimensions_input: tuple[int, int] | None = None
    dimensions_output: tuple[int, int] | None = None


class FFmpegError(TransformError):
    """FFmpeg exited with an error or produced no output."""

    public_message = "Error transcoding video."


class FFmpegTimeoutError(FFmpegError):
    """FFmpeg did not finish within the configured timeout."""

    pass


def even_dimensions(width: int, height: int) -> tuple[int, int]:
    """Round both dimensions down to the nearest even value, as the scale filter does."""
    return width - width % 2, height - height % 2


class FFmpegWrapper:
    """Async wrapper around the ffmpeg and ffprobe binaries."""

    def __init__(self, ffmpeg_binary: str | None = None, ffprobe_binary: str | None = None):
        self.ffmpeg_binary = ffmpeg_binary or settings.media.ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary or settings.media.ffprobe_binary

    def build_command(self, params: TranscodeParams) -> list[str]:
        """Build the ffmpeg argument list for a transcode."""
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", params.input_path,
            "-vf", EVEN_SCALE_FILTER,
            "-c:v", params.video_codec,
            "-profile:v", params.profile,
            "-pix_fmt", params.pixel_format,
            "-movflags", "+faststart",
            "-c:a", params.audio_codec,
            "-b:a", params.audio_bitrate,
            params.output_path,
        ]

    async def transcode(self, params: TranscodeParams) -> TranscodeResult:
        """
        Transcode ``params.input_path`` to ``params.output_path``.

        Raises:
            FFmpegError: On a non-zero exit, a missing output file or a missing input
            FFmpegTimeoutError: When the process outlives ``timeout_seconds``
        """
        start_time = time.time()

        if not os.path.exists(params.input_path):
            raise FFmpegError(f"Input file does not exist: {params.input_path}")

        input_size = os.path.getsize(params.input_path)
        dimensions_input = await self.read_dimensions(params.input_path)

        logger.info(
            "Starting video transcode",
            input_path=params.input_path,
            output_path=params.output_path,
            dimensions_input=dimensions_input,
        )

        command = self.build_command(params)
        logger.debug("Executing FFmpeg command", command=" ".join(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FFmpegError(f"Could not start ffmpeg: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=params.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FFmpegTimeoutError(f"Transcode timed out after {params.timeout_seconds}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            stderr_str = stderr.decode("utf-8", errors="replace").strip()
            metrics.track_media_processing("video", "transcode_failed", time.time() - start_time)
            raise FFmpegError(f"FFmpeg failed with exit code {process.returncode}: {stderr_str}")

        if not os.path.exists(params.output_path):
            raise FFmpegError(f"Output file was not created: {params.output_path}")

        execution_time = time.time() - start_time
        result = TranscodeResult(
            input_path=params.input_path,
            output_path=params.output_path,
            execution_time=execution_time,
            file_size_input=input_size,
            file_size_output=os.path.getsize(params.output_path),
            dimensions_input=dimensions_input,
            dimensions_output=await self.read_dimensions(params.output_path),
        )

        metrics.track_media_processing("video", "transcode", execution_time)
        performance_logger.log_media_step(
            "transcode",
            execution_time,
            True,
            file_size_input=result.file_size_input,
            file_size_output=result.file_size_output,
            dimensions_output=result.dimensions_output,
        )
        return result

    async def read_dimensions(self, file_path: str) -> tuple[int, int] | None:
        """Return (width, height) of the first video stream, or None if ffprobe cannot tell."""
        info = await self._get_file_info(file_path)
        return info.get("dimensions")

    async def _get_file_info(self, file_path: str) -> dict[str, Any]:
        """Get video stream information using ffprobe."""
        cmd = [
            self.ffprobe_binary,
            "-v", "quiet",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=p=0",
            file_path,
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            logger.warning("ffprobe unavailable", error=str(e))
            return {}

        if process.returncode == 0:
            dimensions_str = stdout.decode().strip().splitlines()
            if dimensions_str and "," in dimensions_str[0]:
                width, height = map(int, dimensions_str[0].split(",")[:2])
                return {"dimensions": (width, height)}

        logger.warning("Failed to get file info", file_path=file_path, stderr=stderr.decode(errors="replace"))
        return {}


# Module-level wrapper using configured binaries
ffmpeg_wrapper = FFmpegWrapper()


async def transcode_for_bluesky(input_path: str, output_path: str, timeout_seconds: int | None = None) -> TranscodeResult:
    """Transcode a video or GIF into the baseline MP4 profile."""
    params = TranscodeParams(
        input_path=input_path,
        output_path=output_path,
        timeout_seconds=timeout_seconds or settings.media.transcode_timeout,
    )
    return await ffmpeg_wrapper.transcode(params)
