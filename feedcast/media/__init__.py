"""
Media processing module for feedcast.

- classify: pick the media class of an upload
- derive_artifacts: resized variants and GIF preview frames
- FFmpegWrapper: baseline MP4 transcoding for video posts
"""

from .classifier import MediaClass, classify, require_supported
from .ffmpeg_wrapper import FFmpegWrapper, ffmpeg_wrapper, transcode_for_bluesky
from .transform import (
    ArtifactRole,
    DerivedArtifact,
    MediaAsset,
    derive_artifacts,
    extract_first_frame,
    resize_within,
)

__all__ = [
    "MediaClass",
    "classify",
    "require_supported",
    "FFmpegWrapper",
    "ffmpeg_wrapper",
    "transcode_for_bluesky",
    "ArtifactRole",
    "DerivedArtifact",
    "MediaAsset",
    "derive_artifacts",
    "extract_first_frame",
    "resize_within",
]
