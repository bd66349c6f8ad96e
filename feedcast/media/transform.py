"""
Raster transform engine for feedcast.

Produces the derived artifacts for one uploaded file:
- Stills: two JPEG variants bounded by the small and large edge sizes
- Animated GIFs: the untouched original plus a JPEG of frame 0
- Video and audio: the original file, passed through

All functions here are synchronous and do no network I/O. Callers in async
code run them in an executor.
"""

import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from ..core.config import MediaConfig, settings
from ..core.exceptions import ClassificationError, TransformError
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import metrics
from .classifier import MediaClass

logger = get_logger("media.transform")

JPEG_CONTENT_TYPE = "image/jpeg"


class ArtifactRole(str, Enum):
    """Role a derived artifact plays for its source upload."""
    SMALL = "small"
    LARGE = "large"
    GIF = "gif"
    GIF_PREVIEW = "gif-preview"
    VIDEO = "video"
    AUDIO = "audio"


@dataclass
class MediaAsset:
    """One uploaded file while it is being processed."""
    source_path: str
    mime_type: str
    base_name: str
    extension: str


@dataclass
class DerivedArtifact:
    """A file on local disk waiting to be stored under ``target_key``."""
    local_path: str
    target_key: str
    content_type: str
    role: ArtifactRole
    dimensions: tuple[int, int] | None = None


def _to_jpeg_mode(img: Image.Image) -> Image.Image:
    """Flatten palette/alpha images onto white so they can be JPEG encoded."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def resize_within(source_path: str, output_path: str, bound: int, quality: int | None = None) -> tuple[int, int]:
    """
    Write a JPEG copy of ``source_path`` whose longer edge is at most ``bound``.

    Aspect ratio is preserved and the image is never enlarged.

    Returns:
        Output (width, height)
    """
    quality = quality or settings.media.jpeg_quality
    try:
        with Image.open(source_path) as img:
            img = ImageOps.exif_transpose(img)
            img = _to_jpeg_mode(img)
            img.thumbnail((bound, bound), Image.Resampling.LANCZOS)
            img.save(output_path, format="JPEG", quality=quality, optimize=True)
            return img.size
    except (OSError, UnidentifiedImageError, ValueError) as e:
        raise TransformError(f"Error resizing image: {e}") from e


def extract_first_frame(source_path: str, output_path: str, quality: int | None = None) -> tuple[int, int]:
    """Write frame 0 of an animated image as a JPEG. Later frames are never decoded."""
    quality = quality or settings.media.jpeg_quality
    try:
        with Image.open(source_path) as img:
            img.seek(0)
            frame = _to_jpeg_mode(img.copy())
            frame.save(output_path, format="JPEG", quality=quality)
            return frame.size
    except (OSError, UnidentifiedImageError, EOFError, ValueError) as e:
        raise TransformError(f"Error extracting preview frame: {e}") from e


def _remove_quietly(paths: list[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def _derive_image_variants(asset: MediaAsset, output_dir: Path, config: MediaConfig) -> list[DerivedArtifact]:
    artifacts = []
    # Large first, matching the order artifacts are stored in
    sizes = [(ArtifactRole.LARGE, config.large_size), (ArtifactRole.SMALL, config.small_size)]
    try:
        for role, bound in sizes:
            key = f"{asset.base_name}-{bound}.jpg"
            output_path = str(output_dir / key)
            dimensions = resize_within(asset.source_path, output_path, bound, config.jpeg_quality)
            artifacts.append(DerivedArtifact(output_path, key, JPEG_CONTENT_TYPE, role, dimensions))
    except TransformError:
        _remove_quietly([a.local_path for a in artifacts])
        raise
    return artifacts


def _derive_animated_preview(asset: MediaAsset, output_dir: Path, config: MediaConfig) -> list[DerivedArtifact]:
    preview_key = f"{asset.base_name}-preview.jpg"
    preview_path = str(output_dir / preview_key)
    dimensions = extract_first_frame(asset.source_path, preview_path, config.jpeg_quality)
    return [
        DerivedArtifact(asset.source_path, f"{asset.base_name}.gif", "image/gif", ArtifactRole.GIF),
        DerivedArtifact(preview_path, preview_key, JPEG_CONTENT_TYPE, ArtifactRole.GIF_PREVIEW, dimensions),
    ]


def derive_artifacts(
    asset: MediaAsset, media_class: MediaClass, output_dir: str, config: MediaConfig | None = None
) -> list[DerivedArtifact]:
    """
    Produce every derived artifact for ``asset`` on local disk.

    Args:
        asset: Uploaded file being processed
        media_class: Result of classification
        output_dir: Directory for newly written files
        config: Media settings; the global settings when omitted

    Returns:
        Artifacts in the order they should be stored

    Raises:
        ClassificationError: For unsupported media
        TransformError: If a resize or frame extraction fails; no partial
            output is left behind
    """
    config = config or settings.media
    start_time = time.time()
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    if media_class is MediaClass.IMAGE:
        artifacts = _derive_image_variants(asset, out, config)
    elif media_class is MediaClass.ANIMATED_IMAGE:
        artifacts = _derive_animated_preview(asset, out, config)
    elif media_class is MediaClass.VIDEO:
        artifacts = [DerivedArtifact(asset.source_path, f"{asset.base_name}.mp4", "video/mp4", ArtifactRole.VIDEO)]
    elif media_class is MediaClass.AUDIO:
        artifacts = [DerivedArtifact(asset.source_path, f"{asset.base_name}.mp3", "audio/mpeg", ArtifactRole.AUDIO)]
    else:
        raise ClassificationError()

    duration = time.time() - start_time
    metrics.track_media_processing(media_class.value, "derive", duration)
    performance_logger.log_media_step(
        "derive_artifacts",
        duration,
        True,
        media_class=media_class.value,
        artifacts=[a.role.value for a in artifacts],
    )
    logger.debug("Artifacts derived", base_name=asset.base_name, count=len(artifacts))
    return artifacts
