"""Media classification by declared MIME type and file extension."""

from enum import Enum

from ..core.exceptions import ClassificationError

ANIMATED_IMAGE_EXTENSION = ".gif"


class MediaClass(str, Enum):
    """Transform strategy selected for an upload."""
    IMAGE = "image"
    ANIMATED_IMAGE = "animated_image"
    VIDEO = "video"
    AUDIO = "audio"
    UNSUPPORTED = "unsupported"


def normalize_extension(extension: str | None) -> str:
    """Lower-case an extension and make sure it carries a leading dot."""
    if not extension:
        return ""
    extension = extension.strip().lower()
    return extension if extension.startswith(".") else f".{extension}"


def classify(mime_type: str | None, extension: str | None) -> MediaClass:
    """
    Select the media class for an upload.

    The animated-image extension wins over the MIME type, so a ``.gif``
    declared as ``image/gif`` is an animated image, not a still.
    """
    mime = (mime_type or "").strip().lower()
    ext = normalize_extension(extension)

    if ext == ANIMATED_IMAGE_EXTENSION:
        return MediaClass.ANIMATED_IMAGE
    if mime.startswith("image/"):
        return MediaClass.IMAGE
    if mime.startswith("video/"):
        return MediaClass.VIDEO
    if mime.startswith("audio/"):
        return MediaClass.AUDIO
    return MediaClass.UNSUPPORTED


def require_supported(mime_type: str | None, extension: str | None) -> MediaClass:
    """Classify and raise ``ClassificationError`` for unsupported media."""
    media_class = classify(mime_type, extension)
    if media_class is MediaClass.UNSUPPORTED:
        raise ClassificationError()
    return media_class
