"""
Error taxonomy for feedcast.

Every failure in the ingest and publish paths is raised as one of these
exceptions. The HTTP layer maps ``status_code`` to the response status and
renders ``public_message`` as a plain-text body; ``str(exc)`` goes to the logs.
"""


class FeedcastError(Exception):
    """Base exception for all pipeline failures."""

    status_code = 500
    public_message = "Unexpected server error."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class ClassificationError(FeedcastError):
    """Uploaded media type is not supported."""

    status_code = 400
    public_message = "Unsupported file type."


class TransformError(FeedcastError):
    """Resize, frame extraction or transcode failed."""

    public_message = "Error processing media."


class StorageError(FeedcastError):
    """Blob store put/get failed."""

    public_message = "Error uploading to storage."


class BlobNotFoundError(StorageError):
    """Requested key does not exist in the blob store."""

    public_message = "Stored object not found."

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Stored object not found: {key}")


class LedgerError(FeedcastError):
    """Upload ledger write failed."""

    public_message = "Error recording upload."


class PlatformError(FeedcastError):
    """Remote social platform rejected a request."""

    status_code = 502
    platform = "unknown"
    public_message = "Error posting to platform."

    def __init__(self, message: str | None = None, status: int | None = None):
        self.status = status
        super().__init__(message)


class BlueskyError(PlatformError):
    """Bluesky (AT Protocol) request failed."""

    platform = "bluesky"
    public_message = "Error posting to bluesky."


class BlueskyAuthError(BlueskyError):
    """Bluesky login or service auth failed."""


class MastodonError(PlatformError):
    """Mastodon request failed."""

    platform = "mastodon"
    public_message = "Error posting to mastodon."


class MediaFetchError(PlatformError):
    """Remote media referenced by a publish request could not be downloaded."""

    platform = "remote"
    public_message = "Error fetching remote media."


class VideoJobFailedError(BlueskyError):
    """Video processing job reported failure."""

    public_message = "Video processing failed."


class JobTimeoutError(FeedcastError):
    """Video processing job did not reach a terminal state in time."""

    status_code = 504
    public_message = "Video processing timed out."


class JobCancelledError(FeedcastError):
    """Video publish was cancelled before the job finished."""

    status_code = 499
    public_message = "Video publish cancelled."
