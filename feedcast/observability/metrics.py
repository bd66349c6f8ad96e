"""
Prometheus metrics collection for feedcast.

This module provides:
- Application metrics (requests, response times)
- Ingest metrics (media classified, artifacts stored)
- Publish metrics (posts published/failed, video job polls)
- External API and storage call metrics
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
)

from ..core.config import settings


class MetricsCollector:
    """Central metrics collector for the application."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics collector."""
        self.registry = registry or CollectorRegistry()
        self._setup_metrics()

    def _setup_metrics(self):
        """Initialize all application metrics."""

        self.app_info = Info(
            'feedcast_info',
            'Application information',
            registry=self.registry
        )
        self.app_info.info({
            'version': settings.app.version,
            'environment': settings.app.environment,
            'name': settings.app.app_name
        })

        # HTTP request metrics
        self.http_requests_total = Counter(
            'feedcast_http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status_code'],
            registry=self.registry
        )

        self.http_request_duration = Histogram(
            'feedcast_http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['method', 'endpoint'],
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0],
            registry=self.registry
        )

        # Ingest metrics
        self.media_ingested_total = Counter(
            'feedcast_media_ingested_total',
            'Uploaded media by class and outcome',
            ['media_class', 'success'],
            registry=self.registry
        )

        self.media_processing_duration = Histogram(
            'feedcast_media_processing_duration_seconds',
            'Media transform duration in seconds',
            ['media_class', 'operation'],
            buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
            registry=self.registry
        )

        # Storage metrics
        self.storage_operations_total = Counter(
            'feedcast_storage_operations_total',
            'Blob store operations',
            ['operation', 'status'],
            registry=self.registry
        )

        self.storage_operation_duration = Histogram(
            'feedcast_storage_operation_duration_seconds',
            'Blob store operation duration in seconds',
            ['operation'],
            registry=self.registry
        )

        # Publish metrics
        self.posts_published_total = Counter(
            'feedcast_posts_published_total',
            'Total posts successfully published',
            ['platform', 'embed'],
            registry=self.registry
        )

        self.posts_failed_total = Counter(
            'feedcast_posts_failed_total',
            'Total posts that failed to publish',
            ['platform', 'error_type'],
            registry=self.registry
        )

        self.video_job_polls_total = Counter(
            'feedcast_video_job_polls_total',
            'Video processing job status polls',
            ['state'],
            registry=self.registry
        )

        # External API metrics
        self.external_api_calls_total = Counter(
            'feedcast_external_api_calls_total',
            'External API calls',
            ['service', 'endpoint', 'status_code'],
            registry=self.registry
        )

        self.external_api_duration = Histogram(
            'feedcast_external_api_duration_seconds',
            'External API call duration in seconds',
            ['service', 'endpoint'],
            registry=self.registry
        )

    def track_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Track HTTP request metrics."""
        self.http_requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()

        self.http_request_duration.labels(
            method=method, endpoint=endpoint
        ).observe(duration)

    def track_media_ingested(self, media_class: str, success: bool):
        """Track an ingest request outcome."""
        self.media_ingested_total.labels(
            media_class=media_class, success="success" if success else "failure"
        ).inc()

    def track_media_processing(self, media_class: str, operation: str, duration: float):
        """Track a transform or transcode step."""
        self.media_processing_duration.labels(
            media_class=media_class, operation=operation
        ).observe(duration)

    def track_storage_operation(self, operation: str, status: str, duration: float):
        """Track storage operation."""
        self.storage_operations_total.labels(operation=operation, status=status).inc()
        self.storage_operation_duration.labels(operation=operation).observe(duration)

    def track_post_published(self, platform: str, embed: str):
        """Track successful post publication."""
        self.posts_published_total.labels(platform=platform, embed=embed).inc()

    def track_post_failed(self, platform: str, error_type: str):
        """Track failed post publication."""
        self.posts_failed_total.labels(platform=platform, error_type=error_type).inc()

    def track_video_poll(self, state: str):
        """Track one video job status poll."""
        self.video_job_polls_total.labels(state=state).inc()

    def track_external_api_call(self, service: str, endpoint: str, status_code: int, duration: float):
        """Track external API call."""
        self.external_api_calls_total.labels(
            service=service, endpoint=endpoint, status_code=str(status_code)
        ).inc()

        self.external_api_duration.labels(
            service=service, endpoint=endpoint
        ).observe(duration)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest(self.registry)


# Global metrics collector
metrics = MetricsCollector()


def get_metrics_response():
    """Get metrics in format suitable for HTTP response."""
    return metrics.get_metrics(), {"Content-Type": CONTENT_TYPE_LATEST}
