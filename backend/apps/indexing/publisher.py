"""
Event publisher for manual processing progress.

Publishes events to the Django Channels layer for broadcast to WebSocket
clients. Publishing never fails a job.
"""
import logging
from typing import Optional
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from apps.indexing.events import IngestProgressEvent, get_group_name

logger = logging.getLogger(__name__)


def publish_progress(
    manual_id: str,
    job_id: str,
    stage: str,
    progress: int,
    message: Optional[str] = None
) -> None:
    """
    Publish a progress event to the manual's WebSocket group.

    Args:
        manual_id: Manual key
        job_id: UUID of the ingestion job
        stage: Current processing stage
        progress: Progress percentage (0-100)
        message: Optional human-readable message
    """
    event = IngestProgressEvent.progress(
        manual_id=manual_id,
        job_id=job_id,
        stage=stage,
        progress=progress,
        message=message
    )

    _send_to_manual(manual_id, "ingest_progress", event)


def publish_complete(manual_id: str, job_id: str, partial: bool = False) -> None:
    """Publish a completion event."""
    event = IngestProgressEvent.complete(
        manual_id=manual_id,
        job_id=job_id,
        partial=partial
    )

    _send_to_manual(manual_id, "ingest_complete", event)


def publish_failed(manual_id: str, job_id: str, error_message: str) -> None:
    """Publish a failure event."""
    event = IngestProgressEvent.failed(
        manual_id=manual_id,
        job_id=job_id,
        error_message=error_message
    )

    _send_to_manual(manual_id, "ingest_failed", event)


def _send_to_manual(manual_id: str, event_type: str, event: IngestProgressEvent) -> None:
    """Send an event to every WebSocket connection watching a manual."""
    try:
        channel_layer = get_channel_layer()

        if channel_layer is None:
            logger.warning("Channel layer not available, cannot send event")
            return

        group_name = get_group_name(manual_id)

        async_to_sync(channel_layer.group_send)(
            group_name,
            {
                "type": event_type,
                "data": event.to_dict()
            }
        )

        logger.debug(f"Published {event_type} to {group_name}: stage={event.stage}, progress={event.progress}")

    except Exception as e:
        # Don't fail the job if event publishing fails
        logger.warning(f"Failed to publish event: {e}")
