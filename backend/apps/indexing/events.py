"""
WebSocket progress event schema.

Event contract for real-time ingestion progress of a manual.

Events are sent through the Channels layer to the group manual_<manual_id>
and forwarded to every WebSocket client watching that manual.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional
import json


class EventType(str, Enum):
    """Types of WebSocket events."""
    INGEST_PROGRESS = "ingest_progress"
    INGEST_COMPLETE = "ingest_complete"
    INGEST_FAILED = "ingest_failed"


class ProgressStage(str, Enum):
    """
    Stages of manual processing.

    Order: QUEUED -> CHUNKS -> FIGURES -> REINGEST -> COMPLETE
    Or FAILED at any point. PARTIAL ends a run that left failed items.
    """
    QUEUED = "QUEUED"
    CHUNKS = "CHUNKS"
    FIGURES = "FIGURES"
    REINGEST = "REINGEST"
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class IngestProgressEvent:
    """
    Event sent to clients when a manual's processing progress changes.

    Schema:
    {
        "type": "ingest_progress",
        "manualId": "manual key",
        "jobId": "uuid-string",
        "stage": "CHUNKS|FIGURES|REINGEST|COMPLETE|PARTIAL|FAILED",
        "progress": 0-100,
        "message": "optional human-readable message"
    }
    """
    type: str
    manualId: str
    jobId: str
    stage: str
    progress: int
    message: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def progress(
        cls,
        manual_id: str,
        job_id: str,
        stage: str,
        progress: int,
        message: Optional[str] = None
    ) -> 'IngestProgressEvent':
        """Create a progress event."""
        return cls(
            type=EventType.INGEST_PROGRESS.value,
            manualId=manual_id,
            jobId=job_id,
            stage=stage,
            progress=progress,
            message=message
        )

    @classmethod
    def complete(
        cls,
        manual_id: str,
        job_id: str,
        partial: bool = False
    ) -> 'IngestProgressEvent':
        """Create a completion event (partial when failed items remain)."""
        return cls(
            type=EventType.INGEST_COMPLETE.value,
            manualId=manual_id,
            jobId=job_id,
            stage=(ProgressStage.PARTIAL if partial else ProgressStage.COMPLETE).value,
            progress=100,
            message="Processing finished with failed items" if partial else "Processing complete"
        )

    @classmethod
    def failed(
        cls,
        manual_id: str,
        job_id: str,
        error_message: str
    ) -> 'IngestProgressEvent':
        """Create a failure event."""
        return cls(
            type=EventType.INGEST_FAILED.value,
            manualId=manual_id,
            jobId=job_id,
            stage=ProgressStage.FAILED.value,
            progress=0,
            message=error_message
        )


GROUP_PREFIX = "manual"


def get_group_name(manual_id: str) -> str:
    """Channels group name for a manual. Group names allow [a-zA-Z0-9_.-] only."""
    safe = ''.join(c if c.isalnum() or c in '_.-' else '_' for c in manual_id)
    return f"{GROUP_PREFIX}_{safe}"[:99]
