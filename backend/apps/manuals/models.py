"""
Manual, ingestion job and processing status models.

A Document is one ingested equipment manual. IngestionJob tracks a run of
the chunk queue (or a re-ingestion / figure pass) and ProcessingStatus is
the per-manual progress snapshot read by pollers.
"""
import uuid
from django.db import models


class IngestionJobStatus(models.TextChoices):
    """Status of an ingestion job."""
    QUEUED = 'queued', 'Queued'
    RUNNING = 'running', 'Running'
    COMPLETED = 'completed', 'Completed'
    PARTIAL = 'partial', 'Finished with failed items'
    FAILED = 'failed', 'Failed'


class IngestionJobKind(models.TextChoices):
    """What an ingestion job does."""
    INGEST = 'ingest', 'Chunk queue ingestion'
    REINGEST = 'reingest', 'Re-ingestion / backfill'
    FIGURES = 'figures', 'Figure enrichment'


class ProcessingState(models.TextChoices):
    """Coarse state shown alongside progress_percent."""
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    COMPLETED = 'completed', 'Completed'
    PARTIAL = 'partial', 'Completed with errors'
    FAILED = 'failed', 'Failed'


class Document(models.Model):
    """
    An ingested manual.

    Created by the ingestion trigger, mutated by re-ingestion (page_count).
    Parsing happens in an external service; parse_job_id points back to it.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    manual_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stable external key of the manual"
    )
    tenant_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Owning tenant"
    )
    source_filename = models.CharField(
        max_length=255,
        blank=True,
        default='',
        help_text="Original uploaded filename"
    )
    parse_job_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Job identifier in the external parsing service"
    )
    page_count = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Number of pages (recomputed by re-ingestion)"
    )

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'documents'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant_id', 'created_at'], name='documents_tenant_created_idx'),
        ]

    def __str__(self):
        return f"{self.manual_id} ({self.source_filename or 'no file'})"


class IngestionJob(models.Model):
    """
    A unit of background work for a manual.

    Ingestion jobs double as the durable work queue for the batch worker:
    a job in QUEUED state means "run another batch for this manual".
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    document = models.ForeignKey(
        Document,
        on_delete=models.CASCADE,
        related_name='ingestion_jobs',
        help_text="The manual being processed"
    )
    kind = models.CharField(
        max_length=20,
        choices=IngestionJobKind.choices,
        default=IngestionJobKind.INGEST,
    )
    status = models.CharField(
        max_length=20,
        choices=IngestionJobStatus.choices,
        default=IngestionJobStatus.QUEUED,
        db_index=True,
        help_text="Current job status"
    )

    # Counters accumulated across batch invocations
    batches_run = models.PositiveIntegerField(default=0)
    items_succeeded = models.PositiveIntegerField(default=0)
    items_failed = models.PositiveIntegerField(default=0)

    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Error message if job failed"
    )

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'ingestion_jobs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='ingestion_status_created_idx'),
            models.Index(fields=['document', 'kind'], name='ingestion_document_kind_idx'),
        ]

    @property
    def manual_id(self) -> str:
        return self.document.manual_id

    def __str__(self):
        return f"Job {self.id} ({self.kind}) for {self.document.manual_id} [{self.status}]"


class ProcessingStatus(models.Model):
    """
    Per-manual ingestion progress snapshot.

    progress_percent only moves forward and stays at or below 99 until the
    manual is fully processed.
    """
    document = models.OneToOneField(
        Document,
        on_delete=models.CASCADE,
        related_name='processing_status',
    )
    manual_id = models.CharField(max_length=255, unique=True)

    chunks_processed = models.PositiveIntegerField(default=0)
    total_chunks = models.PositiveIntegerField(default=0)
    figures_processed = models.PositiveIntegerField(default=0)
    total_figures = models.PositiveIntegerField(default=0)

    progress_percent = models.PositiveSmallIntegerField(
        default=0,
        help_text="Progress percentage (0-100)"
    )
    current_task = models.CharField(max_length=255, blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=ProcessingState.choices,
        default=ProcessingState.PENDING,
    )
    error_message = models.TextField(null=True, blank=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'processing_status'

    def advance(self, percent: int, done: bool = False) -> None:
        """Move progress forward, never backward, capped at 99 unless done."""
        ceiling = 100 if done else 99
        self.progress_percent = max(self.progress_percent, min(int(percent), ceiling))

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "status": self.status,
            "progress_percent": self.progress_percent,
            "current_task": self.current_task,
            "chunks_processed": self.chunks_processed,
            "total_chunks": self.total_chunks,
            "figures_processed": self.figures_processed,
            "total_figures": self.total_figures,
            "error_message": self.error_message,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self):
        return f"{self.manual_id}: {self.progress_percent}% ({self.status})"
