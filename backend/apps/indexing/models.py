"""
Chunk store, chunk work queue and figure models.
"""
import uuid
from django.conf import settings
from django.db import models
from pgvector.django import VectorField

EMBEDDING_DIMENSIONS = getattr(settings, 'EMBEDDING_DIMENSIONS', 1536)


class QueueItemStatus(models.TextChoices):
    """Status of a chunk queue item. Transitions only move forward."""
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Locked by a batch'
    DONE = 'done', 'Done'
    FAILED = 'failed', 'Failed'


class OcrStatus(models.TextChoices):
    """Status of figure enrichment."""
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    SUCCESS = 'success', 'Success'
    FAILED = 'failed', 'Failed'


class Chunk(models.Model):
    """
    A contiguous span of manual text with its embedding.

    (manual_id, content_hash) is unique; ingestion and re-ingestion upsert
    on that key.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    manual_id = models.CharField(max_length=255, db_index=True)
    tenant_id = models.CharField(max_length=255, db_index=True)

    content = models.TextField(
        help_text="The text content of this chunk"
    )
    content_hash = models.CharField(
        max_length=64,
        help_text="SHA-256 of the content, dedup key per manual"
    )
    embedding = VectorField(
        dimensions=EMBEDDING_DIMENSIONS,
        null=True,
        blank=True,
        help_text="Vector embedding of the content"
    )

    page_start = models.PositiveIntegerField(null=True, blank=True)
    page_end = models.PositiveIntegerField(null=True, blank=True)
    menu_path = models.CharField(max_length=500, null=True, blank=True)
    section_heading = models.CharField(max_length=500, null=True, blank=True)

    quality_score = models.FloatField(default=0.8)
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Derived flags: has_tables, has_lists, has_code_numbers, section_type"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'chunks_text'
        ordering = ['manual_id', 'page_start']
        constraints = [
            models.UniqueConstraint(
                fields=['manual_id', 'content_hash'],
                name='unique_manual_content_hash'
            )
        ]
        indexes = [
            models.Index(fields=['tenant_id', 'manual_id'], name='chunks_tenant_manual_idx'),
        ]

    def __str__(self):
        preview = self.content[:50] + '...' if len(self.content) > 50 else self.content
        return f"Chunk p{self.page_start}-{self.page_end} of {self.manual_id}: {preview}"


class ChunkQueueItem(models.Model):
    """
    A pending unit of ingestion work.

    Items move pending -> processing -> done | failed. Failed items keep
    their retry_count and are only put back to pending by an explicit
    retry call. A processing item whose claim is older than
    CHUNK_CLAIM_TIMEOUT_SECONDS belongs to a dead worker and can be claimed
    again.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    chunk_id = models.UUIDField(
        default=uuid.uuid4,
        help_text="Id the chunk row gets when first stored"
    )
    manual_id = models.CharField(max_length=255, db_index=True)
    tenant_id = models.CharField(max_length=255)

    content = models.TextField()
    chunk_index = models.PositiveIntegerField()
    token_count = models.PositiveIntegerField(default=0)
    content_hash = models.CharField(max_length=64)

    page_start = models.PositiveIntegerField(null=True, blank=True)
    page_end = models.PositiveIntegerField(null=True, blank=True)
    menu_path = models.CharField(max_length=500, null=True, blank=True)
    section_heading = models.CharField(max_length=500, null=True, blank=True)

    status = models.CharField(
        max_length=20,
        choices=QueueItemStatus.choices,
        default=QueueItemStatus.PENDING,
    )
    retry_count = models.PositiveIntegerField(default=0)
    error = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    claimed_at = models.DateTimeField(
        null=True, blank=True,
        help_text="When a worker last claimed the item; stale claims are reclaimable"
    )
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'manual_chunk_queue'
        ordering = ['manual_id', 'chunk_index']
        constraints = [
            models.UniqueConstraint(
                fields=['manual_id', 'content_hash'],
                name='unique_queue_manual_content_hash'
            )
        ]
        indexes = [
            models.Index(fields=['manual_id', 'status', 'chunk_index'], name='queue_manual_status_idx'),
        ]

    def __str__(self):
        return f"Queue item {self.chunk_index} of {self.manual_id} [{self.status}]"


class Figure(models.Model):
    """
    An image extracted from a manual page.

    ocr_status moves pending -> processing -> success | failed; failed is
    terminal until an external re-drive.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    manual_id = models.CharField(max_length=255, db_index=True)
    tenant_id = models.CharField(max_length=255)
    figure_id = models.CharField(
        max_length=255,
        blank=True,
        default='',
        help_text="Figure label from the parser (e.g. 'fig-12')"
    )
    page_number = models.PositiveIntegerField(null=True, blank=True)

    storage_path = models.CharField(
        max_length=500,
        blank=True,
        default='',
        help_text="Path relative to FIGURE_ROOT"
    )
    image_url = models.URLField(max_length=1000, blank=True, default='')

    caption_text = models.TextField(null=True, blank=True)
    ocr_text = models.TextField(null=True, blank=True)
    ocr_status = models.CharField(
        max_length=20,
        choices=OcrStatus.choices,
        default=OcrStatus.PENDING,
        db_index=True,
    )
    ocr_confidence = models.CharField(max_length=20, null=True, blank=True)
    ocr_error = models.TextField(null=True, blank=True)

    figure_type = models.CharField(max_length=100, null=True, blank=True)
    vision_metadata = models.JSONField(default=dict, blank=True)
    quality_score = models.FloatField(null=True, blank=True)

    embedding_text = models.TextField(null=True, blank=True)
    embedding = VectorField(
        dimensions=EMBEDDING_DIMENSIONS,
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'figures'
        ordering = ['manual_id', 'page_number']
        indexes = [
            models.Index(fields=['manual_id', 'ocr_status'], name='figures_manual_status_idx'),
        ]

    def __str__(self):
        return f"Figure {self.figure_id or self.id} p{self.page_number} of {self.manual_id}"
