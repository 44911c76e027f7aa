"""
Chunk work queue.

The manual_chunk_queue table is the durable work queue for ingestion:
- enqueue_manual() turns a parsed manual into pending queue items
- lock_batch() atomically claims pending (or abandoned) items for one worker
- retry_failed_items() re-drives failed items within their retry budget
- sync_processing_status() recomputes the per-manual progress snapshot

Claiming uses SELECT ... FOR UPDATE SKIP LOCKED, so concurrent workers on
the same manual never receive overlapping items.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.indexing.chunker import (
    ManualChunk,
    chunk_markdown_by_page,
    chunk_pages,
)
from apps.indexing.models import ChunkQueueItem, Figure, OcrStatus, QueueItemStatus
from apps.manuals.models import (
    Document,
    IngestionJob,
    IngestionJobKind,
    IngestionJobStatus,
    ProcessingState,
    ProcessingStatus,
)
from apps.manuals.validation import ValidationError

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = (IngestionJobStatus.QUEUED, IngestionJobStatus.RUNNING)


class FatalJobError(Exception):
    """The queue lock or another infrastructure step failed; the job is failed."""
    pass


@dataclass
class EnqueueResult:
    """Outcome of an ingestion trigger."""
    manual_id: str
    job_id: str
    queued: int
    skipped_duplicates: int
    figures_registered: int

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "job_id": self.job_id,
            "queued": self.queued,
            "skipped_duplicates": self.skipped_duplicates,
            "figures_registered": self.figures_registered,
        }


@dataclass
class RetryResult:
    """Outcome of a failed-item re-drive."""
    manual_id: str
    reset: int
    exhausted: int
    released: int = 0
    job_id: Optional[str] = None
    exhausted_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "reset": self.reset,
            "released": self.released,
            "exhausted": self.exhausted,
            "job_id": self.job_id,
        }


# =============================================================================
# Jobs
# =============================================================================

def get_active_job(document: Document, kind: str = IngestionJobKind.INGEST) -> Optional[IngestionJob]:
    """Most recent queued or running job of a kind for a manual."""
    return (
        IngestionJob.objects
        .filter(document=document, kind=kind, status__in=ACTIVE_JOB_STATUSES)
        .order_by('-created_at')
        .first()
    )


def get_latest_job(document: Document, kind: str = IngestionJobKind.INGEST) -> Optional[IngestionJob]:
    return (
        IngestionJob.objects
        .filter(document=document, kind=kind)
        .order_by('-created_at')
        .first()
    )


class JobQueueScheduler:
    """
    Continues ingestion by re-queueing the manual's job.

    The IngestionJob table is the durable queue the worker polls; putting a
    job back to QUEUED means "run another batch for this manual".
    """

    def schedule(self, manual_id: str) -> Optional[IngestionJob]:
        document = Document.objects.get(manual_id=manual_id)
        job = get_active_job(document) or get_latest_job(document)

        if job is None:
            job = IngestionJob.objects.create(document=document, kind=IngestionJobKind.INGEST)
        else:
            job.status = IngestionJobStatus.QUEUED
            job.finished_at = None
            job.save(update_fields=['status', 'finished_at', 'updated_at'])

        logger.info(f"Re-queued ingestion job {job.id} for {manual_id}")
        return job


# =============================================================================
# Enqueue
# =============================================================================

def _queue_items_for(document: Document, chunks: List[ManualChunk]) -> tuple:
    existing = set(
        ChunkQueueItem.objects
        .filter(manual_id=document.manual_id)
        .values_list('content_hash', flat=True)
    )
    next_index = ChunkQueueItem.objects.filter(manual_id=document.manual_id).count()

    items = []
    skipped = 0
    for chunk in chunks:
        content_hash = chunk.content_hash
        if content_hash in existing:
            skipped += 1
            continue
        existing.add(content_hash)
        items.append(ChunkQueueItem(
            manual_id=document.manual_id,
            tenant_id=document.tenant_id,
            content=chunk.content,
            chunk_index=next_index + len(items),
            token_count=chunk.token_count,
            content_hash=content_hash,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            menu_path=chunk.menu_path,
            section_heading=chunk.section_heading,
        ))
    return items, skipped


def _figures_for(document: Document, figures: List[Dict]) -> List[Figure]:
    known = set(
        Figure.objects
        .filter(manual_id=document.manual_id)
        .exclude(figure_id='')
        .values_list('figure_id', flat=True)
    )
    new_figures = []
    for raw in figures:
        figure_id = str(raw.get('figure_id') or '')
        if figure_id and figure_id in known:
            continue
        if not raw.get('storage_path') and not raw.get('image_url'):
            raise ValidationError(f"Figure {figure_id or '?'} needs storage_path or image_url")
        known.add(figure_id)
        new_figures.append(Figure(
            manual_id=document.manual_id,
            tenant_id=document.tenant_id,
            figure_id=figure_id,
            page_number=raw.get('page_number'),
            storage_path=raw.get('storage_path') or '',
            image_url=raw.get('image_url') or '',
            caption_text=raw.get('caption_text'),
        ))
    return new_figures


def enqueue_manual(
    manual_id: str,
    tenant_id: str,
    markdown: Optional[str] = None,
    pages: Optional[List[Dict]] = None,
    figures: Optional[List[Dict]] = None,
    source_filename: str = '',
    parse_job_id: Optional[str] = None,
    section_headings: Optional[Dict[int, str]] = None,
) -> EnqueueResult:
    """
    Ingestion trigger: chunk a parsed manual and queue the chunks.

    Either markdown (with "### Page N" markers) or a pages list is required.
    Content already queued for the manual (same hash) is skipped.

    Raises:
        ValidationError: Missing ids, no content, or a manual owned by
            another tenant
    """
    if not manual_id or not tenant_id:
        raise ValidationError("manual_id and tenant_id are required")

    chunk_kwargs = {
        'chunk_size': getattr(settings, 'INGEST_CHUNK_SIZE', 500),
        'chunk_overlap': getattr(settings, 'INGEST_CHUNK_OVERLAP', 135),
        'min_chunk_size': getattr(settings, 'INGEST_MIN_CHUNK_SIZE', 200),
    }
    if pages:
        chunks = chunk_pages(pages, section_headings, **chunk_kwargs)
    elif markdown:
        chunks = chunk_markdown_by_page(markdown, section_headings, **chunk_kwargs)
    else:
        raise ValidationError("Either markdown or pages is required")

    if not chunks:
        raise ValidationError("Parsed payload produced no chunks")

    with transaction.atomic():
        document, created = Document.objects.get_or_create(
            manual_id=manual_id,
            defaults={
                'tenant_id': tenant_id,
                'source_filename': source_filename,
                'parse_job_id': parse_job_id,
            }
        )
        if document.tenant_id != tenant_id:
            raise ValidationError(f"Manual {manual_id} belongs to another tenant")
        if not created and (source_filename or parse_job_id):
            document.source_filename = source_filename or document.source_filename
            document.parse_job_id = parse_job_id or document.parse_job_id
            document.save(update_fields=['source_filename', 'parse_job_id', 'updated_at'])

        items, skipped = _queue_items_for(document, chunks)
        ChunkQueueItem.objects.bulk_create(items)

        new_figures = _figures_for(document, figures or [])
        Figure.objects.bulk_create(new_figures)

        page_numbers = [c.page_end for c in chunks if c.page_end]
        if page_numbers and not document.page_count:
            document.page_count = max(page_numbers)
            document.save(update_fields=['page_count', 'updated_at'])

        status, _ = ProcessingStatus.objects.get_or_create(
            document=document,
            defaults={'manual_id': manual_id}
        )
        status.total_chunks = ChunkQueueItem.objects.filter(manual_id=manual_id).count()
        status.chunks_processed = ChunkQueueItem.objects.filter(
            manual_id=manual_id, status=QueueItemStatus.DONE
        ).count()
        status.total_figures = Figure.objects.filter(manual_id=manual_id).count()
        status.figures_processed = 0
        status.progress_percent = 0
        status.status = ProcessingState.PROCESSING
        status.current_task = f"Queued {len(items)} chunks for embedding"
        status.error_message = None
        status.save()

        job = get_active_job(document)
        if job is None:
            job = IngestionJob.objects.create(document=document, kind=IngestionJobKind.INGEST)

    logger.info(
        f"Queued {len(items)} chunks ({skipped} duplicates skipped) and "
        f"{len(new_figures)} figures for {manual_id}"
    )

    return EnqueueResult(
        manual_id=manual_id,
        job_id=str(job.id),
        queued=len(items),
        skipped_duplicates=skipped,
        figures_registered=len(new_figures),
    )


# =============================================================================
# Claiming
# =============================================================================

def claim_cutoff():
    """Claims made before this moment are considered abandoned."""
    timeout = getattr(settings, 'CHUNK_CLAIM_TIMEOUT_SECONDS', 300)
    return timezone.now() - timedelta(seconds=timeout)


def stale_claims(cutoff=None) -> Q:
    cutoff = cutoff or claim_cutoff()
    return Q(status=QueueItemStatus.PROCESSING) & (Q(claimed_at__lt=cutoff) | Q(claimed_at__isnull=True))


def claimable(cutoff=None) -> Q:
    return Q(status=QueueItemStatus.PENDING) | stale_claims(cutoff)


def lock_batch(manual_id: str, limit: int) -> List[ChunkQueueItem]:
    """
    Atomically claim up to `limit` pending items of a manual.

    Rows already locked by another worker's claim are skipped, and the
    status flip to PROCESSING happens in the same transaction, so each item
    is handed out exactly once per claim. Items stuck in PROCESSING past
    CHUNK_CLAIM_TIMEOUT_SECONDS are claimed again.
    """
    now = timezone.now()
    with transaction.atomic():
        items = list(
            ChunkQueueItem.objects
            .select_for_update(skip_locked=True)
            .filter(claimable(), manual_id=manual_id)
            .order_by('chunk_index')[:limit]
        )
        if not items:
            return []

        reclaimed = sum(1 for item in items if item.status == QueueItemStatus.PROCESSING)
        ChunkQueueItem.objects.filter(id__in=[item.id for item in items]).update(
            status=QueueItemStatus.PROCESSING,
            claimed_at=now,
        )
        for item in items:
            item.status = QueueItemStatus.PROCESSING
            item.claimed_at = now

    if reclaimed:
        logger.warning(f"Reclaimed {reclaimed} abandoned queue items for {manual_id}")
    logger.debug(f"Locked {len(items)} queue items for {manual_id}")
    return items


def count_items(manual_id: str, status: str) -> int:
    return ChunkQueueItem.objects.filter(manual_id=manual_id, status=status).count()


def count_pending(manual_id: str) -> int:
    """Items a batch could claim now, abandoned claims included."""
    return ChunkQueueItem.objects.filter(claimable(), manual_id=manual_id).count()


def count_in_flight(manual_id: str) -> int:
    """Items held by a live claim."""
    return ChunkQueueItem.objects.filter(
        manual_id=manual_id,
        status=QueueItemStatus.PROCESSING,
        claimed_at__gte=claim_cutoff(),
    ).count()


def count_failed(manual_id: str) -> int:
    return count_items(manual_id, QueueItemStatus.FAILED)


def release_stale_claims(manual_id: str) -> int:
    """Put abandoned PROCESSING items back to pending."""
    released = ChunkQueueItem.objects.filter(stale_claims(), manual_id=manual_id).update(
        status=QueueItemStatus.PENDING,
        claimed_at=None,
    )
    if released:
        logger.warning(f"Released {released} abandoned queue items for {manual_id}")
    return released


# =============================================================================
# Re-drive
# =============================================================================

def retry_failed_items(manual_id: str, scheduler: Optional[JobQueueScheduler] = None) -> RetryResult:
    """
    Put failed items back to pending while they have retry budget left.

    The error is cleared and retry_count is kept. Items at or over
    CHUNK_MAX_RETRIES stay failed. Abandoned claims are released as well,
    without touching their retry_count.
    """
    max_retries = getattr(settings, 'CHUNK_MAX_RETRIES', 3)

    failed = ChunkQueueItem.objects.filter(manual_id=manual_id, status=QueueItemStatus.FAILED)
    exhausted_ids = [
        str(pk) for pk in failed.filter(retry_count__gte=max_retries).values_list('id', flat=True)
    ]
    reset = failed.filter(retry_count__lt=max_retries).update(
        status=QueueItemStatus.PENDING,
        error=None,
        processed_at=None,
    )
    released = release_stale_claims(manual_id)

    job_id = None
    if reset or released:
        job = (scheduler or JobQueueScheduler()).schedule(manual_id)
        job_id = str(job.id) if job else None
        ProcessingStatus.objects.filter(manual_id=manual_id).update(
            status=ProcessingState.PROCESSING,
            current_task=f"Retrying {reset + released} chunks",
            error_message=None,
        )

    logger.info(f"Reset {reset} failed items for {manual_id}; {len(exhausted_ids)} exhausted")

    return RetryResult(
        manual_id=manual_id,
        reset=reset,
        released=released,
        exhausted=len(exhausted_ids),
        job_id=job_id,
        exhausted_ids=exhausted_ids,
    )


# =============================================================================
# Status
# =============================================================================

def sync_processing_status(manual_id: str, current_task: Optional[str] = None) -> Optional[ProcessingStatus]:
    """
    Recompute the ProcessingStatus snapshot from the queue and figure tables.

    Chunk embedding covers 0-90% and figure enrichment 90-99%. 100 is only
    reached when nothing is pending and nothing failed.
    """
    try:
        status = ProcessingStatus.objects.select_related('document').get(manual_id=manual_id)
    except ProcessingStatus.DoesNotExist:
        return None

    queue = ChunkQueueItem.objects.filter(manual_id=manual_id)
    total = queue.count()
    done = queue.filter(status=QueueItemStatus.DONE).count()
    failed = queue.filter(status=QueueItemStatus.FAILED).count()
    open_items = total - done - failed

    figures = Figure.objects.filter(manual_id=manual_id)
    total_figures = figures.count()
    figures_done = figures.filter(ocr_status=OcrStatus.SUCCESS).count()
    figures_open = figures.filter(
        ocr_status__in=[OcrStatus.PENDING, OcrStatus.PROCESSING]
    ).count()

    status.total_chunks = total
    status.chunks_processed = done
    status.total_figures = total_figures
    status.figures_processed = figures_done

    if total:
        percent = round(done / total * 90)
        if open_items == 0 and total_figures:
            percent = max(percent, 90 + round(figures_done / total_figures * 10))
        status.advance(percent)

    if open_items == 0 and failed == 0 and figures_open == 0 and total:
        status.advance(100, done=True)
        status.status = ProcessingState.COMPLETED
        status.error_message = None
    elif open_items == 0 and failed:
        status.status = ProcessingState.PARTIAL
        status.error_message = f"{failed} chunks failed"
    elif total:
        status.status = ProcessingState.PROCESSING

    if current_task is not None:
        status.current_task = current_task

    status.save()
    return status


def finish_job(job: IngestionJob, status: str, error_message: Optional[str] = None) -> None:
    job.status = status
    job.error_message = error_message
    job.finished_at = timezone.now()
    job.save(update_fields=['status', 'error_message', 'finished_at', 'updated_at'])
