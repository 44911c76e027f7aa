"""
Ingestion worker - embeds queued manual chunks in short batches.

One batch step (process_batch):
1. Claims pending queue items atomically (SELECT FOR UPDATE SKIP LOCKED)
2. Embeds them with bounded concurrency, one slice at a time
3. Derives chunk metadata flags and upserts chunks by content hash
4. Records per-item failures on the queue row and keeps going
5. Re-queues the job while work remains, else finalizes it

The long-running IngestionWorker polls the ingestion_jobs table and runs
one batch per claimed job; the re-queue step keeps a manual moving.

Run as: python manage.py run_worker
"""
import re
import time
import signal
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from django.conf import settings
from django.db import DatabaseError, connection, transaction
from django.utils import timezone

from apps.indexing.embedder import (
    EmbeddingClient,
    get_embedding_client,
    test_embedding_connection,
    truncate_for_embedding,
)
from apps.indexing.events import ProgressStage
from apps.indexing.figures import process_pending_figures
from apps.indexing.models import Chunk, ChunkQueueItem, QueueItemStatus
from apps.indexing.publisher import publish_complete, publish_failed, publish_progress
from apps.indexing.queue import (
    FatalJobError,
    JobQueueScheduler,
    count_failed,
    count_in_flight,
    count_pending,
    finish_job,
    get_active_job,
    get_latest_job,
    lock_batch,
    sync_processing_status,
)
from apps.manuals.models import (
    Document,
    IngestionJob,
    IngestionJobKind,
    IngestionJobStatus,
    ProcessingState,
    ProcessingStatus,
)
from apps.manuals.validation import ValidationError
from apps.ops.audit import audit_ingestion_completed, audit_ingestion_failed

logger = logging.getLogger(__name__)

# Worker loop configuration
POLL_INTERVAL = 2  # seconds between job checks
MAX_CONSECUTIVE_ERRORS = 5  # Stop if too many errors in a row
HEARTBEAT_FILE = '/tmp/worker_heartbeat'

TABLE_PATTERN = re.compile(r'[\|<].*[\|>]|^\s*\|', re.MULTILINE)
BULLET_PATTERN = re.compile(r'^\s*[-*•]\s+', re.MULTILINE)
NUMBERED_PATTERN = re.compile(r'^\s*\d+\.\s+', re.MULTILINE)
CODE_NUMBER_PATTERN = re.compile(r'\b\d{3,}\b|\b[A-Z]{2,}\d+\b')

# First matching keyword in the menu path wins
SECTION_TYPES = [
    ('troubleshoot', 'troubleshooting'),
    ('parts', 'parts_list'),
    ('specification', 'specifications'),
    ('installation', 'installation'),
    ('maintenance', 'maintenance'),
    ('warranty', 'warranty'),
]


def touch_heartbeat():
    """Touch heartbeat file for health checks."""
    try:
        Path(HEARTBEAT_FILE).touch()
    except OSError as e:
        logger.warning(f"Failed to update heartbeat: {e}")


def classify_section(menu_path: Optional[str]) -> str:
    """Map a menu path onto a section type."""
    path = (menu_path or '').lower()
    for keyword, section_type in SECTION_TYPES:
        if keyword in path:
            return section_type
    return 'general'


def derive_metadata(content: str, menu_path: Optional[str] = None) -> Dict:
    """Content flags stored on every chunk."""
    return {
        'has_tables': bool(TABLE_PATTERN.search(content)),
        'has_lists': bool(BULLET_PATTERN.search(content) or NUMBERED_PATTERN.search(content)),
        'has_code_numbers': bool(CODE_NUMBER_PATTERN.search(content)),
        'section_type': classify_section(menu_path),
    }


@dataclass
class BatchResult:
    """
    Outcome of one batch step.

    Item failures are reported here and on the queue rows; they never fail
    the batch as a whole.
    """
    manual_id: str
    locked: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    scheduled: bool = False
    job_id: Optional[str] = None
    job_status: Optional[str] = None
    failures: List[Dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "locked": self.locked,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "remaining": self.remaining,
            "scheduled": self.scheduled,
            "job_id": self.job_id,
            "job_status": self.job_status,
            "failures": self.failures,
        }


def _embed_item(client: EmbeddingClient, item: ChunkQueueItem):
    """Embed one queue item; returns (item, embedding, error)."""
    try:
        return item, client.embed(truncate_for_embedding(item.content)), None
    except Exception as e:
        return item, None, e


def _store_chunk(item: ChunkQueueItem, embedding: List[float]) -> Chunk:
    """Upsert the chunk for a queue item and mark the item done."""
    chunk, created = Chunk.objects.update_or_create(
        manual_id=item.manual_id,
        content_hash=item.content_hash,
        defaults={
            'tenant_id': item.tenant_id,
            'content': item.content,
            'embedding': embedding,
            'page_start': item.page_start,
            'page_end': item.page_end,
            'menu_path': item.menu_path,
            'section_heading': item.section_heading,
            'metadata': derive_metadata(item.content, item.menu_path),
        },
        create_defaults={
            'id': item.chunk_id,
            'tenant_id': item.tenant_id,
            'content': item.content,
            'embedding': embedding,
            'page_start': item.page_start,
            'page_end': item.page_end,
            'menu_path': item.menu_path,
            'section_heading': item.section_heading,
            'metadata': derive_metadata(item.content, item.menu_path),
        },
    )

    item.status = QueueItemStatus.DONE
    item.error = None
    item.processed_at = timezone.now()
    item.save(update_fields=['status', 'error', 'processed_at'])

    if not created:
        logger.debug(f"Updated existing chunk {chunk.id} for {item.manual_id}")
    return chunk


def _fail_item(item: ChunkQueueItem, error: Exception) -> None:
    item.retry_count += 1
    item.error = str(error)[:1000] or error.__class__.__name__
    item.status = QueueItemStatus.FAILED
    item.processed_at = timezone.now()
    item.save(update_fields=['retry_count', 'error', 'status', 'processed_at'])
    logger.warning(f"Queue item {item.chunk_index} of {item.manual_id} failed: {item.error}")


def _resolve_job(document: Document) -> IngestionJob:
    job = get_active_job(document) or get_latest_job(document)
    if job is None:
        job = IngestionJob.objects.create(document=document, kind=IngestionJobKind.INGEST)
    if job.status != IngestionJobStatus.RUNNING:
        job.status = IngestionJobStatus.RUNNING
        job.save(update_fields=['status', 'updated_at'])
    return job


def process_batch(
    manual_id: str,
    tenant_id: Optional[str] = None,
    scheduler: Optional[JobQueueScheduler] = None,
    batch_size: Optional[int] = None,
    client: Optional[EmbeddingClient] = None,
) -> BatchResult:
    """
    Run one batch step for a manual.

    Args:
        manual_id: Manual to process
        tenant_id: Optional owner check
        scheduler: Re-queues the manual while pending items remain
        batch_size: Items to claim (default CHUNK_BATCH_SIZE)
        client: Embedding client (default: shared client)

    Returns:
        BatchResult with per-item outcomes

    Raises:
        ValidationError: Unknown manual or tenant mismatch
        FatalJobError: The queue lock failed; the job is marked failed
    """
    try:
        document = Document.objects.get(manual_id=manual_id)
    except Document.DoesNotExist:
        raise ValidationError(f"Unknown manual: {manual_id}")
    if tenant_id and document.tenant_id != tenant_id:
        raise ValidationError(f"Manual {manual_id} belongs to another tenant")

    scheduler = scheduler or JobQueueScheduler()
    client = client or get_embedding_client()
    batch_size = batch_size or getattr(settings, 'CHUNK_BATCH_SIZE', 30)
    concurrency = max(1, getattr(settings, 'CHUNK_MAX_CONCURRENCY', 5))

    job = _resolve_job(document)
    result = BatchResult(manual_id=manual_id, job_id=str(job.id))

    try:
        items = lock_batch(manual_id, batch_size)
    except DatabaseError as e:
        error = f"Failed to lock queue batch: {e}"
        logger.error(f"Job {job.id} failed: {error}")
        finish_job(job, IngestionJobStatus.FAILED, error)
        ProcessingStatus.objects.filter(manual_id=manual_id).update(
            status=ProcessingState.FAILED, error_message=error
        )
        publish_failed(manual_id, str(job.id), error)
        audit_ingestion_failed(str(job.id), manual_id, document.tenant_id, error)
        raise FatalJobError(error) from e

    result.locked = len(items)
    logger.info(f"Processing batch of {len(items)} items for {manual_id}")

    # Only the oracle calls run on threads; database writes stay on this one
    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        for start in range(0, len(items), concurrency):
            batch_slice = items[start:start + concurrency]
            outcomes = list(pool.map(lambda item: _embed_item(client, item), batch_slice))

            for item, embedding, error in outcomes:
                if error is None:
                    try:
                        _store_chunk(item, embedding)
                    except DatabaseError as e:
                        error = e
                if error is None:
                    result.succeeded += 1
                else:
                    _fail_item(item, error)
                    result.failed += 1
                    result.failures.append({
                        'chunk_index': item.chunk_index,
                        'error': item.error,
                    })

    IngestionJob.objects.filter(id=job.id).update(
        batches_run=job.batches_run + 1,
        items_succeeded=job.items_succeeded + result.succeeded,
        items_failed=job.items_failed + result.failed,
    )
    job.refresh_from_db()

    result.remaining = count_pending(manual_id)
    status = sync_processing_status(manual_id)
    progress = status.progress_percent if status else 0

    if result.remaining > 0:
        scheduler.schedule(manual_id)
        result.scheduled = True
        publish_progress(
            manual_id, str(job.id), ProgressStage.CHUNKS.value, progress,
            f"{result.remaining} chunks remaining"
        )
    elif count_in_flight(manual_id):
        # Another worker holds a live claim; it finalizes the job, or its
        # items are reclaimed once the claim times out
        logger.debug(f"Items still in flight for {manual_id}, not finalizing")
    else:
        total_failed = count_failed(manual_id)
        if total_failed == 0:
            finish_job(job, IngestionJobStatus.COMPLETED)
            if status is not None and status.status != ProcessingState.COMPLETED:
                # Figures may still be pending; chunk work itself is done
                status.current_task = "Chunks embedded"
                status.advance(90)
                status.save(update_fields=['current_task', 'progress_percent', 'updated_at'])
            publish_complete(manual_id, str(job.id))
        else:
            finish_job(job, IngestionJobStatus.PARTIAL, f"{total_failed} chunks failed")
            publish_complete(manual_id, str(job.id), partial=True)
        audit_ingestion_completed(
            str(job.id), manual_id, document.tenant_id,
            job.items_succeeded, total_failed
        )
        logger.info(f"Ingestion job {job.id} for {manual_id} finished: {job.status}")

    job.refresh_from_db(fields=['status'])
    result.job_status = job.status
    return result


def drive_manual(
    manual_id: str,
    tenant_id: Optional[str] = None,
    max_steps: int = 1000,
    **kwargs
) -> List[BatchResult]:
    """
    Run batch steps until no pending work remains (or max_steps is hit).

    Each step is still a short, independent invocation of process_batch.
    """
    results = []
    for _ in range(max_steps):
        result = process_batch(manual_id, tenant_id=tenant_id, **kwargs)
        results.append(result)
        if not result.scheduled:
            break
    return results


class IngestionWorker:
    """
    Worker that drains queued ingestion jobs.

    Uses SELECT FOR UPDATE SKIP LOCKED for safe concurrent job claiming.
    Each claim runs a single step; re-queued jobs are picked up again on a
    later poll, possibly by another worker.
    """

    def __init__(self, manual_id: Optional[str] = None):
        self.running = False
        self.consecutive_errors = 0
        self.manual_id = manual_id

    def claim_job(self) -> Optional[IngestionJob]:
        """
        Atomically claim the next queued job.

        Returns:
            The claimed IngestionJob, or None if no jobs available
        """
        with transaction.atomic():
            jobs = (
                IngestionJob.objects
                .select_for_update(skip_locked=True)
                .filter(status=IngestionJobStatus.QUEUED)
                .order_by('updated_at')
            )
            if self.manual_id:
                jobs = jobs.filter(document__manual_id=self.manual_id)

            job = jobs.first()
            if job is None:
                return None

            job.status = IngestionJobStatus.RUNNING
            job.save(update_fields=['status', 'updated_at'])

        logger.info(f"Claimed {job.kind} job {job.id} for {job.manual_id}")
        return job

    def process_job(self, job: IngestionJob):
        """Run one step of a claimed job."""
        manual_id = job.manual_id
        tenant_id = job.document.tenant_id

        try:
            if job.kind == IngestionJobKind.FIGURES:
                run = process_pending_figures(manual_id, tenant_id, job_id=str(job.id))
                finish_job(
                    job,
                    IngestionJobStatus.PARTIAL if run.failed else IngestionJobStatus.COMPLETED,
                    f"{run.failed} figures failed" if run.failed else None,
                )
            elif job.kind == IngestionJobKind.REINGEST:
                # reingest imports this module
                from apps.indexing.reingest import ReingestError, reingest_manual
                try:
                    reingest_manual(manual_id, tenant_id, job_id=str(job.id))
                    finish_job(job, IngestionJobStatus.COMPLETED)
                except ReingestError as e:
                    finish_job(job, IngestionJobStatus.FAILED, str(e))
            else:
                process_batch(manual_id, tenant_id=tenant_id)

        except FatalJobError as e:
            # process_batch already marked the job failed
            logger.error(f"Job {job.id} failed fatally: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error processing job {job.id}")
            finish_job(job, IngestionJobStatus.FAILED, f"Unexpected error: {e}")
            publish_failed(manual_id, str(job.id), str(e))
            audit_ingestion_failed(str(job.id), manual_id, tenant_id, str(e))

    def run_once(self) -> bool:
        """
        Try to claim and process one job.

        Returns:
            True if a job was processed, False if no jobs available
        """
        job = self.claim_job()

        if not job:
            return False

        self.process_job(job)
        self.consecutive_errors = 0
        return True

    def run(self):
        """
        Main worker loop.

        Continuously polls for jobs and processes them.
        """
        logger.info("Starting ingestion worker...")

        if not test_embedding_connection():
            logger.error("Cannot reach the embedding service. Items will fail and can be retried.")

        self.running = True

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.running = False

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        while self.running:
            touch_heartbeat()
            try:
                if self.run_once():
                    continue
                time.sleep(POLL_INTERVAL)

            except DatabaseError as e:
                logger.exception(f"Error in worker loop: {e}")
                self.consecutive_errors += 1
                connection.close()

                if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.error("Too many consecutive errors, stopping worker")
                    break

                time.sleep(POLL_INTERVAL * 2)

        logger.info("Worker stopped")
