"""
Re-ingestion / backfill.

Rebuilds the chunk set of a manual from its existing chunks with the
fixed-window chunker, re-embeds everything and swaps the new rows in
atomically. Figures with a known page are re-embedded with text from
nearby chunks.

Steps:
1. Determine the page count (max page_end, or a default) and save it
2. Re-chunk every chunk with a valid page span (400 chars, 125 overlap)
3. Embed each new chunk (throttled, bounded retry)
4. Delete the old chunks and insert the new ones in one transaction;
   unfinished queue items stay queued
5. Re-embed figures: caption + OCR + up to 5 nearby chunk headings
"""
import time
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Max, Q
from django.utils import timezone

from apps.indexing.chunker import (
    REINGEST_CHUNK_OVERLAP,
    REINGEST_CHUNK_SIZE,
    compute_content_hash,
    rechunk_fixed,
)
from apps.indexing.embedder import EmbeddingClient, EmbeddingError, get_embedding_client, truncate_for_embedding
from apps.indexing.events import ProgressStage
from apps.indexing.models import Chunk, ChunkQueueItem, Figure, QueueItemStatus
from apps.indexing.publisher import publish_progress
from apps.indexing.queue import sync_processing_status
from apps.indexing.retry import EMBEDDING_RETRY_CONFIG, RetryExhausted, retry_with_backoff
from apps.indexing.worker import derive_metadata
from apps.manuals.models import Document
from apps.manuals.validation import ValidationError
from apps.ops.audit import audit_reingest_completed

logger = logging.getLogger(__name__)

FIGURE_CONTEXT_PAGES = 2  # pages either side of the figure
FIGURE_CONTEXT_CHUNKS = 5
MIN_FIGURE_TEXT = 10  # characters


class ReingestError(Exception):
    """Re-ingestion could not produce a replacement chunk set."""
    pass


@dataclass
class ReingestResult:
    """Outcome of one re-ingestion run."""
    manual_id: str
    page_count: int
    old_chunks: int = 0
    chunks_created: int = 0
    chunks_dropped: int = 0
    duplicates: int = 0
    embed_failures: int = 0
    figures_embedded: int = 0
    figures_skipped: int = 0
    figures_failed: int = 0
    queue_items_kept: int = 0

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "page_count": self.page_count,
            "old_chunks": self.old_chunks,
            "chunks_created": self.chunks_created,
            "chunks_dropped": self.chunks_dropped,
            "duplicates": self.duplicates,
            "embed_failures": self.embed_failures,
            "figures_embedded": self.figures_embedded,
            "figures_skipped": self.figures_skipped,
            "figures_failed": self.figures_failed,
            "queue_items_kept": self.queue_items_kept,
        }


def _valid_span(chunk: Chunk, page_count: int) -> bool:
    if not chunk.page_start or not chunk.page_end:
        return False
    return 1 <= chunk.page_start <= chunk.page_end <= page_count


def _embed(embedder: EmbeddingClient, text: str) -> List[float]:
    return retry_with_backoff(
        func=lambda: embedder.embed(text),
        config=EMBEDDING_RETRY_CONFIG,
        exceptions=(EmbeddingError,),
    )


def _rebuild_chunks(
    old_chunks: List[Chunk],
    page_count: int,
    embedder: EmbeddingClient,
    result: ReingestResult,
    manual_id: str,
    job_id: str,
) -> List[Chunk]:
    """Re-chunk and embed; returns unsaved Chunk rows."""
    chunk_size = getattr(settings, 'REINGEST_CHUNK_SIZE', REINGEST_CHUNK_SIZE)
    chunk_overlap = getattr(settings, 'REINGEST_CHUNK_OVERLAP', REINGEST_CHUNK_OVERLAP)
    pause = getattr(settings, 'REINGEST_EMBED_PAUSE_SECONDS', 0.1)

    pieces = []
    seen = set()
    for chunk in old_chunks:
        if not _valid_span(chunk, page_count):
            result.chunks_dropped += 1
            continue
        for text in rechunk_fixed(chunk.content, chunk_size, chunk_overlap):
            content_hash = compute_content_hash(text)
            if content_hash in seen:
                result.duplicates += 1
                continue
            seen.add(content_hash)
            pieces.append((chunk, text, content_hash))

    rows = []
    for position, (source, text, content_hash) in enumerate(pieces, 1):
        try:
            embedding = _embed(embedder, truncate_for_embedding(text))
        except (RetryExhausted, EmbeddingError) as e:
            logger.warning(f"Re-embedding failed for a chunk of {manual_id}: {e}")
            result.embed_failures += 1
            continue

        rows.append(Chunk(
            id=uuid.uuid4(),
            manual_id=source.manual_id,
            tenant_id=source.tenant_id,
            content=text,
            content_hash=content_hash,
            embedding=embedding,
            page_start=source.page_start,
            page_end=source.page_end,
            menu_path=source.menu_path,
            section_heading=source.section_heading,
            quality_score=source.quality_score,
            metadata=derive_metadata(text, source.menu_path),
        ))

        if position % 25 == 0:
            publish_progress(
                manual_id, job_id, ProgressStage.REINGEST.value,
                min(80, round(position / len(pieces) * 80)),
                f"Re-embedded {position}/{len(pieces)} chunks"
            )
        if pause:
            time.sleep(pause)

    return rows


def _swap_chunks(manual_id: str, tenant_id: str, old_hashes: List[str], rows: List[Chunk]) -> int:
    """
    Replace chunks and the matching queue rows in one transaction.

    Queue rows that never became a chunk (pending or failed) are kept with
    their retry_count and error so they can still be re-driven. Returns the
    number of kept rows.
    """
    batch_size = max(1, getattr(settings, 'REINGEST_INSERT_BATCH', 100))
    now = timezone.now()
    replaced = set(old_hashes) | {row.content_hash for row in rows}

    with transaction.atomic():
        Chunk.objects.filter(manual_id=manual_id).delete()
        for start in range(0, len(rows), batch_size):
            Chunk.objects.bulk_create(rows[start:start + batch_size])

        # Keep the queue in step: every done item points at a stored chunk
        queue = ChunkQueueItem.objects.filter(manual_id=manual_id)
        queue.filter(Q(status=QueueItemStatus.DONE) | Q(content_hash__in=replaced)).delete()
        kept = queue.count()
        offset = (queue.aggregate(m=Max('chunk_index'))['m'] + 1) if kept else 0

        ChunkQueueItem.objects.bulk_create([
            ChunkQueueItem(
                chunk_id=row.id,
                manual_id=manual_id,
                tenant_id=tenant_id,
                content=row.content,
                chunk_index=offset + index,
                token_count=max(1, len(row.content) // 4),
                content_hash=row.content_hash,
                page_start=row.page_start,
                page_end=row.page_end,
                menu_path=row.menu_path,
                section_heading=row.section_heading,
                status=QueueItemStatus.DONE,
                processed_at=now,
            )
            for index, row in enumerate(rows)
        ], batch_size=batch_size)

    if kept:
        logger.info(f"Kept {kept} unfinished queue items of {manual_id} for a later retry")
    return kept


def figure_context(manual_id: str, page_number: int, page_count: int) -> str:
    """Headings (or content openings) of chunks near a figure's page."""
    nearby = Chunk.objects.filter(
        manual_id=manual_id,
        page_start__gte=max(1, page_number - FIGURE_CONTEXT_PAGES),
        page_end__lte=min(page_count, page_number + FIGURE_CONTEXT_PAGES),
    ).order_by('page_start', 'created_at')[:FIGURE_CONTEXT_CHUNKS]
    return ' '.join(
        (chunk.section_heading or chunk.content[:100]).strip() for chunk in nearby
    )


def _reembed_figures(
    manual_id: str,
    tenant_id: str,
    page_count: int,
    embedder: EmbeddingClient,
    result: ReingestResult,
) -> None:
    pause = getattr(settings, 'REINGEST_EMBED_PAUSE_SECONDS', 0.1)
    figures = Figure.objects.filter(
        manual_id=manual_id, tenant_id=tenant_id, page_number__isnull=False
    ).order_by('page_number', 'created_at')

    for figure in figures:
        if not 1 <= figure.page_number <= page_count:
            result.figures_skipped += 1
            continue

        parts = [
            figure.caption_text or '',
            figure.ocr_text or '',
            figure_context(manual_id, figure.page_number, page_count),
        ]
        text = ' '.join(p.strip() for p in parts if p and p.strip())
        if len(text) < MIN_FIGURE_TEXT:
            result.figures_skipped += 1
            continue

        text = truncate_for_embedding(text)
        try:
            figure.embedding = _embed(embedder, text)
        except (RetryExhausted, EmbeddingError) as e:
            logger.warning(f"Figure {figure.id} of {manual_id} could not be re-embedded: {e}")
            result.figures_failed += 1
            continue

        figure.embedding_text = text
        figure.save(update_fields=['embedding', 'embedding_text', 'updated_at'])
        result.figures_embedded += 1
        if pause:
            time.sleep(pause)


def reingest_manual(
    manual_id: str,
    tenant_id: str,
    embedder: Optional[EmbeddingClient] = None,
    include_figures: bool = True,
    job_id: str = '',
) -> ReingestResult:
    """
    Rebuild the chunk set and figure embeddings of a manual.

    The old chunks stay in place until the replacement set is complete;
    running it again on its own output yields the same chunk count.

    Raises:
        ValidationError: Unknown manual or tenant mismatch
        ReingestError: No chunks to rebuild from, or none survived
    """
    try:
        document = Document.objects.get(manual_id=manual_id)
    except Document.DoesNotExist:
        raise ValidationError(f"Unknown manual: {manual_id}")
    if document.tenant_id != tenant_id:
        raise ValidationError(f"Manual {manual_id} belongs to another tenant")

    embedder = embedder or get_embedding_client()

    old_chunks = list(
        Chunk.objects.filter(manual_id=manual_id, tenant_id=tenant_id)
        .order_by('page_start', 'created_at')
    )
    if not old_chunks:
        raise ReingestError(f"No chunks stored for manual {manual_id}")

    max_page = Chunk.objects.filter(manual_id=manual_id).aggregate(m=Max('page_end'))['m']
    page_count = max_page or getattr(settings, 'REINGEST_DEFAULT_PAGE_COUNT', 48)
    if document.page_count != page_count:
        document.page_count = page_count
        document.save(update_fields=['page_count', 'updated_at'])

    result = ReingestResult(manual_id=manual_id, page_count=page_count, old_chunks=len(old_chunks))
    logger.info(f"Re-ingesting {manual_id}: {len(old_chunks)} chunks over {page_count} pages")
    publish_progress(manual_id, job_id, ProgressStage.REINGEST.value, 0, "Re-chunking manual")

    rows = _rebuild_chunks(old_chunks, page_count, embedder, result, manual_id, job_id)
    if not rows:
        audit_reingest_completed(manual_id, tenant_id, 0, 0, outcome='failure')
        raise ReingestError(
            f"Re-chunking {manual_id} produced no valid chunks; existing chunks kept"
        )

    result.queue_items_kept = _swap_chunks(
        manual_id, tenant_id, [c.content_hash for c in old_chunks], rows
    )
    result.chunks_created = len(rows)
    publish_progress(
        manual_id, job_id, ProgressStage.REINGEST.value, 85,
        f"Replaced {result.old_chunks} chunks with {result.chunks_created}"
    )

    if include_figures:
        _reembed_figures(manual_id, tenant_id, page_count, embedder, result)

    sync_processing_status(manual_id, current_task="Re-ingestion complete")
    audit_reingest_completed(
        manual_id, tenant_id, result.chunks_created, result.figures_embedded, outcome='success'
    )
    logger.info(
        f"Re-ingested {manual_id}: {result.chunks_created} chunks, "
        f"{result.chunks_dropped} dropped, {result.figures_embedded} figures embedded"
    )
    return result
