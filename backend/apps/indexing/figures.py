"""
Figure enrichment worker.

For each pending figure of a manual:
1. Mark it processing
2. Load the image (FIGURE_ROOT or image_url) and re-encode it as PNG
3. Run structured extraction through the vision oracle (bounded retry)
4. Store OCR text, figure type, vision metadata and a quality score
5. Embed caption + OCR + component text when there is enough of it
6. Mark it success, or failed with the error recorded

One bad figure never stops the run. Progress is checkpointed every few
figures and the oracle is throttled with a pause every N figures.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from django.conf import settings

from apps.indexing.embedder import EmbeddingClient, EmbeddingError, get_embedding_client, truncate_for_embedding
from apps.indexing.events import ProgressStage
from apps.indexing.models import Figure, OcrStatus
from apps.indexing.publisher import publish_progress
from apps.indexing.queue import sync_processing_status
from apps.indexing.retry import (
    EMBEDDING_RETRY_CONFIG,
    VISION_RETRY_CONFIG,
    TransientOracleError,
    retry_with_backoff,
)
from apps.indexing.storage import FigureStorage, get_storage, normalize_image
from apps.indexing.vision import VisionClient, VisionError, VisionExtraction, get_vision_client
from apps.manuals.models import Document, ProcessingStatus
from apps.manuals.validation import ValidationError
from apps.ops.audit import audit_figures_processed

logger = logging.getLogger(__name__)

MIN_EMBEDDING_TEXT = 10  # characters


@dataclass
class FigureRunResult:
    """Outcome of one figure enrichment run."""
    manual_id: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    embedded: int = 0
    failures: List[Dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "manual_id": self.manual_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "embedded": self.embedded,
            "failures": self.failures,
        }


def figure_progress(succeeded: int, total: int) -> int:
    """Figure phase progress: 90-99%, never 100."""
    if total <= 0:
        return 90
    return min(99, 90 + round(succeeded / total * 10))


def _should_embed(extraction: VisionExtraction, text: str) -> bool:
    return extraction.confidence != 'none' and len(text) >= MIN_EMBEDDING_TEXT


def enrich_figure(
    figure: Figure,
    vision: VisionClient,
    embedder: EmbeddingClient,
    storage: FigureStorage,
) -> bool:
    """
    Run the full enrichment for one figure and save it as success.

    Returns:
        True if an embedding was stored

    Raises:
        Any storage, decode, oracle or format error; the caller records it
    """
    png = normalize_image(storage.load(figure.storage_path, figure.image_url))

    extraction = retry_with_backoff(
        func=lambda: vision.analyze(png, figure.caption_text),
        config=VISION_RETRY_CONFIG,
        exceptions=(VisionError, TransientOracleError),
        on_retry=lambda attempt, err, backoff: logger.warning(
            f"Vision retry {attempt + 1} for figure {figure.id}: {err}"
        )
    )

    figure.ocr_text = extraction.ocr_text
    figure.ocr_confidence = extraction.confidence
    figure.figure_type = extraction.figure_type
    figure.vision_metadata = extraction.metadata()
    figure.quality_score = extraction.quality_score
    if not figure.caption_text and extraction.caption:
        figure.caption_text = extraction.caption

    embedded = False
    text = extraction.embedding_text(figure.caption_text)
    if _should_embed(extraction, text):
        text = truncate_for_embedding(text)
        figure.embedding = retry_with_backoff(
            func=lambda: embedder.embed(text),
            config=EMBEDDING_RETRY_CONFIG,
            exceptions=(EmbeddingError,),
        )
        figure.embedding_text = text
        embedded = True

    figure.ocr_status = OcrStatus.SUCCESS
    figure.ocr_error = None
    figure.save()
    return embedded


def _checkpoint(manual_id: str, done: int, succeeded: int, total: int) -> None:
    status = ProcessingStatus.objects.filter(manual_id=manual_id).first()
    if status is None:
        return
    status.figures_processed = Figure.objects.filter(
        manual_id=manual_id, ocr_status=OcrStatus.SUCCESS
    ).count()
    status.current_task = f"Processing figures ({done}/{total})"
    status.advance(figure_progress(succeeded, total))
    status.save(update_fields=['figures_processed', 'current_task', 'progress_percent', 'updated_at'])


def process_pending_figures(
    manual_id: str,
    tenant_id: str,
    limit: Optional[int] = None,
    job_id: str = '',
    vision: Optional[VisionClient] = None,
    embedder: Optional[EmbeddingClient] = None,
    storage: Optional[FigureStorage] = None,
) -> FigureRunResult:
    """
    Enrich every pending figure of a manual.

    Raises:
        ValidationError: Unknown manual or tenant mismatch
    """
    try:
        document = Document.objects.get(manual_id=manual_id)
    except Document.DoesNotExist:
        raise ValidationError(f"Unknown manual: {manual_id}")
    if document.tenant_id != tenant_id:
        raise ValidationError(f"Manual {manual_id} belongs to another tenant")

    vision = vision or get_vision_client()
    embedder = embedder or get_embedding_client()
    storage = storage or get_storage()
    checkpoint_every = max(1, getattr(settings, 'FIGURE_CHECKPOINT_EVERY', 5))
    pause_every = getattr(settings, 'FIGURE_PAUSE_EVERY', 10)
    pause_seconds = getattr(settings, 'FIGURE_PAUSE_SECONDS', 1.0)

    pending = Figure.objects.filter(
        manual_id=manual_id, tenant_id=tenant_id, ocr_status=OcrStatus.PENDING
    ).order_by('page_number', 'created_at')
    figures = list(pending[:limit] if limit else pending)

    result = FigureRunResult(manual_id=manual_id, total=len(figures))
    logger.info(f"Enriching {result.total} pending figures for {manual_id}")

    for position, figure in enumerate(figures, 1):
        figure.ocr_status = OcrStatus.PROCESSING
        figure.save(update_fields=['ocr_status', 'updated_at'])

        try:
            if enrich_figure(figure, vision, embedder, storage):
                result.embedded += 1
            result.succeeded += 1
        except Exception as e:
            logger.warning(f"Figure {figure.id} of {manual_id} failed: {e}")
            figure.ocr_status = OcrStatus.FAILED
            figure.ocr_error = str(e)[:1000] or e.__class__.__name__
            figure.save(update_fields=['ocr_status', 'ocr_error', 'updated_at'])
            result.failed += 1
            result.failures.append({'figure_id': str(figure.id), 'error': figure.ocr_error})

        if position % checkpoint_every == 0 or position == result.total:
            _checkpoint(manual_id, position, result.succeeded, result.total)
            publish_progress(
                manual_id, job_id, ProgressStage.FIGURES.value,
                figure_progress(result.succeeded, result.total),
                f"Processed {position}/{result.total} figures"
            )

        if pause_every and pause_seconds and position % pause_every == 0 and position < result.total:
            time.sleep(pause_seconds)

    sync_processing_status(manual_id)
    audit_figures_processed(manual_id, tenant_id, result.succeeded, result.failed)
    logger.info(
        f"Figures for {manual_id}: {result.succeeded} succeeded, "
        f"{result.failed} failed, {result.embedded} embedded"
    )
    return result
