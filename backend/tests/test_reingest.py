"""
Tests for re-ingestion / backfill.
"""
import pytest
from unittest.mock import MagicMock

from apps.indexing.chunker import compute_content_hash, rechunk_fixed
from apps.indexing.embedder import EmbeddingError
from apps.indexing.models import Chunk, ChunkQueueItem, Figure, QueueItemStatus
from apps.indexing.queue import retry_failed_items
from apps.indexing.reingest import ReingestError, figure_context, reingest_manual
from apps.manuals.models import ProcessingStatus
from apps.manuals.validation import ValidationError


def section(number, sentences=30):
    return ' '.join(
        f"Section {number} step {i}: check connector J{i} and fuse F{i}." for i in range(sentences)
    )


def add_chunk(content, page_start, page_end, heading=None, vector=None):
    return Chunk.objects.create(
        manual_id='m-1',
        tenant_id='acme',
        content=content,
        content_hash=compute_content_hash(content),
        embedding=vector,
        page_start=page_start,
        page_end=page_end,
        section_heading=heading,
    )


def add_queue_item(content, chunk_index, status, retry_count=0, error=None):
    return ChunkQueueItem.objects.create(
        manual_id='m-1',
        tenant_id='acme',
        content=content,
        chunk_index=chunk_index,
        content_hash=compute_content_hash(content),
        page_start=3,
        page_end=3,
        status=status,
        retry_count=retry_count,
        error=error,
    )


# ============================================================================
# reingest_manual()
# ============================================================================

@pytest.mark.django_db
class TestReingestManual:
    """Tests for the atomic chunk rebuild."""

    def test_replaces_chunks(self, document, embedder):
        """Should swap in fixed-window chunks and mirror them in the queue."""
        old = [add_chunk(section(1), 1, 2), add_chunk(section(2), 3, 4)]
        expected = len(rechunk_fixed(section(1))) + len(rechunk_fixed(section(2)))

        result = reingest_manual('m-1', 'acme', embedder=embedder)

        assert result.old_chunks == 2
        assert result.chunks_created == expected
        assert result.page_count == 4
        assert not Chunk.objects.filter(id__in=[c.id for c in old]).exists()
        chunks = Chunk.objects.filter(manual_id='m-1')
        assert chunks.count() == expected
        assert all(len(c.content) <= 400 for c in chunks)
        assert all(c.embedding is not None for c in chunks)

        items = ChunkQueueItem.objects.filter(manual_id='m-1')
        assert items.count() == expected
        assert set(items.values_list('status', flat=True)) == {QueueItemStatus.DONE}
        assert set(items.values_list('chunk_id', flat=True)) == set(chunks.values_list('id', flat=True))

        document.refresh_from_db()
        assert document.page_count == 4
        assert ProcessingStatus.objects.get(manual_id='m-1').progress_percent == 100

    def test_unfinished_queue_items_survive(self, document, embedder):
        """Should keep failed and pending items that never became chunks."""
        add_chunk(section(1), 1, 2)
        failed = add_queue_item(section(3), 7, QueueItemStatus.FAILED, retry_count=2,
                                error="embedding service returned 503")
        pending = add_queue_item(section(4), 8, QueueItemStatus.PENDING)

        result = reingest_manual('m-1', 'acme', embedder=embedder)

        assert result.queue_items_kept == 2
        failed.refresh_from_db()
        assert failed.status == QueueItemStatus.FAILED
        assert failed.retry_count == 2
        assert failed.error == "embedding service returned 503"
        assert ChunkQueueItem.objects.filter(id=pending.id, status=QueueItemStatus.PENDING).exists()

        done = ChunkQueueItem.objects.filter(manual_id='m-1', status=QueueItemStatus.DONE)
        assert done.count() == result.chunks_created
        assert min(done.values_list('chunk_index', flat=True)) == 9

        status = ProcessingStatus.objects.get(manual_id='m-1')
        assert status.progress_percent < 100

        assert retry_failed_items('m-1', scheduler=MagicMock()).reset == 1

    def test_second_run_is_stable(self, document, embedder):
        """Should yield the same chunk count when run on its own output."""
        add_chunk(section(1), 1, 2)
        add_chunk(section(2), 3, 4)

        first = reingest_manual('m-1', 'acme', embedder=embedder)
        second = reingest_manual('m-1', 'acme', embedder=embedder)

        assert second.chunks_created == first.chunks_created
        assert Chunk.objects.filter(manual_id='m-1').count() == first.chunks_created

    def test_all_embeddings_fail_keeps_old_chunks(self, document, make_embedder):
        """Should raise and leave the existing chunks in place."""
        old = add_chunk(section(1), 1, 2)
        failing = make_embedder(fail_marker='Section', error=EmbeddingError("Embedding API error: 400 invalid input"))

        with pytest.raises(ReingestError):
            reingest_manual('m-1', 'acme', embedder=failing)

        assert list(Chunk.objects.filter(manual_id='m-1').values_list('id', flat=True)) == [old.id]

    def test_invalid_spans_are_dropped(self, document, embedder):
        """Should skip chunks without a usable page span."""
        add_chunk(section(1), 1, 2)
        add_chunk(section(2), None, None)
        add_chunk(section(3), 3, 2)

        result = reingest_manual('m-1', 'acme', embedder=embedder)

        assert result.chunks_dropped == 2
        assert not Chunk.objects.filter(content__startswith="Section 2").exists()

    def test_reembeds_figures(self, document, embedder):
        """Should embed figures with caption and nearby headings."""
        add_chunk(section(1), 1, 2, heading='Power supply')
        figure = Figure.objects.create(
            manual_id='m-1', tenant_id='acme', figure_id='fig-1', page_number=2,
            caption_text='Main harness wiring',
        )
        Figure.objects.create(manual_id='m-1', tenant_id='acme', figure_id='fig-2', page_number=40,
                              caption_text='Out of range figure')

        result = reingest_manual('m-1', 'acme', embedder=embedder)

        assert result.figures_embedded == 1
        assert result.figures_skipped == 1
        figure.refresh_from_db()
        assert figure.embedding is not None
        assert figure.embedding_text.startswith('Main harness wiring Power supply')

    def test_skip_figures(self, document, embedder):
        """Should leave figures alone when asked."""
        add_chunk(section(1), 1, 2)
        Figure.objects.create(manual_id='m-1', tenant_id='acme', figure_id='fig-1', page_number=1,
                              caption_text='Main harness wiring')

        result = reingest_manual('m-1', 'acme', embedder=embedder, include_figures=False)

        assert result.figures_embedded == 0
        assert Figure.objects.get().embedding is None

    def test_no_chunks(self, document, embedder):
        """Should refuse a manual with nothing stored."""
        with pytest.raises(ReingestError):
            reingest_manual('m-1', 'acme', embedder=embedder)

    def test_tenant_mismatch(self, document, embedder):
        """Should refuse another tenant's manual."""
        add_chunk(section(1), 1, 2)

        with pytest.raises(ValidationError):
            reingest_manual('m-1', 'globex', embedder=embedder)


@pytest.mark.django_db
class TestFigureContext:
    """Tests for figure_context()."""

    def test_nearby_chunks(self, document):
        """Should use headings, or content openings, of chunks within two pages."""
        add_chunk("Fuse panel layout and ratings for the main board.", 1, 1, heading='Fuses')
        add_chunk("Deck motor wiring runs through J12 behind the panel.", 3, 4)
        add_chunk("Far away content about the ball return.", 9, 9, heading='Ball return')

        context = figure_context('m-1', page_number=2, page_count=10)

        assert context == "Fuses Deck motor wiring runs through J12 behind the panel."
