"""
Tests for figure enrichment and vision reply parsing.

The vision client, image storage and PNG normalization are mocked.
"""
import json
import pytest
from unittest.mock import MagicMock, patch

from apps.indexing.figures import figure_progress, process_pending_figures
from apps.indexing.models import Figure, OcrStatus
from apps.indexing.retry import OracleResponseFormatError
from apps.indexing.storage import StorageError
from apps.indexing.vision import (
    VisionExtraction,
    VisionTransientError,
    parse_vision_response,
    quality_score_for,
)
from apps.manuals.validation import ValidationError


def extraction(**overrides):
    data = dict(
        figure_type='diagram',
        ocr_text='J12 pin 3 12V',
        caption='Wiring of the main harness',
        detected_components=[{'type': 'connector', 'label': 'J12', 'value': '12V'}],
        semantic_tags=['electrical'],
        confidence='high',
        image_quality='sharp',
    )
    data.update(overrides)
    return VisionExtraction(**data)


@pytest.fixture
def storage():
    mock = MagicMock()
    mock.load.return_value = b'raw-image'
    return mock


@pytest.fixture
def vision():
    mock = MagicMock()
    mock.analyze.return_value = extraction()
    return mock


@pytest.fixture(autouse=True)
def png():
    with patch('apps.indexing.figures.normalize_image', return_value=b'png') as mock:
        yield mock


def add_figure(page_number=2, caption='Main harness', figure_id='fig-1'):
    return Figure.objects.create(
        manual_id='m-1',
        tenant_id='acme',
        figure_id=figure_id,
        page_number=page_number,
        storage_path=f'm-1/{figure_id}.png',
        caption_text=caption,
    )


# ============================================================================
# Enrichment run
# ============================================================================

@pytest.mark.django_db
class TestProcessPendingFigures:
    """Tests for process_pending_figures()."""

    def test_enriches_and_embeds(self, document, vision, embedder, storage):
        """Should store extraction results and an embedding."""
        figure = add_figure()

        result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.succeeded == 1
        assert result.embedded == 1
        figure.refresh_from_db()
        assert figure.ocr_status == OcrStatus.SUCCESS
        assert figure.figure_type == 'diagram'
        assert figure.quality_score == 1.0
        assert 'J12' in figure.embedding_text
        assert figure.embedding is not None
        vision.analyze.assert_called_once_with(b'png', 'Main harness')

    def test_one_bad_figure_does_not_stop_run(self, document, vision, embedder, storage):
        """Should record the failure and continue with the next figure."""
        bad = add_figure(page_number=1, figure_id='fig-1')
        good = add_figure(page_number=2, figure_id='fig-2')
        storage.load.side_effect = [StorageError("file missing"), b'raw-image']

        result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.failed == 1
        assert result.succeeded == 1
        bad.refresh_from_db()
        good.refresh_from_db()
        assert bad.ocr_status == OcrStatus.FAILED
        assert bad.ocr_error == "file missing"
        assert good.ocr_status == OcrStatus.SUCCESS

    def test_malformed_reply_is_not_retried(self, document, vision, embedder, storage):
        """Should fail the figure on a malformed vision reply after one call."""
        figure = add_figure()
        vision.analyze.side_effect = OracleResponseFormatError("Vision reply is not JSON")

        result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.failed == 1
        assert vision.analyze.call_count == 1
        figure.refresh_from_db()
        assert figure.ocr_status == OcrStatus.FAILED

    def test_transient_errors_are_retried(self, document, vision, embedder, storage):
        """Should retry transient vision errors within the bound."""
        add_figure()
        vision.analyze.side_effect = [
            VisionTransientError("Vision API error: 503"),
            VisionTransientError("Vision API timed out"),
            extraction(),
        ]

        result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.succeeded == 1
        assert vision.analyze.call_count == 3

    def test_no_confidence_skips_embedding(self, document, vision, embedder, storage):
        """Should mark success without embedding when nothing was read."""
        figure = add_figure()
        vision.analyze.return_value = extraction(confidence='none')

        result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.succeeded == 1
        assert result.embedded == 0
        figure.refresh_from_db()
        assert figure.ocr_status == OcrStatus.SUCCESS
        assert figure.embedding is None

    def test_keeps_parser_caption(self, document, vision, embedder, storage):
        """Should only fill the caption when the parser had none."""
        with_caption = add_figure(page_number=1, figure_id='fig-1', caption='Harness')
        without = add_figure(page_number=2, figure_id='fig-2', caption=None)

        process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        with_caption.refresh_from_db()
        without.refresh_from_db()
        assert with_caption.caption_text == 'Harness'
        assert without.caption_text == 'Wiring of the main harness'

    def test_tenant_mismatch(self, document, vision, embedder, storage):
        """Should refuse another tenant's manual."""
        with pytest.raises(ValidationError):
            process_pending_figures('m-1', 'globex', vision=vision, embedder=embedder, storage=storage)

    def test_throttle_and_checkpoint_cadence(self, document, vision, embedder, storage, settings):
        """Should checkpoint every 5 figures and at the end, and pause after every 10."""
        settings.FIGURE_CHECKPOINT_EVERY = 5
        settings.FIGURE_PAUSE_EVERY = 10
        settings.FIGURE_PAUSE_SECONDS = 1.0
        for i in range(12):
            add_figure(page_number=i + 1, figure_id=f'fig-{i}')

        with patch('apps.indexing.figures.time') as mock_time, \
                patch('apps.indexing.figures._checkpoint') as mock_checkpoint:
            result = process_pending_figures('m-1', 'acme', vision=vision, embedder=embedder, storage=storage)

        assert result.succeeded == 12
        mock_time.sleep.assert_called_once_with(1.0)
        assert [c.args[1] for c in mock_checkpoint.call_args_list] == [5, 10, 12]


class TestFigureProgress:
    """Tests for the 90-99% figure phase."""

    def test_bounds(self):
        """Should stay within 90-99."""
        assert figure_progress(0, 0) == 90
        assert figure_progress(5, 10) == 95
        assert figure_progress(10, 10) == 99


# ============================================================================
# Vision reply parsing
# ============================================================================

class TestParseVisionResponse:
    """Tests for the strict vision reply parser."""

    def test_valid_reply(self):
        """Should parse every field."""
        raw = json.dumps({
            "figure_type": "Schematic",
            "ocr_text": "F2 10A",
            "caption": "Fuse panel",
            "detected_components": [{"type": "fuse", "label": "F2", "value": "10A"}],
            "semantic_tags": ["Electrical", " safety "],
            "entities": [{"type": "part_number", "value": "47021"}],
            "technical_complexity": "high",
            "image_quality": "blurry",
            "confidence": "low",
        })

        result = parse_vision_response(raw)

        assert result.figure_type == 'schematic'
        assert result.semantic_tags == ['electrical', 'safety']
        assert result.quality_score == 0.5
        assert result.confidence == 'low'

    def test_fenced_reply(self):
        """Should accept JSON inside a code fence."""
        result = parse_vision_response('```json\n{"ocr_text": "J12"}\n```')

        assert result.ocr_text == 'J12'
        assert result.figure_type == 'other'

    def test_unknown_figure_type(self):
        """Should map an unknown figure type to other."""
        assert parse_vision_response('{"figure_type": "chart"}').figure_type == 'other'

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"confidence": "certain"}',
        '{"semantic_tags": "electrical"}',
        '{"ocr_text": 42}',
        '{"detected_components": ["J12"]}',
    ])
    def test_malformed_replies(self, raw):
        """Should raise instead of passing on a half-parsed reply."""
        with pytest.raises(OracleResponseFormatError):
            parse_vision_response(raw)


class TestVisionExtraction:
    """Tests for derived extraction values."""

    def test_embedding_text(self):
        """Should join caption, OCR, component labels and tags."""
        text = extraction().embedding_text("Main harness")

        assert text == "Main harness J12 pin 3 12V J12 12V electrical"

    def test_metadata_excludes_text(self):
        """Should keep OCR text and caption out of the metadata blob."""
        meta = extraction().metadata()

        assert 'ocr_text' not in meta
        assert 'caption' not in meta
        assert meta['figure_type'] == 'diagram'

    def test_quality_scores(self):
        """Should map image quality labels to scores."""
        assert quality_score_for('sharp') == 1.0
        assert quality_score_for('unreadable') == 0.25
        assert quality_score_for(None) == 0.25
