"""
Tests for manual quality checks.
"""
import json
import pytest
from unittest.mock import patch

from django.test import Client

from apps.indexing.models import Chunk, Figure
from apps.indexing.retry import OracleResponseFormatError
from apps.manuals.validation import ValidationError
from apps.quality.golden import (
    STATUS_ERROR,
    STATUS_FAIL,
    STATUS_PASS,
    GoldenQuestion,
    ProbeResult,
    QuestionGenerationError,
    parse_questions,
    pass_rate,
    probe_search,
)
from apps.quality.metrics import (
    ISSUE_LOW_ENHANCEMENT,
    ISSUE_NO_CHUNKS,
    ISSUE_SHORT_CHUNKS,
    RECOMMEND_EXCELLENT,
    RECOMMEND_REUPLOAD,
    chunk_score,
    compute_metrics,
)
from apps.quality.service import run_quality_check
from apps.rag.retrieval import RetrievalResult

LONG_TEXT = "Check the pinsetter main fuse and the deck harness connectors. " * 5
LONG_CAPTION = "Wiring diagram of the main harness with connector J12 and fuse F2"


# ============================================================================
# Static metrics
# ============================================================================

class TestComputeMetrics:
    """Tests for compute_metrics()."""

    def test_many_short_chunks(self):
        """Should zero the chunk score and flag short chunks."""
        contents = ["short"] * 40 + [f"{i} {LONG_TEXT}" for i in range(60)]

        metrics = compute_metrics(contents, embedded_count=100, captions=[])

        assert metrics.short_chunks == 40
        assert metrics.chunk_score == 0
        assert ISSUE_SHORT_CHUNKS in metrics.issues
        assert metrics.enhancement_rate == 0
        assert metrics.embedding_rate == 100
        assert metrics.overall_score == 33
        assert metrics.recommendations == [RECOMMEND_REUPLOAD]

    def test_perfect_manual(self):
        """Should score 100 with no issues."""
        contents = [f"{i} {LONG_TEXT}" for i in range(10)]

        metrics = compute_metrics(contents, embedded_count=10, captions=[LONG_CAPTION])

        assert metrics.overall_score == 100
        assert metrics.uniqueness == 100
        assert metrics.issues == []
        assert metrics.recommendations == [RECOMMEND_EXCELLENT]

    def test_enhancement_rate(self):
        """Should count captions of at least 50 characters as enhanced."""
        metrics = compute_metrics([LONG_TEXT], 1, [LONG_CAPTION, "Fig 2", None])

        assert metrics.enhanced_figures == 1
        assert metrics.enhancement_rate == 33
        assert ISSUE_LOW_ENHANCEMENT in metrics.issues

    def test_no_chunks(self):
        """Should report a failed ingestion."""
        metrics = compute_metrics([], 0, [])

        assert metrics.overall_score == 0
        assert metrics.issues == [ISSUE_NO_CHUNKS]

    def test_chunk_score_is_monotonic(self):
        """Should never rise as short or long chunks are added."""
        scores = [chunk_score(short, 0) for short in range(25)]
        assert scores == sorted(scores, reverse=True)
        assert chunk_score(0, 10) == 80
        assert chunk_score(0, 100) == 0


# ============================================================================
# Golden questions
# ============================================================================

class TestParseQuestions:
    """Tests for parse_questions()."""

    def test_valid_reply(self):
        """Should parse question objects and skip blank questions."""
        raw = json.dumps([
            {"question": "Why does the deck not lower?", "expected_topics": ["deck", "motor"]},
            {"question": "  "},
            {"question": "What does E-21 mean?"},
        ])

        questions = parse_questions(raw)

        assert [q.question for q in questions] == ["Why does the deck not lower?", "What does E-21 mean?"]
        assert questions[1].expected_topics == []

    def test_fenced_reply(self):
        """Should accept a fenced JSON array."""
        assert len(parse_questions('```json\n[{"question": "Reset?"}]\n```')) == 1

    @pytest.mark.parametrize("raw", [
        "here are some questions",
        '{"question": "x"}',
        '[{"q": "x"}]',
        '[{"question": "x", "expected_topics": "deck"}]',
    ])
    def test_malformed_replies(self, raw):
        """Should raise on anything but an array of question objects."""
        with pytest.raises(OracleResponseFormatError):
            parse_questions(raw)


class TestProbeSearch:
    """Tests for probe_search() and pass_rate()."""

    def test_probe_statuses(self):
        """Should pass with hits, fail without and record search errors."""
        hits = [RetrievalResult(content="F2", vector_score=0.8), RetrievalResult(content="J12", vector_score=0.6)]
        questions = [GoldenQuestion("q1"), GoldenQuestion("q2"), GoldenQuestion("q3")]

        with patch('apps.quality.golden.search', side_effect=[hits, [], RuntimeError("db down")]):
            results = probe_search('m-1', 'acme', questions)

        assert [r.status for r in results] == [STATUS_PASS, STATUS_FAIL, STATUS_ERROR]
        assert results[0].avg_similarity == 0.7
        assert results[2].error == "db down"

    def test_probe_limit(self):
        """Should probe at most `limit` questions."""
        questions = [GoldenQuestion(f"q{i}") for i in range(8)]

        with patch('apps.quality.golden.search', return_value=[]) as mock_search:
            results = probe_search('m-1', 'acme', questions, limit=5)

        assert len(results) == 5
        assert mock_search.call_count == 5

    def test_pass_rate(self):
        """Should compute passes over probes attempted."""
        assert pass_rate([]) == 0
        results = [ProbeResult("a", STATUS_PASS), ProbeResult("b", STATUS_PASS), ProbeResult("c", STATUS_ERROR)]
        assert pass_rate(results) == 67


# ============================================================================
# Runner and view
# ============================================================================

def add_chunks(count, manual_id='m-1', vector=None):
    for i in range(count):
        Chunk.objects.create(
            manual_id=manual_id,
            tenant_id='acme',
            content=f"{i} {LONG_TEXT}",
            content_hash=f"hash-{i}",
            embedding=vector,
            page_start=i + 1,
            page_end=i + 1,
        )


@pytest.mark.django_db
class TestRunQualityCheck:
    """Tests for run_quality_check()."""

    def test_metrics_only(self, document, vector):
        """Should report stored chunks and figures without calling the oracle."""
        add_chunks(4, vector=vector())
        Figure.objects.create(manual_id='m-1', tenant_id='acme', figure_id='fig-1',
                              page_number=1, caption_text=LONG_CAPTION)

        with patch('apps.quality.service.generate_golden_questions') as mock_generate:
            report = run_quality_check('m-1', 'acme', 'metrics')

        mock_generate.assert_not_called()
        assert report["metrics"]["chunk_quality"]["total_chunks"] == 4
        assert report["metrics"]["embedding_quality"]["embedding_rate"] == 100
        assert report["overall_score"] == 100
        assert report["golden_questions"] == []

    def test_search_probes(self, document):
        """Should generate questions and probe them for the search type."""
        questions = [GoldenQuestion("Why no power?"), GoldenQuestion("What is E-21?")]

        with patch('apps.quality.service.generate_golden_questions', return_value=questions), \
                patch('apps.quality.golden.search', side_effect=[[RetrievalResult(content="F2", vector_score=0.8)], []]):
            report = run_quality_check('m-1', 'acme', 'search')

        assert report["metrics"] is None
        assert len(report["search_tests"]) == 2
        assert report["search_pass_rate"] == 50

    def test_generation_error_is_reported(self, document):
        """Should keep the report and record why questions are missing."""
        with patch('apps.quality.service.generate_golden_questions',
                   side_effect=QuestionGenerationError("No content found to generate questions from")):
            report = run_quality_check('m-1', 'acme', 'all')

        assert report["question_generation_error"] == "No content found to generate questions from"
        assert report["search_tests"] == []
        assert report["search_pass_rate"] is None
        assert report["overall_score"] == 0

    def test_unknown_test_type(self, document):
        """Should reject an unknown test type."""
        with pytest.raises(ValidationError):
            run_quality_check('m-1', 'acme', 'speed')

    def test_tenant_mismatch(self, document):
        """Should refuse another tenant's manual."""
        with pytest.raises(ValidationError):
            run_quality_check('m-1', 'globex', 'metrics')


@pytest.mark.django_db
class TestQualityView:
    """Tests for POST /api/quality/check."""

    def post(self, body):
        return Client().post('/api/quality/check', data=json.dumps(body), content_type='application/json')

    def test_check(self, document):
        """Should return the report."""
        add_chunks(2)

        response = self.post({"manual_id": "m-1", "tenant_id": "acme", "test_type": "metrics"})

        assert response.status_code == 200
        data = response.json()
        assert data["manual_id"] == "m-1"
        assert data["metrics"]["embedding_quality"]["embedded_chunks"] == 0

    def test_unknown_manual(self, db):
        """Should answer 400 for an unknown manual."""
        response = self.post({"manual_id": "nope", "tenant_id": "acme", "test_type": "metrics"})

        assert response.status_code == 400

    def test_missing_fields(self, db):
        """Should answer 400 without manual_id."""
        response = self.post({"tenant_id": "acme"})

        assert response.status_code == 400
