"""
Tests for the cross-encoder reranker module.

Tests the CrossEncoderReranker class, score normalization, and the
rerank_candidates() entry point used by hybrid search, including
fallback scenarios.
"""
import pytest
from unittest.mock import patch, MagicMock

from apps.rag import reranker as reranker_module
from apps.rag.reranker import (
    CrossEncoderReranker,
    rerank_candidates,
    is_reranker_enabled,
    sigmoid,
    MAX_CHUNK_TEXT_LENGTH,
)
from apps.rag.retrieval import RetrievalResult


def candidate(id, content=None, vector_score=0.5):
    return RetrievalResult(content=content or f"Text {id}", vector_score=vector_score, id=id)


@pytest.fixture
def fresh_reranker():
    """Reset the singleton so each test loads its own mock model."""
    CrossEncoderReranker._instance = None
    reranker_module._reranker = None
    yield
    CrossEncoderReranker._instance = None
    reranker_module._reranker = None


# ============================================================================
# Score normalization
# ============================================================================

class TestSigmoid:
    """Tests for sigmoid()."""

    def test_midpoint(self):
        """Should map 0 to 0.5."""
        assert sigmoid(0.0) == 0.5

    def test_range_and_order(self):
        """Should stay within 0-1 and preserve order for large logits."""
        scores = [sigmoid(s) for s in (-1000.0, -3.0, 3.0, 1000.0)]

        assert all(0.0 <= s <= 1.0 for s in scores)
        assert scores == sorted(scores)


# ============================================================================
# CrossEncoderReranker Tests with Mocking
# ============================================================================

class TestCrossEncoderReranker:
    """Tests for the CrossEncoderReranker class."""

    def test_text_truncation(self, fresh_reranker):
        """Should truncate text to max length."""
        reranker = CrossEncoderReranker()

        truncated = reranker._truncate_text("x" * 2000)

        assert len(truncated) <= MAX_CHUNK_TEXT_LENGTH

    def test_text_truncation_at_word_boundary(self, fresh_reranker):
        """Should cut at the last space when it is close to the limit."""
        reranker = CrossEncoderReranker()

        truncated = reranker._truncate_text("word " * 400)

        assert truncated.endswith("word")
        assert len(truncated) <= MAX_CHUNK_TEXT_LENGTH

    def test_text_truncation_preserves_short_text(self, fresh_reranker):
        """Should not truncate text under max length."""
        reranker = CrossEncoderReranker()

        assert reranker._truncate_text("Check fuse F2.") == "Check fuse F2."

    @patch('apps.rag.reranker.CrossEncoderReranker._load_model')
    def test_rerank_empty_candidates(self, mock_load, fresh_reranker):
        """Should return empty list for empty candidates."""
        reranker = CrossEncoderReranker()

        result = reranker.rerank("test query", [])

        assert result == []
        mock_load.assert_not_called()

    @patch('sentence_transformers.CrossEncoder')
    @patch('torch.cuda.is_available', return_value=False)
    def test_rerank_with_mock_model(self, mock_cuda, mock_cross_encoder_class, fresh_reranker):
        """Should order candidates by normalized cross-encoder score."""
        mock_model = MagicMock()
        mock_model.predict.return_value = [2.0, -1.0, 1.0, 0.0]
        mock_cross_encoder_class.return_value = mock_model

        candidates = [candidate("1"), candidate("2"), candidate("3"), candidate("4")]

        result = CrossEncoderReranker().rerank("no power to deck", candidates)

        assert [r.id for r in result] == ["1", "3", "4", "2"]
        assert all(0.0 < r.rerank_score < 1.0 for r in result)
        assert result[2].rerank_score == 0.5
        pairs = mock_model.predict.call_args[0][0]
        assert pairs[0] == ("no power to deck", "Text 1")

    @patch('sentence_transformers.CrossEncoder')
    @patch('torch.cuda.is_available', return_value=False)
    def test_rerank_with_top_n(self, mock_cuda, mock_cross_encoder_class, fresh_reranker):
        """Should return only top_n candidates."""
        mock_model = MagicMock()
        mock_model.predict.return_value = [0.9, 0.3, 0.7, 0.5]
        mock_cross_encoder_class.return_value = mock_model

        candidates = [candidate(str(i)) for i in range(4)]

        result = CrossEncoderReranker().rerank("test query", candidates, top_n=2)

        assert [r.id for r in result] == ["0", "2"]

    @patch('sentence_transformers.CrossEncoder')
    @patch('torch.cuda.is_available', return_value=False)
    def test_model_loads_once(self, mock_cuda, mock_cross_encoder_class, fresh_reranker):
        """Should construct the model on first use only."""
        mock_model = MagicMock()
        mock_model.predict.side_effect = lambda pairs, **kwargs: [0.0] * len(pairs)
        mock_cross_encoder_class.return_value = mock_model

        reranker = CrossEncoderReranker()
        reranker.rerank("q", [candidate("1")])
        reranker.rerank("q", [candidate("2")])

        assert mock_cross_encoder_class.call_count == 1
        assert mock_cross_encoder_class.call_args[1]["device"] == "cpu"


# ============================================================================
# Entry point and toggle
# ============================================================================

class TestRerankCandidates:
    """Tests for rerank_candidates() and is_reranker_enabled()."""

    @patch('apps.rag.reranker.get_reranker')
    def test_rerank_candidates_function(self, mock_get_reranker):
        """Should call reranker and return with latency."""
        reranked = candidate("1")
        reranked.rerank_score = 0.9
        mock_reranker = MagicMock()
        mock_reranker.rerank.return_value = [reranked]
        mock_get_reranker.return_value = mock_reranker

        result, latency = rerank_candidates("query", [candidate("1")])

        assert result[0].rerank_score == 0.9
        assert latency >= 0

    @patch('apps.rag.reranker.get_reranker')
    def test_failure_propagates(self, mock_get_reranker):
        """Should raise so hybrid search can fall back to its own order."""
        mock_reranker = MagicMock()
        mock_reranker.rerank.side_effect = RuntimeError("Model failed to load")
        mock_get_reranker.return_value = mock_reranker

        with pytest.raises(RuntimeError):
            rerank_candidates("query", [candidate("1")])

    def test_is_reranker_enabled(self, settings):
        """Should follow ENABLE_RERANKER."""
        settings.ENABLE_RERANKER = True
        assert is_reranker_enabled() is True

        settings.ENABLE_RERANKER = False
        assert is_reranker_enabled() is False

    def test_is_reranker_disabled_by_default(self, settings):
        """Should return False when ENABLE_RERANKER is not set."""
        del settings.ENABLE_RERANKER

        assert is_reranker_enabled() is False
