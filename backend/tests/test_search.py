"""
Tests for hybrid search.

Vector and full-text queries need PostgreSQL, so the pipeline tests mock
vector_search / text_search / embed_query and check what happens around
them: merging, boosts, MMR, reranking and fallbacks.
"""
import pytest
from unittest.mock import patch

from apps.indexing.embedder import EmbeddingError
from apps.rag.embeddings import QueryValidationError, normalize_query
from apps.rag.retrieval import (
    RetrievalResult,
    SearchConfig,
    apply_boosts,
    content_words,
    create_snippet,
    extract_query_tokens,
    is_figure_query,
    merge_results,
    mmr_select,
    search,
    search_with_details,
)


def hit(id, score, content="Check the main fuse and the power harness.", source='chunk', **kwargs):
    return RetrievalResult(content=content, vector_score=score, source=source, id=id,
                           manual_id='X', page_start=3, page_end=3, **kwargs)


@pytest.fixture
def pipeline():
    """Patch the query embedding and both store searches."""
    with patch('apps.rag.retrieval.embed_query', return_value=[0.1, 0.2]) as embed, \
            patch('apps.rag.retrieval.vector_search', return_value=[]) as vector, \
            patch('apps.rag.retrieval.text_search', return_value=[]) as text:
        yield embed, vector, text


def config(**overrides):
    values = dict(candidate_k=20, top_k=5, enable_rerank=False, enable_mmr=False)
    values.update(overrides)
    return SearchConfig(**values)


# ============================================================================
# Pipeline
# ============================================================================

class TestSearchPipeline:
    """Tests for search_with_details()."""

    def test_no_candidates_returns_empty_list(self, pipeline):
        """Should return an empty list, not raise, when nothing matches."""
        results = search("flux capacitor alignment", manual_id="X", tenant_id="acme", config=config())

        assert results == []

    def test_filters_are_passed_through(self, pipeline):
        """Should scope both searches to the tenant and manual."""
        embed, vector, text = pipeline
        cfg = config()

        search_with_details("no power", manual_id="X", tenant_id="acme", config=cfg)

        vector.assert_called_once_with([0.1, 0.2], "X", "acme", cfg)
        assert text.call_args[0][1:3] == ("X", "acme")

    def test_embedding_failure_falls_back_to_text(self, pipeline):
        """Should run text search alone when the query cannot be embedded."""
        embed, vector, text = pipeline
        embed.side_effect = EmbeddingError("embedding service down")
        text.return_value = [hit('c1', 0.2, text_score=0.2)]

        outcome = search_with_details("no power", tenant_id="acme", config=config())

        assert outcome.method == 'text_only'
        assert [r.id for r in outcome.results] == ['c1']
        vector.assert_not_called()
        assert text.call_args[1]['limit'] == 20

    def test_text_budget_halves_with_enough_vector_hits(self, pipeline):
        """Should give text search half the budget when vectors found enough."""
        embed, vector, text = pipeline
        vector.return_value = [hit('c1', 0.9), hit('c2', 0.8), hit('c3', 0.7)]

        search_with_details("no power", tenant_id="acme", config=config())

        assert text.call_args[1]['limit'] == 10

    def test_dedupes_and_sorts(self, pipeline):
        """Should merge duplicates and order by score."""
        embed, vector, text = pipeline
        vector.return_value = [hit('c1', 0.5), hit('c2', 0.9)]
        text.return_value = [hit('c1', 0.1, text_score=0.1), hit('c3', 0.3, text_score=0.3)]

        outcome = search_with_details("no power", tenant_id="acme", config=config())

        assert [r.id for r in outcome.results] == ['c2', 'c1', 'c3']
        assert outcome.results[1].text_score == 0.1
        assert outcome.results[1].vector_score == 0.5

    def test_top_k_limit(self, pipeline):
        """Should return at most top_k results."""
        embed, vector, text = pipeline
        vector.return_value = [hit(f'c{i}', 0.9 - i * 0.01) for i in range(10)]

        results = search("no power", tenant_id="acme", top_k=3, config=config())

        assert len(results) == 3

    def test_empty_query(self, pipeline):
        """Should reject an empty query."""
        with pytest.raises(QueryValidationError):
            search("   ", tenant_id="acme", config=config())


class TestRerankStage:
    """Tests for the optional cross-encoder stage."""

    @pytest.fixture(autouse=True)
    def reranker_on(self, settings):
        settings.ENABLE_RERANKER = True

    def test_rerank_orders_results(self, pipeline):
        """Should order by rerank score when reranking succeeds."""
        embed, vector, text = pipeline
        vector.return_value = [hit('c1', 0.9), hit('c2', 0.8), hit('c3', 0.7), hit('c4', 0.6)]

        def fake_rerank(query, candidates):
            for i, candidate in enumerate(candidates):
                candidate.rerank_score = 0.1 * (i + 1)
            return list(reversed(candidates)), 12.0

        with patch('apps.rag.retrieval.rerank_candidates', side_effect=fake_rerank):
            outcome = search_with_details("no power", tenant_id="acme", config=config(enable_rerank=True))

        assert outcome.method == 'hybrid+rerank'
        assert outcome.rerank_ms == 12.0
        assert [r.id for r in outcome.results] == ['c4', 'c3', 'c2', 'c1']

    def test_rerank_failure_falls_back(self, pipeline):
        """Should keep vector order when the reranker raises."""
        embed, vector, text = pipeline
        vector.return_value = [hit('c1', 0.6), hit('c2', 0.9), hit('c3', 0.7), hit('c4', 0.8)]

        with patch('apps.rag.retrieval.rerank_candidates', side_effect=RuntimeError("model failed")):
            outcome = search_with_details("no power", tenant_id="acme", config=config(enable_rerank=True))

        assert outcome.method == 'hybrid'
        assert [r.id for r in outcome.results] == ['c2', 'c4', 'c3', 'c1']
        assert all(r.rerank_score is None for r in outcome.results)

    def test_too_few_candidates_skip_rerank(self, pipeline):
        """Should not rerank at or below the minimum candidate count."""
        embed, vector, text = pipeline
        vector.return_value = [hit('c1', 0.9), hit('c2', 0.8), hit('c3', 0.7)]

        with patch('apps.rag.retrieval.rerank_candidates') as mock_rerank:
            outcome = search_with_details("no power", tenant_id="acme", config=config(enable_rerank=True))

        mock_rerank.assert_not_called()
        assert outcome.reranked is False


# ============================================================================
# Boosts and merging
# ============================================================================

class TestBoosts:
    """Tests for apply_boosts()."""

    def test_keyword_boost(self):
        """Should add 0.05 per matched connector/pin token."""
        results = apply_boosts("voltage at J12 pin 3", [hit('c1', 0.5, content="Measure J12 pin 3 to ground.")])

        assert results[0].vector_score == pytest.approx(0.60)

    def test_keyword_boost_is_capped(self):
        """Should cap the keyword boost at 0.15."""
        content = "Connectors J12 J13 J14 J15 feed the deck."

        results = apply_boosts("J12 J13 J14 J15", [hit('c1', 0.5, content=content)])

        assert results[0].vector_score == pytest.approx(0.65)

    def test_figure_boost_only_for_diagram_questions(self):
        """Should boost figures for diagram questions only."""
        figure = hit('f1', 0.5, source='figure', content="Motor wiring")
        chunk = hit('c1', 0.5, content="Motor wiring")

        apply_boosts("wiring diagram for the motor", [figure, chunk])

        assert figure.vector_score == pytest.approx(0.70)
        assert chunk.vector_score == pytest.approx(0.50)

    def test_score_is_clamped(self):
        """Should never push a score past 1.0."""
        results = apply_boosts("J12 schematic", [hit('f1', 0.95, source='figure', content="J12")])

        assert results[0].vector_score == 1.0


class TestMerging:
    """Tests for merge_results() and mmr_select()."""

    def test_merge_keeps_best_scores(self):
        """Should keep one result per key with the best score of each kind."""
        merged = merge_results(
            [hit('c1', 0.8)],
            [hit('c1', 0.3, text_score=0.3), hit('c1', 0.2, source='figure')],
        )

        assert len(merged) == 2
        chunk = next(r for r in merged if r.source == 'chunk')
        assert chunk.vector_score == 0.8
        assert chunk.text_score == 0.3

    def test_mmr_skips_near_duplicates(self):
        """Should prefer a diverse result over a near duplicate."""
        a = hit('a', 0.9, content="pump motor belt tension adjust")
        b = hit('b', 0.85, content="pump motor belt tension adjust")
        c = hit('c', 0.6, content="fuse panel breaker reset")

        selected = mmr_select([a, b, c], k=2, lambda_=0.5)

        assert [r.id for r in selected] == ['a', 'c']


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:
    """Tests for query helpers and result shaping."""

    def test_query_tokens(self):
        """Should extract voltages and error codes."""
        assert set(extract_query_tokens("Error E-21 at 12V")) == {'12v', 'e-21'}
        assert extract_query_tokens("J12 pin 3") == ['j12', 'pin 3']

    def test_figure_query(self):
        """Should recognise diagram questions."""
        assert is_figure_query("Show me the wiring diagram") is True
        assert is_figure_query("Why does the sweep stall?") is False

    def test_content_words(self):
        """Should drop stopwords and short words."""
        assert content_words("How do I reset the E-21 fault?") == {'reset', 'fault'}

    def test_score_prefers_rerank(self):
        """Should rank by rerank score when present."""
        result = hit('c1', 0.4, rerank_score=0.9)

        assert result.score == 0.9
        assert hit('c2', 0.4).score == 0.4

    def test_snippet(self):
        """Should cut long text at a word boundary."""
        snippet = create_snippet("word " * 100)

        assert len(snippet) <= 200
        assert not snippet.endswith(' ')

    def test_normalize_query(self):
        """Should collapse whitespace and reject oversized queries."""
        assert normalize_query("  no   power\n") == "no power"
        with pytest.raises(QueryValidationError):
            normalize_query("x" * 2001)

    def test_config_overrides(self):
        """Should ignore None overrides."""
        cfg = SearchConfig.from_settings(vector_threshold=None, text_threshold=0.2)

        assert cfg.text_threshold == 0.2
        assert cfg.vector_threshold == 0.30
