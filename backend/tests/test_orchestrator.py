"""
Tests for the RAG orchestrator and its API views.

Search and the generation oracle are mocked; query logs are written
inline (QUERY_LOG_ASYNC is off in tests).
"""
import json
import pytest
from unittest.mock import MagicMock, patch

from django.db import DatabaseError
from django.test import Client

from apps.rag.embeddings import QueryValidationError
from apps.rag.llm_client import LLMError, LLMResponse, LLMTransientError
from apps.rag.models import QueryLog
from apps.rag.orchestrator import (
    DEGRADED_ANSWER,
    NO_CONTEXT_ANSWER,
    STRATEGY_DEGRADED,
    STRATEGY_NO_CONTEXT,
    AnswerResponse,
    AskRequest,
    GenerationError,
    answer_question,
    find_numeric_flags,
    generate,
    score_answer,
)
from apps.rag.retrieval import RetrievalResult, SearchOutcome

ANSWER = "Check fuse F2 on the main power board. Then measure 12V at connector J12."


def strong_results():
    return [
        RetrievalResult(
            content="Fuse F2 protects the main power board. Measure 12V at connector J12 with power on.",
            page_start=12, page_end=12, vector_score=0.9, id='c1', manual_id='X',
            menu_path='Service > Power',
        ),
        RetrievalResult(content="The deck motor is fed through J12.", page_start=13, page_end=14,
                        vector_score=0.85, id='c2', manual_id='X'),
        RetrievalResult(content="Main power board layout.", page_start=15, page_end=15,
                        vector_score=0.8, id='f1', manual_id='X', source='figure',
                        content_type='diagram'),
    ]


def ask(question="No power to the deck", **kwargs):
    return AskRequest(question=question, tenant_id='acme', manual_id='X', **kwargs)


# ============================================================================
# answer_question()
# ============================================================================

@pytest.mark.django_db
class TestAnswerQuestion:
    """Tests for the full ask flow."""

    def test_no_results_returns_empty_citations(self):
        """Should answer without the oracle and with no citations when nothing matches."""
        with patch('apps.rag.orchestrator.search_with_details', return_value=SearchOutcome()), \
                patch('apps.rag.orchestrator.generate') as mock_generate:
            response = answer_question(ask("flux capacitor alignment"))

        mock_generate.assert_not_called()
        assert response.answer == NO_CONTEXT_ANSWER
        assert response.citations == []
        assert response.debug["strategy"] == STRATEGY_NO_CONTEXT
        assert QueryLog.objects.count() == 1

    def test_answer_with_citations(self):
        """Should cite every excerpt sent to the oracle."""
        outcome = SearchOutcome(results=strong_results(), candidates=3)

        with patch('apps.rag.orchestrator.search_with_details', return_value=outcome), \
                patch('apps.rag.orchestrator.generate', return_value=(ANSWER, 'gpt-test')):
            response = answer_question(ask(user_id='tech-7'))

        assert response.answer == ANSWER
        assert [c["page_start"] for c in response.citations] == [12, 13, 15]
        assert response.citations[0]["manual_id"] == 'X'
        assert response.citations[2]["content_type"] == 'diagram'
        assert response.debug["adaptive_mode"] == 'standard'
        assert response.debug["strategy"] == 'hybrid'
        assert set(response.debug["performance_ms"]) >= {"search", "generation", "total"}

        log = QueryLog.objects.get()
        assert log.user_id == 'tech-7'
        assert log.model_name == 'gpt-test'
        assert log.quality_tier == 'high'

    def test_search_failure_degrades(self):
        """Should return the fixed checklist when search fails."""
        with patch('apps.rag.orchestrator.search_with_details', side_effect=DatabaseError("connection lost")):
            response = answer_question(ask())

        assert response.answer == DEGRADED_ANSWER
        assert response.citations == []
        assert response.debug["strategy"] == STRATEGY_DEGRADED
        assert QueryLog.objects.get().retrieval_method == STRATEGY_DEGRADED

    def test_generation_failure_propagates(self):
        """Should surface generation failures instead of inventing an answer."""
        outcome = SearchOutcome(results=strong_results())

        with patch('apps.rag.orchestrator.search_with_details', return_value=outcome), \
                patch('apps.rag.orchestrator.generate', side_effect=GenerationError("down")):
            with pytest.raises(GenerationError):
                answer_question(ask())

    def test_empty_question(self):
        """Should reject an empty question."""
        with pytest.raises(QueryValidationError):
            answer_question(ask("   "))

    def test_context_is_capped(self, settings):
        """Should only send and cite ANSWER_CONTEXT_CHUNKS excerpts."""
        settings.ANSWER_CONTEXT_CHUNKS = 2
        outcome = SearchOutcome(results=strong_results())

        with patch('apps.rag.orchestrator.search_with_details', return_value=outcome), \
                patch('apps.rag.orchestrator.generate', return_value=(ANSWER, 'gpt-test')) as mock_generate:
            response = answer_question(ask())

        assert len(response.citations) == 2
        prompt = mock_generate.call_args[0][0][-1]["content"]
        assert "[3]" not in prompt


# ============================================================================
# generate()
# ============================================================================

class TestGenerate:
    """Tests for the generation oracle call."""

    def test_returns_content_and_model(self):
        """Should return the reply text and model name."""
        client = MagicMock()
        client.chat.return_value = LLMResponse(content="Check F2.", model="gpt-test")

        with patch('apps.rag.orchestrator.get_llm_client', return_value=client):
            assert generate([{"role": "user", "content": "hi"}]) == ("Check F2.", "gpt-test")

    def test_transient_errors_exhaust(self):
        """Should retry transient errors and then fail as retryable."""
        client = MagicMock()
        client.chat.side_effect = LLMTransientError("OpenAI API error: 503")

        with patch('apps.rag.orchestrator.get_llm_client', return_value=client):
            with pytest.raises(GenerationError) as exc_info:
                generate([{"role": "user", "content": "hi"}])

        assert exc_info.value.retryable is True
        assert client.chat.call_count == 3

    def test_client_error_is_final(self):
        """Should not retry a client error."""
        client = MagicMock()
        client.chat.side_effect = LLMError("OpenAI API error: 401")

        with patch('apps.rag.orchestrator.get_llm_client', return_value=client):
            with pytest.raises(GenerationError) as exc_info:
                generate([{"role": "user", "content": "hi"}])

        assert exc_info.value.retryable is False
        assert client.chat.call_count == 1

    def test_missing_configuration(self):
        """Should fail as non-retryable when no client can be built."""
        with patch('apps.rag.orchestrator.get_llm_client', side_effect=LLMError("OPENAI_API_KEY not configured")):
            with pytest.raises(GenerationError) as exc_info:
                generate([{"role": "user", "content": "hi"}])

        assert exc_info.value.retryable is False


# ============================================================================
# Answer scoring
# ============================================================================

class TestScoreAnswer:
    """Tests for claim coverage and unsupported numbers."""

    def test_supported_answer_is_high(self):
        """Should score a fully supported answer as high."""
        score = score_answer(ANSWER, strong_results())

        assert score.claim_coverage == 1.0
        assert score.numeric_flags == []
        assert score.quality_tier == 'high'

    def test_unsupported_number_is_flagged(self):
        """Should flag numbers missing from the excerpts."""
        score = score_answer("Measure 24V at connector J12.", strong_results())

        assert score.numeric_flags == ['24V']
        assert score.quality_score == pytest.approx(0.7)

    def test_unrelated_answer_is_low(self):
        """Should score an unsupported answer as low."""
        score = score_answer("Replace the transmission gearbox.", strong_results())

        assert score.claim_coverage == 0.0
        assert score.quality_tier == 'low'

    def test_numbers_match_whole_values(self):
        """Should not treat 5 as supported by 15."""
        assert find_numeric_flags("Set it to 5V.", "Supply is 15V.") == ['5V']
        assert find_numeric_flags("Expect 5 ohms.", "Coil reads 5 ohm.") == []


# ============================================================================
# Views
# ============================================================================

@pytest.mark.django_db
class TestRagViews:
    """Tests for the search and ask endpoints."""

    def post(self, path, body):
        return Client().post(path, data=json.dumps(body), content_type='application/json')

    def test_ask(self):
        """Should return answer, citations and debug."""
        response_obj = AnswerResponse(answer="Check F2.", citations=[{"page_start": 12}], debug={"strategy": "hybrid"})

        with patch('apps.rag.views.answer_question', return_value=response_obj) as mock_answer:
            response = self.post('/api/rag/ask', {"question": "No power", "tenant_id": "acme", "manual_id": "X"})

        assert response.status_code == 200
        assert response.json()["citations"] == [{"page_start": 12}]
        request = mock_answer.call_args[0][0]
        assert request.tenant_id == 'acme'
        assert request.manual_id == 'X'
        assert request.channel == 'web'

    def test_ask_requires_tenant(self):
        """Should reject a request without tenant_id."""
        response = self.post('/api/rag/ask', {"question": "No power"})

        assert response.status_code == 400

    def test_ask_rejects_bad_history(self):
        """Should reject history that is not a list of turns."""
        response = self.post('/api/rag/ask', {"question": "No power", "tenant_id": "acme", "history": "hi"})

        assert response.status_code == 400

    def test_ask_generation_failure(self):
        """Should answer 503 with Retry-After on a retryable generation failure."""
        with patch('apps.rag.views.answer_question', side_effect=GenerationError("down")):
            response = self.post('/api/rag/ask', {"question": "No power", "tenant_id": "acme"})

        assert response.status_code == 503
        assert response.json()["code"] == "GENERATION_FAILED"
        assert response["Retry-After"] == "30"

    def test_search(self):
        """Should return ranked results with the method used."""
        outcome = SearchOutcome(results=strong_results()[:1], method='hybrid')

        with patch('apps.rag.views.search_with_details', return_value=outcome):
            response = self.post('/api/rag/search', {"query": "no power", "tenant_id": "acme", "top_k": 5})

        data = response.json()
        assert response.status_code == 200
        assert data["count"] == 1
        assert data["results"][0]["page_start"] == 12

    def test_search_rejects_bad_top_k(self):
        """Should reject an out-of-range top_k."""
        response = self.post('/api/rag/search', {"query": "no power", "tenant_id": "acme", "top_k": 500})

        assert response.status_code == 400
