"""
RAG orchestrator: the "ask a question" flow.

1. Timed hybrid search scoped to tenant (and manual when given)
2. Retrieval signals -> adaptive answer style
3. Prompt with the top excerpts + style directives -> generation oracle
4. Citations aligned to the excerpts actually sent
5. Answer scoring (claim coverage, unsupported numbers) and a QueryLog row
   written off the request path
6. {answer, citations, debug}

Search failures degrade to a fixed troubleshooting checklist with no
citations. Generation failures raise GenerationError; there is no safe
substitute for an answer.
"""
import re
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from django.conf import settings
from django.db import DatabaseError, connection

from apps.indexing.retry import GENERATION_RETRY_CONFIG, RetryExhausted, retry_with_backoff
from apps.ops.audit import audit_rag_query
from apps.rag.answer_style import RetrievalSignals, compute_signals, select_style, shape_messages
from apps.rag.embeddings import QueryValidationError, normalize_query
from apps.rag.llm_client import LLMError, LLMMessage, get_llm_client
from apps.rag.models import QualityTier, QueryLog
from apps.rag.retrieval import RetrievalResult, content_words, create_snippet, search_with_details

logger = logging.getLogger(__name__)

STRATEGY_DEGRADED = 'degraded'
STRATEGY_NO_CONTEXT = 'no_context'

DEGRADED_ANSWER = (
    "Manual search is unavailable right now, so here is a general checklist: "
    "1) Power the unit off and back on. "
    "2) Check fuses and breakers for continuity. "
    "3) Reseat the main power and harness connectors. "
    "4) Note any error code on the display. "
    "Try your question again in a few minutes for manual-specific steps."
)

NO_CONTEXT_ANSWER = (
    "I couldn't find this in the manual. Check power, fuses and connector "
    "seating first, and note any error code shown; rephrasing the question "
    "with a part name or error code may find the right section."
)

CLAIM_SPLIT = re.compile(r'[.!?]+')
MIN_SHARED_WORDS = 2
NUMBER_WITH_UNIT = re.compile(
    r'(\d+\.?\d*)\s*(v|vac|vdc|ma|a|ohms?|hz|khz|w|kw|mm|cm|psi|rpm|ms|sec|seconds|amps?|volts?)\b',
    re.IGNORECASE,
)


class GenerationError(Exception):
    """The generation oracle failed; the caller gets no answer."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class AskRequest:
    question: str
    tenant_id: str
    user_id: Optional[str] = None
    manual_id: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    channel: str = 'web'
    top_k: Optional[int] = None


@dataclass
class AnswerScore:
    quality_score: float
    quality_tier: str
    claim_coverage: float
    numeric_flags: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "quality_score": round(self.quality_score, 4),
            "quality_tier": self.quality_tier,
            "claim_coverage": round(self.claim_coverage, 4),
            "numeric_flags": self.numeric_flags,
        }


@dataclass
class AnswerResponse:
    answer: str
    citations: List[Dict] = field(default_factory=list)
    debug: Dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "citations": self.citations,
            "debug": self.debug,
        }


def build_citation(result: RetrievalResult) -> Dict:
    return {
        "page_start": result.page_start,
        "page_end": result.page_end,
        "manual_id": result.manual_id,
        "content_type": result.content_type,
        "menu_path": result.menu_path,
        "source": result.source,
        "snippet": create_snippet(result.content),
    }


def split_claims(answer: str) -> List[str]:
    return [c.strip() for c in CLAIM_SPLIT.split(answer or '') if c.strip()]


def find_numeric_flags(answer: str, context: str) -> List[str]:
    """Numbers with units in the answer that appear nowhere in the context."""
    flags = []
    for match in NUMBER_WITH_UNIT.finditer(answer or ''):
        number = match.group(1)
        if not re.search(rf'(?<![\d.]){re.escape(number)}(?![\d])', context):
            value = f"{number}{match.group(2)}"
            if value not in flags:
                flags.append(value)
    return flags


def score_answer(answer: str, results: List[RetrievalResult]) -> AnswerScore:
    """
    Claim coverage and unsupported numbers against the excerpts used.

    quality_score = 0.7 * coverage + 0.3 when no number is unsupported.
    """
    context = ' '.join(r.content for r in results)
    context_words = content_words(context)

    claims = split_claims(answer)
    covered = sum(
        1 for claim in claims
        if len(content_words(claim) & context_words) >= MIN_SHARED_WORDS
    )
    coverage = covered / len(claims) if claims else 0.0

    flags = find_numeric_flags(answer, context)
    score = 0.7 * coverage + (0.3 if not flags else 0.0)

    if score >= 0.7:
        tier = QualityTier.HIGH
    elif score >= 0.4:
        tier = QualityTier.MEDIUM
    else:
        tier = QualityTier.LOW

    return AnswerScore(
        quality_score=score,
        quality_tier=tier.value,
        claim_coverage=coverage,
        numeric_flags=flags,
    )


def generate(messages: List[Dict[str, str]]) -> tuple:
    """
    Call the generation oracle with bounded retries.

    Returns:
        (answer text, model name)

    Raises:
        GenerationError: Configuration error, non-retryable error, or
            retries exhausted
    """
    try:
        client = get_llm_client()
    except LLMError as e:
        raise GenerationError(f"Generation oracle not available: {e}", retryable=False)

    llm_messages = [LLMMessage(role=m["role"], content=m["content"]) for m in messages]

    try:
        response = retry_with_backoff(
            func=lambda: client.chat(
                llm_messages,
                temperature=getattr(settings, 'ANSWER_TEMPERATURE', 0.2),
                max_tokens=getattr(settings, 'ANSWER_MAX_TOKENS', 600),
            ),
            config=GENERATION_RETRY_CONFIG,
            exceptions=(LLMError,),
            on_retry=lambda attempt, err, backoff: logger.warning(
                f"LLM generation retry {attempt + 1}: {err}. Waiting {backoff:.1f}s"
            )
        )
    except RetryExhausted as e:
        logger.error(f"LLM generation failed after {e.attempts} attempts: {e.last_exception}")
        raise GenerationError(f"Generation failed after {e.attempts} attempts")
    except LLMError as e:
        logger.error(f"LLM generation failed (non-retriable): {e}")
        raise GenerationError(f"Generation failed: {e}", retryable=False)

    return response.content, response.model


def _write_query_log(**fields) -> None:
    try:
        QueryLog.objects.create(**fields)
    except DatabaseError as e:
        logger.error(f"Failed to write query log: {e}")


def _write_query_log_in_thread(fields: Dict) -> None:
    try:
        _write_query_log(**fields)
    finally:
        connection.close()


def record_query(**fields) -> None:
    """Persist a QueryLog row; off the request path when QUERY_LOG_ASYNC."""
    if getattr(settings, 'QUERY_LOG_ASYNC', True):
        threading.Thread(target=_write_query_log_in_thread, args=(fields,), daemon=True).start()
    else:
        _write_query_log(**fields)


def _debug_chunks(results: List[RetrievalResult]) -> List[Dict]:
    return [
        {
            "id": r.id,
            "source": r.source,
            "page_start": r.page_start,
            "page_end": r.page_end,
            "score": round(r.score, 4),
            "vector_score": round(r.vector_score, 4),
            "rerank_score": round(r.rerank_score, 4) if r.rerank_score is not None else None,
        }
        for r in results
    ]


def answer_question(request: AskRequest) -> AnswerResponse:
    """
    Answer one question.

    Raises:
        QueryValidationError: Empty or oversized question
        GenerationError: The generation oracle failed
    """
    question = normalize_query(request.question)
    started = time.time()
    performance = {}

    # 1. Search
    search_start = time.time()
    try:
        outcome = search_with_details(
            question,
            manual_id=request.manual_id,
            tenant_id=request.tenant_id,
            top_k=request.top_k,
        )
    except QueryValidationError:
        raise
    except Exception as e:
        logger.exception(f"Search failed for tenant {request.tenant_id}, returning degraded answer")
        performance["search"] = round((time.time() - search_start) * 1000, 1)
        performance["total"] = round((time.time() - started) * 1000, 1)
        record_query(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            manual_id=request.manual_id,
            channel=request.channel,
            query_text=request.question,
            normalized_query=question,
            response_text=DEGRADED_ANSWER,
            quality_tier=QualityTier.LOW,
            retrieval_method=STRATEGY_DEGRADED,
        )
        audit_rag_query(
            request.tenant_id, request.user_id, request.channel,
            len(question), 0, STRATEGY_DEGRADED, QualityTier.LOW.value,
        )
        return AnswerResponse(
            answer=DEGRADED_ANSWER,
            citations=[],
            debug={
                "chunks": [],
                "signals": RetrievalSignals().to_dict(),
                "performance_ms": performance,
                "strategy": STRATEGY_DEGRADED,
                "error": str(e)[:200],
            },
        )
    performance["search"] = round((time.time() - search_start) * 1000, 1)
    if outcome.rerank_ms is not None:
        performance["rerank"] = round(outcome.rerank_ms, 1)

    # 2. Signals and style
    signals = compute_signals(outcome.results)
    style = select_style(signals)
    used = outcome.results[:getattr(settings, 'ANSWER_CONTEXT_CHUNKS', 6)]
    strategy = outcome.method

    # 3. Generation
    generation_start = time.time()
    if used:
        messages = shape_messages(question, used, style, request.history)
        answer, model_name = generate(messages)
    else:
        logger.info("No context available, returning default response")
        answer, model_name = NO_CONTEXT_ANSWER, ''
        strategy = STRATEGY_NO_CONTEXT
    performance["generation"] = round((time.time() - generation_start) * 1000, 1)

    # 4. Citations and scoring
    citations = [build_citation(r) for r in used]
    score = score_answer(answer, used)
    performance["total"] = round((time.time() - started) * 1000, 1)

    # 5. Log
    record_query(
        tenant_id=request.tenant_id,
        user_id=request.user_id,
        manual_id=request.manual_id,
        channel=request.channel,
        query_text=request.question,
        normalized_query=question,
        response_text=answer,
        quality_score=score.quality_score,
        quality_tier=score.quality_tier,
        claim_coverage=score.claim_coverage,
        numeric_flags=score.numeric_flags,
        top_score=signals.top_score,
        retrieval_method=strategy,
        model_name=model_name,
    )
    audit_rag_query(
        request.tenant_id, request.user_id, request.channel,
        len(question), len(citations), strategy, score.quality_tier,
    )

    logger.info(
        f"Answered question for tenant {request.tenant_id}: {len(citations)} citations, "
        f"mode={style.adaptive_mode}, tier={score.quality_tier}, {performance['total']}ms"
    )

    return AnswerResponse(
        answer=answer,
        citations=citations,
        debug={
            "chunks": _debug_chunks(used),
            "signals": signals.to_dict(),
            "adaptive_mode": style.adaptive_mode,
            "is_weak": style.is_weak,
            "performance_ms": performance,
            "strategy": strategy,
            "model": model_name,
            "quality": score.to_dict(),
        },
    )
