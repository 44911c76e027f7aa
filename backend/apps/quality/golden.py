"""
Golden-question probes.

Generates realistic troubleshooting questions from sampled manual content
with the generation oracle, then runs the first few through hybrid search.
A probe passes when search returns at least one result; a probe whose
search call raises is recorded as an error, not a failure.
"""
import re
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from apps.indexing.models import Chunk
from apps.indexing.retry import (
    GENERATION_RETRY_CONFIG,
    OracleResponseFormatError,
    RetryExhausted,
    retry_with_backoff,
)
from apps.rag.llm_client import LLMError, LLMMessage, get_llm_client
from apps.rag.retrieval import search

logger = logging.getLogger(__name__)

SAMPLE_CHUNKS = 5
SAMPLE_CHARS = 500
QUESTION_COUNT = 10
PROBE_COUNT = 5
PROBE_TOP_K = 5

QUESTION_PROMPT = """Based on this equipment service manual content, generate {count} high-quality
troubleshooting questions that a technician would realistically ask. Focus on:

1. Common failure modes
2. Electrical issues (fuses, power, connections)
3. Mechanical problems (motors, belts, sensors)
4. Equipment-specific features
5. Error codes and diagnostics

Return only a JSON array of objects with "question" and "expected_topics" fields.

Manual content:
{content}"""

STATUS_PASS = 'pass'
STATUS_FAIL = 'fail'
STATUS_ERROR = 'error'


class QuestionGenerationError(Exception):
    """Golden questions could not be produced."""
    pass


@dataclass
class GoldenQuestion:
    question: str
    expected_topics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {"question": self.question, "expected_topics": self.expected_topics}


@dataclass
class ProbeResult:
    question: str
    status: str
    search_results: int = 0
    avg_similarity: float = 0.0
    scores: List[float] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        result = {
            "question": self.question,
            "status": self.status,
            "search_results": self.search_results,
            "avg_similarity": self.avg_similarity,
            "scores": self.scores,
        }
        if self.error:
            result["error"] = self.error
        return result


def parse_questions(raw: str) -> List[GoldenQuestion]:
    """
    Parse the oracle's reply as a JSON array of question objects.

    Raises:
        OracleResponseFormatError: Not a JSON array of {question, expected_topics?}
    """
    text = (raw or '').strip()
    fenced = re.match(r'^```(?:json)?\s*(.*?)\s*```$', text, re.DOTALL)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise OracleResponseFormatError(f"Question reply is not JSON: {e}")

    if not isinstance(data, list):
        raise OracleResponseFormatError("Question reply must be a JSON array")

    questions = []
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("question"), str):
            raise OracleResponseFormatError("Each question must be an object with a 'question' string")
        topics = item.get("expected_topics") or []
        if not isinstance(topics, list) or not all(isinstance(t, str) for t in topics):
            raise OracleResponseFormatError("'expected_topics' must be a list of strings")
        if item["question"].strip():
            questions.append(GoldenQuestion(item["question"].strip(), topics))

    return questions


def sample_content(manual_id: str, tenant_id: str) -> str:
    contents = (
        Chunk.objects.filter(manual_id=manual_id, tenant_id=tenant_id)
        .order_by('page_start', 'created_at')
        .values_list('content', flat=True)[:SAMPLE_CHUNKS]
    )
    return '\n\n'.join(c[:SAMPLE_CHARS] for c in contents)


def generate_golden_questions(manual_id: str, tenant_id: str, count: int = QUESTION_COUNT) -> List[GoldenQuestion]:
    """
    Raises:
        QuestionGenerationError: No content, oracle failure or a malformed reply
    """
    content = sample_content(manual_id, tenant_id)
    if not content:
        raise QuestionGenerationError("No content found to generate questions from")

    messages = [LLMMessage(role="user", content=QUESTION_PROMPT.format(count=count, content=content))]

    try:
        client = get_llm_client()
        response = retry_with_backoff(
            func=lambda: client.chat(messages, temperature=0.4, max_tokens=800),
            config=GENERATION_RETRY_CONFIG,
            exceptions=(LLMError,),
        )
        questions = parse_questions(response.content)
    except RetryExhausted as e:
        raise QuestionGenerationError(f"Question generation failed: {e.last_exception}")
    except (LLMError, OracleResponseFormatError) as e:
        raise QuestionGenerationError(f"Question generation failed: {e}")

    logger.info(f"Generated {len(questions)} golden questions for {manual_id}")
    return questions


def probe_search(
    manual_id: str,
    tenant_id: str,
    questions: List[GoldenQuestion],
    limit: int = PROBE_COUNT,
) -> List[ProbeResult]:
    """Run the first `limit` questions through hybrid search."""
    results = []
    for golden in questions[:limit]:
        try:
            hits = search(golden.question, manual_id=manual_id, tenant_id=tenant_id, top_k=PROBE_TOP_K)
        except Exception as e:
            logger.warning(f"Search probe errored for {manual_id}: {e}")
            results.append(ProbeResult(golden.question, STATUS_ERROR, error=str(e)[:200]))
            continue

        scores = [round(h.score, 4) for h in hits]
        results.append(ProbeResult(
            question=golden.question,
            status=STATUS_PASS if hits else STATUS_FAIL,
            search_results=len(hits),
            avg_similarity=round(sum(scores) / len(scores), 2) if scores else 0.0,
            scores=scores,
        ))
    return results


def pass_rate(results: List[ProbeResult]) -> int:
    """Passes over probes attempted, as a percentage."""
    if not results:
        return 0
    passes = sum(1 for r in results if r.status == STATUS_PASS)
    return round(passes / len(results) * 100)
