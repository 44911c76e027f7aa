"""
Hybrid search over manual chunks and figures.

Combines:
(a) pgvector cosine similarity over chunk and figure embeddings, kept above
    SEARCH_VECTOR_THRESHOLD
(b) PostgreSQL full-text rank over chunk content and figure text, kept
    above the lower SEARCH_TEXT_THRESHOLD
(c) an optional cross-encoder rerank when there are more candidates than
    SEARCH_RERANK_MIN_CANDIDATES

Candidates are deduplicated by (source, id), boosted for connector/pin/
voltage tokens and diagram questions, optionally diversified with MMR, then
sorted by rerank_score when present else vector_score. An empty list is a
valid result.

tenant_id and manual_id are applied as explicit filters on every query.
"""
import re
import logging
import operator
from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Dict, List, Optional, Set, Tuple

from django.conf import settings
from django.contrib.postgres.search import SearchQuery, SearchRank, SearchVector
from pgvector.django import CosineDistance

from apps.indexing.embedder import EmbeddingError
from apps.indexing.models import Chunk, Figure
from apps.rag.embeddings import embed_query, normalize_query
from apps.rag.reranker import is_reranker_enabled, rerank_candidates

logger = logging.getLogger(__name__)

# Text search widens to the full candidate budget below this many vector hits
TEXT_FALLBACK_MIN_HITS = 3

KEYWORD_BOOST = 0.05
KEYWORD_BOOST_CAP = 0.15
FIGURE_QUERY_BOOST = 0.20

# Maximum snippet length for citations
SNIPPET_MAX_LENGTH = 200

TOKEN_PATTERNS = [
    re.compile(r'\b[A-Z]{1,3}\d{1,4}\b'),                    # connectors: J12, CN3, P1
    re.compile(r'\bpin\s*#?\s*\d+\b', re.IGNORECASE),        # pin 3
    re.compile(r'\b\d+(?:\.\d+)?\s*(?:v|vac|vdc|ma|a|ohms?|hz|w)\b', re.IGNORECASE),  # 12V
    re.compile(r'\b[A-Z]{1,2}-\d{1,4}\b'),                   # error codes: E-21
]
FIGURE_QUERY_PATTERN = re.compile(
    r'\b(diagram|figure|fig|schematic|wiring|picture|image|drawing|illustration|photo)s?\b',
    re.IGNORECASE,
)

STOPWORDS = {
    'a', 'an', 'and', 'are', 'at', 'be', 'but', 'by', 'can', 'do', 'does', 'for',
    'from', 'how', 'i', 'if', 'in', 'is', 'it', 'my', 'of', 'on', 'or', 'should',
    'that', 'the', 'this', 'to', 'what', 'when', 'where', 'which', 'why', 'with',
}
WORD_PATTERN = re.compile(r'[a-z0-9]+')


@dataclass
class SearchConfig:
    """Runtime search knobs; defaults come from settings."""
    vector_threshold: float = 0.30
    text_threshold: float = 0.05
    candidate_k: int = 60
    top_k: int = 10
    rerank_min_candidates: int = 3
    enable_rerank: bool = True
    enable_mmr: bool = False
    mmr_lambda: float = 0.7
    include_figures: bool = True

    @classmethod
    def from_settings(cls, **overrides) -> 'SearchConfig':
        config = cls(
            vector_threshold=getattr(settings, 'SEARCH_VECTOR_THRESHOLD', 0.30),
            text_threshold=getattr(settings, 'SEARCH_TEXT_THRESHOLD', 0.05),
            candidate_k=getattr(settings, 'SEARCH_CANDIDATE_K', 60),
            top_k=getattr(settings, 'SEARCH_TOP_K', 10),
            rerank_min_candidates=getattr(settings, 'SEARCH_RERANK_MIN_CANDIDATES', 3),
            enable_rerank=getattr(settings, 'ENABLE_RERANKER', True),
            enable_mmr=getattr(settings, 'SEARCH_ENABLE_MMR', False),
            mmr_lambda=getattr(settings, 'SEARCH_MMR_LAMBDA', 0.7),
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **overrides)


@dataclass
class RetrievalResult:
    """One ranked search hit."""
    content: str
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    vector_score: float = 0.0
    rerank_score: Optional[float] = None
    menu_path: Optional[str] = None
    source: str = 'chunk'  # chunk | figure
    id: str = ''
    manual_id: str = ''
    content_type: str = 'text'
    text_score: float = 0.0
    section_heading: Optional[str] = None

    @property
    def score(self) -> float:
        """Ranking score: rerank_score when present, else vector_score."""
        return self.rerank_score if self.rerank_score is not None else self.vector_score

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source, self.id)

    def to_dict(self) -> dict:
        result = {
            "id": self.id,
            "source": self.source,
            "manual_id": self.manual_id,
            "content": self.content,
            "page_start": self.page_start,
            "page_end": self.page_end,
            "menu_path": self.menu_path,
            "content_type": self.content_type,
            "vector_score": round(self.vector_score, 4),
            "text_score": round(self.text_score, 4),
        }
        if self.rerank_score is not None:
            result["rerank_score"] = round(self.rerank_score, 4)
        return result


@dataclass
class SearchOutcome:
    """Results plus how they were produced."""
    results: List[RetrievalResult] = field(default_factory=list)
    method: str = 'hybrid'
    candidates: int = 0
    reranked: bool = False
    rerank_ms: Optional[float] = None


def create_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """
    Create a deterministic snippet from result text.

    Breaks at a word boundary when one is reasonably close to the limit.
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.7:
        truncated = truncated[:last_space]

    return truncated.rstrip()


def content_words(text: str) -> Set[str]:
    """Lower-cased words of three or more characters, minus stopwords."""
    return {
        w for w in WORD_PATTERN.findall((text or '').lower())
        if len(w) >= 3 and w not in STOPWORDS
    }


def extract_query_tokens(query: str) -> List[str]:
    """Connector, pin, voltage and error-code tokens found in a query."""
    tokens = []
    for pattern in TOKEN_PATTERNS:
        for match in pattern.finditer(query):
            token = re.sub(r'\s+', ' ', match.group(0)).lower()
            if token not in tokens:
                tokens.append(token)
    return tokens


def is_figure_query(query: str) -> bool:
    return bool(FIGURE_QUERY_PATTERN.search(query))


def _scope(queryset, manual_id: Optional[str], tenant_id: Optional[str]):
    if tenant_id:
        queryset = queryset.filter(tenant_id=tenant_id)
    if manual_id:
        queryset = queryset.filter(manual_id=manual_id)
    return queryset


def _chunk_result(chunk: Chunk, **scores) -> RetrievalResult:
    return RetrievalResult(
        content=chunk.content,
        page_start=chunk.page_start,
        page_end=chunk.page_end,
        menu_path=chunk.menu_path,
        source='chunk',
        id=str(chunk.id),
        manual_id=chunk.manual_id,
        content_type='text',
        section_heading=chunk.section_heading,
        **scores
    )


def _figure_result(figure: Figure, **scores) -> RetrievalResult:
    text = figure.embedding_text or ' '.join(
        p for p in (figure.caption_text, figure.ocr_text) if p
    )
    return RetrievalResult(
        content=text,
        page_start=figure.page_number,
        page_end=figure.page_number,
        source='figure',
        id=str(figure.id),
        manual_id=figure.manual_id,
        content_type=figure.figure_type or 'figure',
        **scores
    )


def vector_search(
    embedding: List[float],
    manual_id: Optional[str],
    tenant_id: Optional[str],
    config: SearchConfig,
) -> List[RetrievalResult]:
    """Cosine similarity over chunk and figure embeddings above the threshold."""
    results = []

    chunks = _scope(Chunk.objects.filter(embedding__isnull=False), manual_id, tenant_id)
    chunks = chunks.annotate(
        distance=CosineDistance('embedding', embedding)
    ).order_by('distance')[:config.candidate_k]

    for chunk in chunks:
        similarity = 1.0 - float(chunk.distance)
        if similarity >= config.vector_threshold:
            results.append(_chunk_result(chunk, vector_score=similarity))

    if config.include_figures:
        figures = _scope(Figure.objects.filter(embedding__isnull=False), manual_id, tenant_id)
        figures = figures.annotate(
            distance=CosineDistance('embedding', embedding)
        ).order_by('distance')[:max(1, config.candidate_k // 4)]

        for figure in figures:
            similarity = 1.0 - float(figure.distance)
            if similarity >= config.vector_threshold:
                results.append(_figure_result(figure, vector_score=similarity))

    return results


def _text_query(query: str) -> Optional[SearchQuery]:
    """OR together the content words so a partial lexical match still ranks."""
    words = sorted(content_words(query)) + extract_query_tokens(query)
    if not words:
        return None
    return reduce(operator.or_, [SearchQuery(w, config='english') for w in words])


def text_search(
    query: str,
    manual_id: Optional[str],
    tenant_id: Optional[str],
    config: SearchConfig,
    limit: Optional[int] = None,
) -> List[RetrievalResult]:
    """Full-text rank over chunk content and figure text above the threshold."""
    search_query = _text_query(query)
    if search_query is None:
        return []
    limit = limit or config.candidate_k

    results = []

    chunks = _scope(Chunk.objects.all(), manual_id, tenant_id).annotate(
        rank=SearchRank(SearchVector('content', config='english'), search_query)
    ).filter(rank__gte=config.text_threshold).order_by('-rank')[:limit]

    for chunk in chunks:
        rank = float(chunk.rank)
        # Lexical-only hits are ranked by their text rank
        results.append(_chunk_result(chunk, vector_score=rank, text_score=rank))

    if config.include_figures:
        figure_vector = SearchVector('caption_text', 'ocr_text', 'embedding_text', config='english')
        figures = _scope(Figure.objects.all(), manual_id, tenant_id).annotate(
            rank=SearchRank(figure_vector, search_query)
        ).filter(rank__gte=config.text_threshold).order_by('-rank')[:max(1, limit // 4)]

        for figure in figures:
            rank = float(figure.rank)
            results.append(_figure_result(figure, vector_score=rank, text_score=rank))

    return results


def merge_results(*groups: List[RetrievalResult]) -> List[RetrievalResult]:
    """
    Deduplicate by (source, id), keeping the best score of each kind.

    A result found by both searches keeps its vector similarity and gains
    its text rank.
    """
    merged: Dict[Tuple[str, str], RetrievalResult] = {}
    for group in groups:
        for result in group:
            existing = merged.get(result.key)
            if existing is None:
                merged[result.key] = replace(result)
                continue
            existing.vector_score = max(existing.vector_score, result.vector_score)
            existing.text_score = max(existing.text_score, result.text_score)
    return list(merged.values())


def apply_boosts(query: str, results: List[RetrievalResult]) -> List[RetrievalResult]:
    """Keyword token boost (capped) and figure boost for diagram questions."""
    tokens = extract_query_tokens(query)
    figure_query = is_figure_query(query)

    for result in results:
        boost = 0.0
        if tokens:
            content = re.sub(r'\s+', ' ', result.content.lower())
            matches = sum(1 for token in tokens if token in content)
            boost += min(KEYWORD_BOOST_CAP, matches * KEYWORD_BOOST)
        if figure_query and result.source == 'figure':
            boost += FIGURE_QUERY_BOOST
        if boost:
            result.vector_score = min(1.0, result.vector_score + boost)

    return results


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def mmr_select(
    results: List[RetrievalResult],
    k: int,
    lambda_: float = 0.7,
) -> List[RetrievalResult]:
    """Maximal marginal relevance with Jaccard word overlap as similarity."""
    remaining = sorted(results, key=lambda r: r.score, reverse=True)
    words = {r.key: content_words(r.content) for r in remaining}
    selected: List[RetrievalResult] = []

    while remaining and len(selected) < k:
        best, best_value = None, float('-inf')
        for candidate in remaining:
            redundancy = max(
                (jaccard(words[candidate.key], words[s.key]) for s in selected),
                default=0.0,
            )
            value = lambda_ * candidate.score - (1 - lambda_) * redundancy
            if value > best_value:
                best, best_value = candidate, value
        selected.append(best)
        remaining.remove(best)

    return selected


def search_with_details(
    query: str,
    manual_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    top_k: Optional[int] = None,
    config: Optional[SearchConfig] = None,
) -> SearchOutcome:
    """
    Run the full hybrid pipeline.

    Raises:
        QueryValidationError: Empty or oversized query
        DatabaseError: Store failures propagate to the caller
    """
    config = config or SearchConfig.from_settings()
    top_k = top_k or config.top_k
    query = normalize_query(query)
    outcome = SearchOutcome()

    try:
        embedding = embed_query(query)
        vector_hits = vector_search(embedding, manual_id, tenant_id, config)
    except EmbeddingError as e:
        logger.warning(f"Vector search unavailable, using text search only: {e}")
        vector_hits = []
        outcome.method = 'text_only'

    text_limit = config.candidate_k if len(vector_hits) < TEXT_FALLBACK_MIN_HITS else config.candidate_k // 2
    text_hits = text_search(query, manual_id, tenant_id, config, limit=max(1, text_limit))

    candidates = apply_boosts(query, merge_results(vector_hits, text_hits))
    outcome.candidates = len(candidates)

    if not candidates:
        logger.info(f"No search candidates for manual={manual_id} tenant={tenant_id}")
        return outcome

    if config.enable_mmr:
        candidates = mmr_select(candidates, top_k * 2, config.mmr_lambda)

    if (config.enable_rerank and is_reranker_enabled()
            and len(candidates) > config.rerank_min_candidates):
        try:
            candidates, outcome.rerank_ms = rerank_candidates(query, candidates)
            outcome.reranked = True
        except Exception as e:
            logger.warning(f"Reranking failed, falling back to vector order: {e}")
            for candidate in candidates:
                candidate.rerank_score = None

    outcome.results = sorted(candidates, key=lambda r: r.score, reverse=True)[:top_k]
    if outcome.reranked:
        outcome.method += '+rerank'

    logger.info(
        f"Search returned {len(outcome.results)}/{outcome.candidates} results "
        f"(method={outcome.method}, manual={manual_id})"
    )
    return outcome


def search(
    query: str,
    manual_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    top_k: Optional[int] = None,
    config: Optional[SearchConfig] = None,
) -> List[RetrievalResult]:
    """Hybrid search; see search_with_details."""
    return search_with_details(query, manual_id, tenant_id, top_k, config).results
