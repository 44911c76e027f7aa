"""
Cross-Encoder Reranker module for hybrid search.

Reranks merged search candidates using a cross-encoder model to improve
relevance. Applied by search() when the candidate count exceeds
SEARCH_RERANK_MIN_CANDIDATES.

Key features:
- Uses cross-encoder/ms-marco-MiniLM-L-6-v2 model
- Lazy model loading (loads on first use)
- Automatic GPU/CPU detection
- Scores squashed to 0-1 so they compare with vector similarities
- Batch scoring for efficiency

Candidates are any objects with a `content` string and a writable
`rerank_score` attribute (RetrievalResult in practice).
"""
import math
import logging
import time
from typing import List, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)

# Cross-encoder model name
CROSS_ENCODER_MODEL = "cross-encoder/ms-marco-MiniLM-L-6-v2"

# Maximum candidate text length to send to cross-encoder (characters)
# ~1500 chars is roughly 256-512 tokens for this model
MAX_CHUNK_TEXT_LENGTH = 1500


def sigmoid(score: float) -> float:
    """Map a raw cross-encoder logit onto 0-1."""
    if score >= 0:
        return 1.0 / (1.0 + math.exp(-score))
    z = math.exp(score)
    return z / (1.0 + z)


class CrossEncoderReranker:
    """
    Reranker using a cross-encoder model for semantic relevance scoring.

    The cross-encoder scores (query, text) pairs directly,
    providing more accurate relevance than vector similarity alone.
    """

    _instance: Optional['CrossEncoderReranker'] = None
    _model = None
    _device: Optional[str] = None

    def __new__(cls):
        """Singleton pattern for model caching."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def _load_model(self):
        """
        Lazy load the cross-encoder model.

        Uses GPU if available, otherwise CPU.
        Model is cached in HuggingFace cache directory.
        """
        if self._model is not None:
            return

        import torch
        from sentence_transformers import CrossEncoder

        if torch.cuda.is_available():
            self._device = "cuda"
            logger.info("CrossEncoder: Using CUDA GPU")
        else:
            self._device = "cpu"
            logger.info("CrossEncoder: Using CPU")

        model_name = getattr(settings, 'RERANKER_MODEL', CROSS_ENCODER_MODEL)
        logger.info(f"Loading cross-encoder model: {model_name}")
        start_time = time.time()

        self._model = CrossEncoder(
            model_name,
            max_length=512,  # Model max sequence length
            device=self._device,
        )

        load_time_ms = (time.time() - start_time) * 1000
        logger.info(f"Cross-encoder model loaded in {load_time_ms:.0f}ms")

    def _truncate_text(self, text: str, max_length: int = MAX_CHUNK_TEXT_LENGTH) -> str:
        """
        Truncate text to avoid excessive token usage.

        Args:
            text: Full candidate text
            max_length: Maximum character length

        Returns:
            Truncated text
        """
        if len(text) <= max_length:
            return text

        # Truncate at word boundary if possible
        truncated = text[:max_length]
        last_space = truncated.rfind(' ')

        if last_space > max_length * 0.7:
            truncated = truncated[:last_space]

        return truncated.rstrip()

    def rerank(self, query: str, candidates: List, top_n: Optional[int] = None) -> List:
        """
        Rerank candidates using cross-encoder scores.

        Args:
            query: The search query
            candidates: Objects with `content` and `rerank_score`
            top_n: Number of top results to return (default: all)

        Returns:
            Candidates sorted by rerank score (descending)
        """
        if not candidates:
            return candidates

        self._load_model()

        if self._model is None:
            raise RuntimeError("Cross-encoder model not loaded")

        start_time = time.time()

        pairs = [
            (query, self._truncate_text(candidate.content))
            for candidate in candidates
        ]

        scores = self._model.predict(pairs, show_progress_bar=False)

        for candidate, score in zip(candidates, scores):
            candidate.rerank_score = sigmoid(float(score))

        sorted_candidates = sorted(
            candidates,
            key=lambda c: c.rerank_score if c.rerank_score is not None else float('-inf'),
            reverse=True,
        )

        rerank_time_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"Reranked {len(candidates)} candidates in {rerank_time_ms:.0f}ms"
        )

        if top_n is not None:
            return sorted_candidates[:top_n]

        return sorted_candidates


# Global reranker instance (lazy loaded)
_reranker: Optional[CrossEncoderReranker] = None


def get_reranker() -> CrossEncoderReranker:
    """Get the global reranker instance."""
    global _reranker
    if _reranker is None:
        _reranker = CrossEncoderReranker()
    return _reranker


def rerank_candidates(
    query: str,
    candidates: List,
    top_n: Optional[int] = None,
) -> Tuple[List, float]:
    """
    Convenience function to rerank candidates with timing.

    Returns:
        Tuple of (reranked candidates, latency in ms)

    Raises:
        Exception: If reranking fails
    """
    start_time = time.time()

    reranker = get_reranker()
    reranked = reranker.rerank(query, candidates, top_n)

    latency_ms = (time.time() - start_time) * 1000

    return reranked, latency_ms


def is_reranker_enabled() -> bool:
    """Check if reranker is enabled at server level."""
    return getattr(settings, 'ENABLE_RERANKER', False)
