"""
Query embedding for search.

Questions are embedded with the same client and model as manual chunks so
query and chunk vectors live in the same space.
"""
import logging
import re
from typing import List

from apps.indexing.embedder import EmbeddingError, get_embedding_client, truncate_for_embedding
from apps.indexing.retry import EMBEDDING_RETRY_CONFIG, RetryExhausted, retry_with_backoff

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Args:
        query: Raw user question

    Returns:
        Normalized query string

    Raises:
        QueryValidationError: If query is empty after normalization or too long
    """
    if not query or not isinstance(query, str):
        raise QueryValidationError("Query cannot be empty")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    if len(normalized) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return normalized


def embed_query(query: str) -> List[float]:
    """
    Generate the embedding vector for a normalized query.

    Raises:
        EmbeddingError: If the embedding oracle keeps failing
    """
    client = get_embedding_client()
    text = truncate_for_embedding(query)

    try:
        embedding = retry_with_backoff(
            func=lambda: client.embed(text),
            config=EMBEDDING_RETRY_CONFIG,
            exceptions=(EmbeddingError,),
            on_retry=lambda attempt, err, backoff: logger.warning(
                f"Query embedding retry {attempt + 1}: {err}"
            )
        )
    except RetryExhausted as e:
        raise EmbeddingError(f"Query embedding failed after {e.attempts} attempts: {e.last_exception}")

    logger.debug(f"Generated query embedding with {len(embedding)} dimensions")
    return embedding
