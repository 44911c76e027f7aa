"""
Embedding client.

Wraps the text-embedding oracle and turns text into fixed-length vectors.
Supports any OpenAI-compatible /embeddings endpoint (default,
text-embedding-3-small) or a local Ollama server.

The client never retries; callers decide retry policy. Callers also
truncate input with truncate_for_embedding() before calling embed().
"""
import logging
from typing import List, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 8000


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""
    pass


def truncate_for_embedding(text: str, limit: Optional[int] = None) -> str:
    """Apply the fixed character ceiling the oracle's token limit requires."""
    if limit is None:
        limit = getattr(settings, 'EMBEDDING_MAX_CHARS', DEFAULT_MAX_CHARS)
    return text[:limit]


class EmbeddingClient:
    """
    Thin client for the embedding oracle.

    One instance is shared by the batch worker threads; requests.Session is
    not used so each call is independent.
    """

    def __init__(self):
        self.provider = getattr(settings, 'EMBEDDING_PROVIDER', 'openai')
        self.model = getattr(settings, 'EMBEDDING_MODEL', 'text-embedding-3-small')
        self.dimensions = getattr(settings, 'EMBEDDING_DIMENSIONS', 1536)
        self.max_chars = getattr(settings, 'EMBEDDING_MAX_CHARS', DEFAULT_MAX_CHARS)
        self.timeout = getattr(settings, 'EMBEDDING_TIMEOUT', 60)

        if self.provider == 'ollama':
            self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
            self.api_key = ''
        else:
            self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
            self.api_key = getattr(settings, 'OPENAI_API_KEY', '')

    def embed(self, text: str) -> List[float]:
        """
        Generate an embedding vector for a single text.

        Raises:
            EmbeddingError: On empty or over-limit input, or oracle failure
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text")

        if len(text) > self.max_chars:
            raise EmbeddingError(
                f"Input of {len(text)} chars exceeds limit of {self.max_chars}; truncate first"
            )

        try:
            if self.provider == 'ollama':
                embedding = self._embed_ollama(text)
            else:
                embedding = self._embed_openai(text)
        except requests.exceptions.Timeout:
            raise EmbeddingError("Embedding API timed out")
        except requests.exceptions.ConnectionError:
            raise EmbeddingError(f"Cannot connect to embedding service at {self.base_url}")
        except requests.exceptions.RequestException as e:
            raise EmbeddingError(f"Request failed: {e}")

        if len(embedding) != self.dimensions:
            logger.warning(
                f"Expected {self.dimensions} dimensions, got {len(embedding)}"
            )

        return embedding

    def _embed_openai(self, text: str) -> List[float]:
        if not self.api_key:
            raise EmbeddingError("OPENAI_API_KEY not configured")

        response = requests.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model, "input": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

        if response.status_code != 200:
            error_detail = response.text[:500] if response.text else "No details"
            raise EmbeddingError(
                f"Embedding API returned {response.status_code}: {error_detail}"
            )

        data = response.json()
        items = data.get("data") or []
        if not items or not items[0].get("embedding"):
            raise EmbeddingError("No embedding in response")

        return items[0]["embedding"]

    def _embed_ollama(self, text: str) -> List[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )

        if response.status_code != 200:
            error_detail = response.text[:500] if response.text else "No details"
            raise EmbeddingError(
                f"Ollama API returned {response.status_code}: {error_detail}"
            )

        embedding = response.json().get("embedding")
        if not embedding:
            raise EmbeddingError("No embedding in response")

        return embedding


# Singleton instance
_client: Optional[EmbeddingClient] = None


def get_embedding_client() -> EmbeddingClient:
    """Get the shared embedding client (lazy initialization)."""
    global _client
    if _client is None:
        _client = EmbeddingClient()
    return _client


def reset_embedding_client():
    """Reset the cached client instance. Useful for testing."""
    global _client
    _client = None


def test_embedding_connection() -> bool:
    """
    Check that the embedding oracle answers.

    Returns:
        True if a probe embedding succeeds, False otherwise
    """
    try:
        get_embedding_client().embed("connection check")
        logger.info("Embedding service reachable")
        return True
    except EmbeddingError as e:
        logger.error(f"Embedding connection test failed: {e}")
        return False
