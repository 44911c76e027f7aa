"""
Shared fixtures.

Oracles, the channel layer and Redis are never reached from tests: backoff
sleeps are zeroed, progress events go nowhere and rate limiting is off.
"""
import pytest
from unittest.mock import patch

from django.conf import settings

from apps.indexing.embedder import reset_embedding_client
from apps.manuals.models import Document, ProcessingStatus
from apps.ops.ratelimit import reset_rate_limiter
from apps.rag.llm_client import reset_llm_client


@pytest.fixture(autouse=True)
def fresh_clients():
    reset_embedding_client()
    reset_llm_client()
    reset_rate_limiter()
    yield
    reset_embedding_client()
    reset_llm_client()
    reset_rate_limiter()


@pytest.fixture(autouse=True)
def no_backoff():
    with patch('apps.indexing.retry.calculate_backoff', return_value=0.0):
        yield


@pytest.fixture(autouse=True)
def no_channel_layer():
    with patch('apps.indexing.publisher.get_channel_layer', return_value=None):
        yield


@pytest.fixture(autouse=True)
def no_rate_limiting(monkeypatch):
    monkeypatch.setenv('DISABLE_RATE_LIMITING', 'true')


@pytest.fixture(autouse=True)
def fast_settings(settings):
    settings.QUERY_LOG_ASYNC = False
    settings.REINGEST_EMBED_PAUSE_SECONDS = 0
    settings.FIGURE_PAUSE_SECONDS = 0
    settings.ENABLE_RERANKER = False
    settings.CHUNK_MAX_CONCURRENCY = 5
    return settings


def fake_vector(value: float = 0.1):
    return [value] * settings.EMBEDDING_DIMENSIONS


class FakeEmbedder:
    """Embedding client double; raises for texts containing a marker."""

    def __init__(self, fail_marker=None, error=None):
        self.fail_marker = fail_marker
        self.error = error
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if self.fail_marker and self.fail_marker in text:
            raise self.error or RuntimeError("embedding service returned 400 invalid input")
        return fake_vector()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def document(db):
    doc = Document.objects.create(manual_id='m-1', tenant_id='acme', source_filename='pinsetter.pdf')
    ProcessingStatus.objects.create(document=doc, manual_id=doc.manual_id)
    return doc


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def vector():
    return fake_vector
