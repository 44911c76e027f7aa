"""
Tests for the manual ingestion endpoints.
"""
import json
import pytest
from unittest.mock import MagicMock, patch

from django.test import Client

from apps.indexing.models import ChunkQueueItem
from apps.indexing.queue import FatalJobError
from apps.manuals.models import IngestionJob, IngestionJobKind, IngestionJobStatus

pytestmark = pytest.mark.django_db

PAGES = [
    {'page_number': 1, 'content': "The pinsetter main power supply feeds the deck motor. " * 4},
    {'page_number': 2, 'content': "Error E-21 means the sweep did not reach its home switch. " * 4},
]


def post(path, body):
    return Client().post(path, data=json.dumps(body), content_type='application/json')


# ============================================================================
# Ingestion trigger
# ============================================================================

class TestIngest:
    """Tests for POST /api/manuals/ingest."""

    def test_queues_chunks(self):
        """Should accept a parsed manual and queue its chunks."""
        response = post('/api/manuals/ingest', {"manual_id": "m-9", "tenant_id": "acme", "pages": PAGES})

        assert response.status_code == 202
        data = response.json()
        assert data["queued"] == 2
        assert ChunkQueueItem.objects.filter(manual_id='m-9').count() == 2

    def test_requires_content(self):
        """Should answer 400 without markdown or pages."""
        response = post('/api/manuals/ingest', {"manual_id": "m-9", "tenant_id": "acme"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_rejects_bad_pages(self):
        """Should answer 400 when pages is not a list."""
        response = post('/api/manuals/ingest', {"manual_id": "m-9", "tenant_id": "acme", "pages": "p1"})

        assert response.status_code == 400

    def test_invalid_json(self):
        """Should answer 400 for a body that is not JSON."""
        response = Client().post('/api/manuals/ingest', data="{nope", content_type='application/json')

        assert response.status_code == 400


# ============================================================================
# Per-manual endpoints
# ============================================================================

class TestManualEndpoints:
    """Tests for process, retry, reingest, figures and status."""

    def test_process_runs_one_batch(self, document):
        """Should run a batch and return its result."""
        batch = MagicMock()
        batch.to_dict.return_value = {"manual_id": "m-1", "succeeded": 3}

        with patch('apps.manuals.views.process_batch', return_value=batch) as mock_process:
            response = post('/api/manuals/m-1/process', {"tenant_id": "acme"})

        assert response.status_code == 200
        assert response.json()["succeeded"] == 3
        mock_process.assert_called_once_with('m-1', tenant_id='acme')

    def test_process_fatal_error(self, document):
        """Should answer 500 when the batch fails fatally."""
        with patch('apps.manuals.views.process_batch', side_effect=FatalJobError("lock failed")):
            response = post('/api/manuals/m-1/process', {"tenant_id": "acme"})

        assert response.status_code == 500
        assert response.json()["code"] == "JOB_FAILED"

    def test_other_tenant_is_rejected(self, document):
        """Should not act on another tenant's manual."""
        with patch('apps.manuals.views.process_batch') as mock_process:
            response = post('/api/manuals/m-1/process', {"tenant_id": "globex"})

        assert response.status_code == 400
        mock_process.assert_not_called()

    def test_retry_failed(self, document):
        """Should report reset and exhausted counts."""
        response = post('/api/manuals/m-1/retry-failed', {"tenant_id": "acme"})

        assert response.status_code == 200
        assert response.json()["reset"] == 0

    def test_reingest_queues_job(self, document):
        """Should queue one re-ingestion job and reuse it while active."""
        first = post('/api/manuals/m-1/reingest', {"tenant_id": "acme"})
        second = post('/api/manuals/m-1/reingest', {"tenant_id": "acme"})

        assert first.status_code == 202
        assert first.json()["job_id"] == second.json()["job_id"]
        job = IngestionJob.objects.get(kind=IngestionJobKind.REINGEST)
        assert job.status == IngestionJobStatus.QUEUED

    def test_figures_queue_job(self, document):
        """Should queue a figure enrichment job."""
        response = post('/api/manuals/m-1/figures/process', {"tenant_id": "acme"})

        assert response.status_code == 202
        assert IngestionJob.objects.filter(kind=IngestionJobKind.FIGURES).count() == 1

    def test_status(self, document):
        """Should return the processing snapshot."""
        response = Client().get('/api/manuals/m-1/status', {"tenant_id": "acme"})

        assert response.status_code == 200
        assert response.json()["manual_id"] == "m-1"

    def test_status_unknown_manual(self, db):
        """Should answer 404 for an unknown manual."""
        response = Client().get('/api/manuals/nope/status', {"tenant_id": "acme"})

        assert response.status_code == 404
