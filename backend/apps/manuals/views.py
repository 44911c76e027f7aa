"""
Manual ingestion API views.

Every endpoint takes tenant_id explicitly in its JSON body (or query
string for GET) and checks it against the manual's owner.
"""
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.indexing.publisher import publish_progress
from apps.indexing.events import ProgressStage
from apps.indexing.queue import (
    FatalJobError,
    enqueue_manual,
    get_active_job,
    retry_failed_items,
    sync_processing_status,
)
from apps.indexing.worker import process_batch
from apps.manuals.models import Document, IngestionJob, IngestionJobKind, ProcessingStatus
from apps.manuals.validation import ValidationError, parse_json_body, require_fields
from apps.ops.audit import audit_ingestion_retried, audit_ingestion_started

logger = logging.getLogger(__name__)


def _error(message: str, code: str, status: int) -> JsonResponse:
    return JsonResponse({'error': message, 'code': code}, status=status)


def get_owned_document(manual_id: str, tenant_id: str) -> Document:
    """
    Raises:
        ValidationError: Unknown manual or tenant mismatch
    """
    document = Document.objects.filter(manual_id=manual_id).first()
    if document is None or document.tenant_id != tenant_id:
        raise ValidationError(f"Unknown manual: {manual_id}")
    return document


def _queue_job(document: Document, kind: str) -> IngestionJob:
    job = get_active_job(document, kind)
    if job is None:
        job = IngestionJob.objects.create(document=document, kind=kind)
    return job


@csrf_exempt
@require_http_methods(["POST"])
def ingest_manual(request):
    """
    Ingestion trigger.

    POST /api/manuals/ingest

    Request body:
        {
            "manual_id": "m-123",
            "tenant_id": "acme",
            "source_filename": "pinsetter.pdf",     // optional
            "parse_job_id": "job-9",                // optional
            "markdown": "### Page 1\\n...",         // or "pages": [{page_number, content}]
            "figures": [{figure_id, page_number, storage_path | image_url, caption_text}]
        }

    Returns 202 with {manual_id, job_id, queued, skipped_duplicates, figures_registered}.
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ['manual_id', 'tenant_id'])
        pages = body.get('pages')
        figures = body.get('figures')
        if pages is not None and not isinstance(pages, list):
            raise ValidationError("pages must be a list")
        if figures is not None and not isinstance(figures, list):
            raise ValidationError("figures must be a list")

        result = enqueue_manual(
            manual_id=body['manual_id'].strip(),
            tenant_id=body['tenant_id'].strip(),
            markdown=body.get('markdown'),
            pages=pages,
            figures=figures,
            source_filename=body.get('source_filename') or '',
            parse_job_id=body.get('parse_job_id'),
        )
    except ValidationError as e:
        return _error(str(e), 'VALIDATION_ERROR', 400)

    audit_ingestion_started(result.job_id, result.manual_id, body['tenant_id'], result.queued)
    publish_progress(
        result.manual_id, result.job_id, ProgressStage.QUEUED.value, 0,
        f"Queued {result.queued} chunks"
    )
    logger.info(f"Ingestion queued for {result.manual_id}: {result.queued} chunks")
    return JsonResponse(result.to_dict(), status=202)


@csrf_exempt
@require_http_methods(["POST"])
def process_manual(request, manual_id):
    """
    Run one batch step.

    POST /api/manuals/<manual_id>/process  {"tenant_id": "acme"}
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ['tenant_id'])
        get_owned_document(manual_id, body['tenant_id'])
        result = process_batch(manual_id, tenant_id=body['tenant_id'])
    except ValidationError as e:
        return _error(str(e), 'VALIDATION_ERROR', 400)
    except FatalJobError as e:
        logger.error(f"Batch for {manual_id} failed fatally: {e}")
        return _error(str(e), 'JOB_FAILED', 500)

    return JsonResponse(result.to_dict())


@csrf_exempt
@require_http_methods(["POST"])
def retry_failed(request, manual_id):
    """
    Re-drive failed queue items that still have retry budget.

    POST /api/manuals/<manual_id>/retry-failed  {"tenant_id": "acme"}
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ['tenant_id'])
        get_owned_document(manual_id, body['tenant_id'])
    except ValidationError as e:
        return _error(str(e), 'VALIDATION_ERROR', 400)

    result = retry_failed_items(manual_id)
    audit_ingestion_retried(manual_id, body['tenant_id'], result.reset, result.exhausted)
    return JsonResponse(result.to_dict())


@csrf_exempt
@require_http_methods(["POST"])
def reingest(request, manual_id):
    """
    Admin re-ingestion trigger; the worker runs the job.

    POST /api/manuals/<manual_id>/reingest  {"tenant_id": "acme"}
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ['tenant_id'])
        document = get_owned_document(manual_id, body['tenant_id'])
    except ValidationError as e:
        return _error(str(e), 'VALIDATION_ERROR', 400)

    job = _queue_job(document, IngestionJobKind.REINGEST)
    logger.info(f"Re-ingestion queued for {manual_id}: job {job.id}")
    return JsonResponse({'manual_id': manual_id, 'job_id': str(job.id), 'status': job.status}, status=202)


@csrf_exempt
@require_http_methods(["POST"])
def process_figures(request, manual_id):
    """
    Queue a figure enrichment run for the manual's pending figures.

    POST /api/manuals/<manual_id>/figures/process  {"tenant_id": "acme"}
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ['tenant_id'])
        document = get_owned_document(manual_id, body['tenant_id'])
    except ValidationError as e:
        return _error(str(e), 'VALIDATION_ERROR', 400)

    job = _queue_job(document, IngestionJobKind.FIGURES)
    logger.info(f"Figure enrichment queued for {manual_id}: job {job.id}")
    return JsonResponse({'manual_id': manual_id, 'job_id': str(job.id), 'status': job.status}, status=202)


@csrf_exempt
@require_http_methods(["GET"])
def manual_status(request, manual_id):
    """
    ProcessingStatus snapshot, recomputed from the queue first.

    GET /api/manuals/<manual_id>/status?tenant_id=acme
    """
    try:
        get_owned_document(manual_id, (request.GET.get('tenant_id') or '').strip())
    except ValidationError as e:
        return _error(str(e), 'NOT_FOUND', 404)

    status = sync_processing_status(manual_id)
    if status is None:
        status = ProcessingStatus.objects.filter(manual_id=manual_id).first()
    if status is None:
        return _error(f"No processing status for {manual_id}", 'NOT_FOUND', 404)

    return JsonResponse(status.to_dict())
