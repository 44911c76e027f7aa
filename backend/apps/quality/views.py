"""
Quality check API view.
"""
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.manuals.validation import ValidationError, parse_json_body, require_fields
from apps.ops.audit import audit_quality_check
from apps.quality.service import run_quality_check

logger = logging.getLogger(__name__)


@csrf_exempt
@require_http_methods(["POST"])
def quality_check(request):
    """
    POST /api/quality/check

    Request body:
        {"manual_id": "m-123", "tenant_id": "acme", "test_type": "metrics"}
    """
    try:
        body = parse_json_body(request)
        require_fields(body, ["manual_id", "tenant_id"])
        test_type = body.get("test_type") or "all"
        report = run_quality_check(body["manual_id"], body["tenant_id"], test_type)
    except ValidationError as e:
        return JsonResponse({"error": str(e)}, status=400)

    audit_quality_check(
        request, body["manual_id"], body["tenant_id"], test_type, report["overall_score"]
    )
    return JsonResponse(report)
