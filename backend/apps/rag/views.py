"""
RAG API views.

Provides endpoints for:
- Hybrid search (ranked chunks and figures for a query)
- Ask endpoint (full RAG with answer generation)
"""
import logging

from django.http import JsonResponse
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.utils.decorators import method_decorator

from apps.manuals.validation import ValidationError, parse_json_body, require_fields
from apps.ops.ratelimit import check_ask_rate_limit, rate_limited
from apps.rag.embeddings import QueryValidationError
from apps.rag.orchestrator import AskRequest, GenerationError, answer_question
from apps.rag.retrieval import SearchConfig, search_with_details

logger = logging.getLogger(__name__)

MAX_TOP_K = 50


def _optional_string(body: dict, name: str):
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value.strip() or None


def _top_k(body: dict):
    top_k = body.get("top_k")
    if top_k is None:
        return None
    if not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1 or top_k > MAX_TOP_K:
        raise ValidationError(f"top_k must be an integer between 1 and {MAX_TOP_K}")
    return top_k


def _threshold(body: dict, name: str):
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0 <= value <= 1:
        raise ValidationError(f"{name} must be a number between 0 and 1")
    return float(value)


@method_decorator(csrf_exempt, name='dispatch')
class SearchView(View):
    """
    POST /api/rag/search

    Request body:
        {
            "query": "no power to the pinsetter",
            "tenant_id": "acme",
            "manual_id": "m-123",          // optional
            "top_k": 10,                   // optional
            "vector_threshold": 0.3,       // optional
            "text_threshold": 0.05         // optional
        }

    Response:
        {"query": "...", "method": "hybrid", "count": 2, "results": [...]}
    """

    def post(self, request):
        try:
            body = parse_json_body(request)
            require_fields(body, ["query", "tenant_id"])
            config = SearchConfig.from_settings(
                vector_threshold=_threshold(body, "vector_threshold"),
                text_threshold=_threshold(body, "text_threshold"),
            )
            outcome = search_with_details(
                body["query"],
                manual_id=_optional_string(body, "manual_id"),
                tenant_id=body["tenant_id"].strip(),
                top_k=_top_k(body),
                config=config,
            )
        except (ValidationError, QueryValidationError) as e:
            return JsonResponse({"error": str(e)}, status=400)

        return JsonResponse({
            "query": body["query"],
            "method": outcome.method,
            "count": len(outcome.results),
            "results": [r.to_dict() for r in outcome.results],
        })


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(rate_limited(check_ask_rate_limit, endpoint='ask'), name='dispatch')
class AskView(View):
    """
    POST /api/rag/ask

    Full RAG pipeline: search + adaptive style + generation.

    Request body:
        {
            "question": "Error E-21 after reset, what now?",
            "tenant_id": "acme",
            "user_id": "tech-7",            // optional
            "manual_id": "m-123",           // optional
            "history": [{"role": "user", "content": "..."}],  // optional
            "top_k": 10                     // optional
        }

    Response:
        {
            "answer": "...",
            "citations": [{"page_start": 12, "page_end": 12, "manual_id": "m-123", ...}],
            "debug": {"chunks": [...], "signals": {...}, "performance_ms": {...}, "strategy": "hybrid"}
        }
    """

    def post(self, request):
        try:
            body = parse_json_body(request)
            require_fields(body, ["question", "tenant_id"])
            history = body.get("history") or []
            if not isinstance(history, list) or not all(isinstance(t, dict) for t in history):
                raise ValidationError("history must be a list of {role, content} objects")

            ask = AskRequest(
                question=body["question"],
                tenant_id=body["tenant_id"].strip(),
                user_id=_optional_string(body, "user_id"),
                manual_id=_optional_string(body, "manual_id"),
                history=history,
                channel='web',
                top_k=_top_k(body),
            )
            response = answer_question(ask)
        except (ValidationError, QueryValidationError) as e:
            return JsonResponse({"error": str(e)}, status=400)
        except GenerationError as e:
            logger.error(f"Answer generation failed: {e}")
            response = JsonResponse(
                {
                    "error": "Answer generation temporarily unavailable",
                    "code": "GENERATION_FAILED",
                    "retryable": e.retryable,
                },
                status=503
            )
            if e.retryable:
                response["Retry-After"] = "30"
            return response

        return JsonResponse(response.to_dict())
