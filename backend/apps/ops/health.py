"""
Health check endpoints for container probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import redis
import httpx
from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_postgres() -> tuple[str, bool]:
    """Check database connectivity."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except Exception as e:
        logger.error(f"Postgres health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis() -> tuple[str, bool]:
    """Check Redis connectivity."""
    try:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        client = redis.from_url(redis_url, socket_timeout=3)
        client.ping()
        return 'ok', True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_oracle() -> tuple[str, bool]:
    """
    Check the model endpoint (optional, degrades gracefully).

    A down oracle means degraded answers, not an unready service.
    """
    provider = getattr(settings, 'LLM_PROVIDER', 'openai')
    try:
        with httpx.Client(timeout=5.0) as client:
            if provider == 'ollama':
                base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
                response = client.get(f'{base_url}/api/version')
            else:
                base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
                api_key = getattr(settings, 'OPENAI_API_KEY', '')
                response = client.get(
                    f'{base_url}/models',
                    headers={'Authorization': f'Bearer {api_key}'} if api_key else {}
                )
            if response.status_code == 200:
                return 'ok', True
            return f'status: {response.status_code}', True
    except Exception as e:
        logger.warning(f"Oracle health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    """
    checks = {}
    all_ok = True

    status, ok = check_postgres()
    checks['postgres'] = status
    if not ok:
        all_ok = False

    # Redis backs rate limiting and the progress channel layer
    status, ok = check_redis()
    checks['redis'] = status
    if not ok:
        all_ok = False

    status, _ = check_oracle()
    checks['oracle'] = status

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
