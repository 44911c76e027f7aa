"""
Redis-backed rate limiting for the ask endpoint and the SMS webhook.

Each caller gets a token bucket keyed by scope, tenant and caller (never
globally); the refill and the take happen in one Lua script so concurrent
requests cannot overdraw a bucket. When Redis is unreachable the limiter
fails open.
"""
import os
import json
import time
import logging
import functools
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis
from django.conf import settings
from django.http import JsonResponse

from apps.ops.audit import audit_ratelimit_exceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketPolicy:
    capacity: int  # burst size
    refill_rate: float  # tokens per second


POLICIES: Dict[str, BucketPolicy] = {
    'ask': BucketPolicy(capacity=5, refill_rate=0.2),  # 12/minute sustained
    'sms': BucketPolicy(capacity=3, refill_rate=0.1),  # 6/minute sustained
}

BUCKET_TTL_SECONDS = 3600

# KEYS[1] bucket hash; ARGV capacity, refill rate, now, ttl.
# Returns {allowed, tokens left, seconds until the next token}.
TAKE_TOKEN_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + (now - ts) * rate)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))

local wait = 0
if allowed == 0 then
    wait = math.ceil((1 - tokens) / rate)
end
return {allowed, math.floor(tokens), wait}
"""


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int] = None  # seconds to wait if blocked


_client: Optional[redis.Redis] = None
_take_token = None


def get_redis_client() -> redis.Redis:
    global _client
    if _client is None:
        redis_url = getattr(settings, 'REDIS_URL', 'redis://redis:6379/0')
        _client = redis.from_url(redis_url, decode_responses=True)
    return _client


def reset_rate_limiter():
    """Drop the cached client and script (tests, settings changes)."""
    global _client, _take_token
    _client = None
    _take_token = None


def is_rate_limiting_disabled() -> bool:
    """Check if rate limiting is disabled (dev mode only)."""
    return os.getenv('DISABLE_RATE_LIMITING', '').lower() in ('true', '1', 'yes')


def check_rate_limit(scope: str, key: str) -> RateLimitResult:
    """
    Take one token from the bucket of `key` under `scope`.

    Allows the request when limiting is disabled or Redis fails.
    """
    global _take_token
    policy = POLICIES[scope]

    if is_rate_limiting_disabled():
        return RateLimitResult(allowed=True, limit=policy.capacity, remaining=policy.capacity)

    try:
        if _take_token is None:
            _take_token = get_redis_client().register_script(TAKE_TOKEN_SCRIPT)
        allowed, remaining, wait = _take_token(
            keys=[f"ratelimit:{scope}:{key}"],
            args=[policy.capacity, policy.refill_rate, time.time(), BUCKET_TTL_SECONDS],
        )
    except redis.RedisError as e:
        logger.error(f"Redis error in rate limiting, allowing request: {e}")
        return RateLimitResult(allowed=True, limit=policy.capacity, remaining=policy.capacity)

    return RateLimitResult(
        allowed=bool(allowed),
        limit=policy.capacity,
        remaining=int(remaining),
        retry_after=int(wait) or None,
    )


def check_ask_rate_limit(key: str) -> RateLimitResult:
    """Key is tenant:user."""
    return check_rate_limit('ask', key)


def check_sms_rate_limit(key: str) -> RateLimitResult:
    """Key is tenant:phone."""
    return check_rate_limit('sms', key)


def add_rate_limit_headers(response, result: RateLimitResult):
    response['X-RateLimit-Limit'] = str(result.limit)
    response['X-RateLimit-Remaining'] = str(result.remaining)
    return response


def rate_limit_response(result: RateLimitResult) -> JsonResponse:
    """Generate a 429 rate limit exceeded response."""
    retry_after = result.retry_after or 60
    response = JsonResponse(
        {'error': 'Rate limit exceeded', 'code': 'RATE_LIMITED', 'retryAfter': retry_after},
        status=429
    )
    response['Retry-After'] = str(retry_after)
    return add_rate_limit_headers(response, result)


def tenant_user_key(request, *args, **kwargs) -> Optional[str]:
    """Rate limit key "tenant:user" read from a JSON request body."""
    try:
        body = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict) or not body.get('tenant_id'):
        return None
    return f"{body['tenant_id']}:{body.get('user_id') or 'anonymous'}"


def rate_limited(
    check_func: Callable[[str], RateLimitResult],
    key_func: Callable[..., Optional[str]] = tenant_user_key,
    endpoint: str = '',
    response_func: Optional[Callable[[RateLimitResult], object]] = None
):
    """
    Decorator to apply rate limiting to a view.

    Usage:
        @rate_limited(check_ask_rate_limit, endpoint='ask')
        def ask(request):
            ...

    Args:
        check_func: Function that takes the key and returns RateLimitResult
        key_func: Builds the key from the request; None skips limiting and
            leaves validation to the view
        endpoint: Name recorded in the audit event
        response_func: Builds the blocked response (defaults to JSON 429)
    """
    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapper(request, *args, **kwargs):
            key = key_func(request, *args, **kwargs)
            if not key:
                return view_func(request, *args, **kwargs)

            result = check_func(key)

            if not result.allowed:
                logger.warning(f"Rate limit exceeded for {endpoint or 'request'} key {key}")
                audit_ratelimit_exceeded(request, endpoint, key, result.limit)
                if response_func is not None:
                    return response_func(result)
                return rate_limit_response(result)

            response = view_func(request, *args, **kwargs)
            add_rate_limit_headers(response, result)
            return response

        return wrapper
    return decorator
