"""
Request validation shared by the HTTP entry points.

Malformed input is rejected immediately with ValidationError and is never
retried.
"""
import json
from typing import Any, Dict, Iterable

from django.http import HttpRequest


class ValidationError(Exception):
    """Raised when a request is missing required fields or is malformed."""
    pass


def parse_json_body(request: HttpRequest) -> Dict[str, Any]:
    """Decode a JSON object body or raise ValidationError."""
    try:
        body = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def require_fields(body: Dict[str, Any], fields: Iterable[str]) -> None:
    """Ensure each field is present and a non-empty string."""
    missing = [
        name for name in fields
        if not isinstance(body.get(name), str) or not body.get(name).strip()
    ]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
