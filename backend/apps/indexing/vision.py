"""
Vision oracle client for figure enrichment.

Sends a figure image to an OpenAI-compatible vision model with a
structured extraction prompt and parses the reply into VisionExtraction.
Replies that are not valid JSON in the expected shape raise
OracleResponseFormatError; they are never passed on half-parsed.
"""
import re
import json
import base64
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import httpx
from django.conf import settings

from apps.indexing.retry import OracleResponseFormatError, TransientOracleError

logger = logging.getLogger(__name__)

FIGURE_TYPES = {'diagram', 'photo', 'table', 'circuit', 'schematic', 'flowchart', 'other'}
COMPLEXITY_LEVELS = {'low', 'medium', 'high'}
CONFIDENCE_LEVELS = {'high', 'medium', 'low', 'none'}

IMAGE_QUALITY_SCORES = {
    'sharp': 1.0,
    'acceptable': 0.75,
    'blurry': 0.5,
}
DEFAULT_QUALITY_SCORE = 0.25

VISION_PROMPT = """Analyze this figure from an equipment service manual.
Return a single JSON object with exactly these keys:
- "figure_type": one of diagram, photo, table, circuit, schematic, flowchart, other
- "ocr_text": all visible text, verbatim (labels, part numbers, voltages, warnings)
- "caption": one or two sentences describing what the figure shows
- "detected_components": array of {"type", "label", "value"} for part numbers,
  measurements with units, callouts, wire colors, connectors and safety symbols
- "semantic_tags": array of category keywords (electrical, mechanical,
  troubleshooting, assembly, safety, ...)
- "entities": array of {"type", "value"} for part_number, model_number,
  measurement and specification entities
- "technical_complexity": low, medium or high
- "image_quality": sharp, acceptable, blurry or unreadable
- "confidence": high, medium, low or none (none if no text could be read)
Return JSON only, no commentary."""


class VisionError(Exception):
    """The vision oracle rejected the request."""
    pass


class VisionTransientError(VisionError, TransientOracleError):
    """The vision oracle call failed in a retryable way."""
    pass


@dataclass
class VisionExtraction:
    """Structured result of one vision call."""
    figure_type: str = 'other'
    ocr_text: str = ''
    caption: str = ''
    detected_components: List[Dict[str, Any]] = field(default_factory=list)
    semantic_tags: List[str] = field(default_factory=list)
    entities: List[Dict[str, Any]] = field(default_factory=list)
    technical_complexity: str = 'medium'
    image_quality: str = 'acceptable'
    confidence: str = 'medium'

    @property
    def quality_score(self) -> float:
        return quality_score_for(self.image_quality)

    def metadata(self) -> Dict[str, Any]:
        """The part stored in Figure.vision_metadata."""
        data = asdict(self)
        data.pop('ocr_text')
        data.pop('caption')
        return data

    def embedding_text(self, caption_text: Optional[str] = None) -> str:
        """Text embedded for figure search: caption, OCR, components and tags."""
        components = ' '.join(
            ' '.join(str(c.get(k, '')) for k in ('label', 'value') if c.get(k))
            for c in self.detected_components
        )
        parts = [
            caption_text or self.caption,
            self.ocr_text,
            components,
            ' '.join(self.semantic_tags),
        ]
        return ' '.join(p.strip() for p in parts if p and p.strip())


def quality_score_for(image_quality: Optional[str]) -> float:
    return IMAGE_QUALITY_SCORES.get((image_quality or '').lower(), DEFAULT_QUALITY_SCORE)


def _strip_fences(raw: str) -> str:
    text = raw.strip()
    match = re.match(r'^```(?:json)?\s*(.*?)\s*```$', text, re.DOTALL)
    return match.group(1) if match else text


def _string(data: dict, key: str, default: str = '') -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise OracleResponseFormatError(f"'{key}' must be a string")
    return value.strip()


def _choice(data: dict, key: str, allowed: set, default: str) -> str:
    value = _string(data, key, default).lower() or default
    if value not in allowed:
        raise OracleResponseFormatError(f"'{key}' has unexpected value {value!r}")
    return value


def _object_list(data: dict, key: str) -> List[Dict[str, Any]]:
    value = data.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise OracleResponseFormatError(f"'{key}' must be a list of objects")
    return value


def parse_vision_response(raw: str) -> VisionExtraction:
    """
    Parse the vision oracle's reply.

    Raises:
        OracleResponseFormatError: Not JSON, not an object, or a field with
            the wrong type or an unknown enumeration value
    """
    try:
        data = json.loads(_strip_fences(raw or ''))
    except json.JSONDecodeError as e:
        raise OracleResponseFormatError(f"Vision reply is not JSON: {e}")

    if not isinstance(data, dict):
        raise OracleResponseFormatError("Vision reply must be a JSON object")

    tags = data.get('semantic_tags') or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise OracleResponseFormatError("'semantic_tags' must be a list of strings")

    figure_type = _string(data, 'figure_type', 'other').lower() or 'other'
    if figure_type not in FIGURE_TYPES:
        figure_type = 'other'

    return VisionExtraction(
        figure_type=figure_type,
        ocr_text=_string(data, 'ocr_text'),
        caption=_string(data, 'caption'),
        detected_components=_object_list(data, 'detected_components'),
        semantic_tags=[t.strip().lower() for t in tags if t.strip()],
        entities=_object_list(data, 'entities'),
        technical_complexity=_choice(data, 'technical_complexity', COMPLEXITY_LEVELS, 'medium'),
        image_quality=_string(data, 'image_quality', 'acceptable').lower(),
        confidence=_choice(data, 'confidence', CONFIDENCE_LEVELS, 'medium'),
    )


class VisionClient:
    """OpenAI-compatible vision client."""

    def __init__(self):
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'VISION_MODEL', 'gpt-4o-mini')
        self.timeout = getattr(settings, 'VISION_TIMEOUT', 90)

    def analyze(self, png_bytes: bytes, caption_hint: Optional[str] = None) -> VisionExtraction:
        """
        Run structured extraction on a PNG image.

        Raises:
            VisionError: Configuration or client error
            VisionTransientError: Timeout, connection or 429/5xx error
            OracleResponseFormatError: Malformed reply
        """
        if not self.api_key:
            raise VisionError("OPENAI_API_KEY not configured")

        prompt = VISION_PROMPT
        if caption_hint:
            prompt += f"\n\nThe manual's caption for this figure: {caption_hint[:500]}"

        image_url = "data:image/png;base64," + base64.b64encode(png_bytes).decode('ascii')

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    json={
                        "model": self.model,
                        "messages": [{
                            "role": "user",
                            "content": [
                                {"type": "text", "text": prompt},
                                {"type": "image_url", "image_url": {"url": image_url}},
                            ],
                        }],
                        "response_format": {"type": "json_object"},
                        "max_tokens": 1000,
                        "temperature": 0,
                    },
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise VisionTransientError(f"Vision API error: {status}")
            raise VisionError(f"Vision API error: {status}")
        except httpx.TimeoutException:
            raise VisionTransientError("Vision API timed out")
        except httpx.RequestError as e:
            raise VisionTransientError(f"Could not connect to vision API: {e}")

        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content", "") if choices else ""
        if not content:
            raise VisionTransientError("Empty response from vision API")

        return parse_vision_response(content)


# Singleton instance
_client: Optional[VisionClient] = None


def get_vision_client() -> VisionClient:
    global _client
    if _client is None:
        _client = VisionClient()
    return _client
