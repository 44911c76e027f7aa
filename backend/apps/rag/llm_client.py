"""
LLM client abstraction layer.

Provides a unified interface for the generation oracle that can switch
between:
- OpenAI-compatible APIs (default)
- Ollama (local inference)
- Gemini API

Transport failures (timeouts, connection errors, 429/5xx, empty output)
raise LLMTransientError, which the retry helper treats as retryable.
Configuration and other client errors raise plain LLMError.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

import httpx
from django.conf import settings

from apps.indexing.retry import TransientOracleError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None  # token usage if available


class LLMError(Exception):
    """Raised when an LLM call fails."""
    pass


class LLMTransientError(LLMError, TransientOracleError):
    """An LLM call failed in a way worth retrying."""
    pass


def _status_error(provider: str, status_code: int, detail: str = '') -> LLMError:
    message = f"{provider} API error: {status_code}" + (f" {detail}" if detail else '')
    if status_code in RETRYABLE_STATUS_CODES:
        return LLMTransientError(message)
    return LLMError(message)


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of messages in the conversation
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with the model's response

        Raises:
            LLMError: If the request fails
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference."""

    def __init__(self):
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')
        self.timeout = getattr(settings, 'OLLAMA_CHAT_TIMEOUT', 600)

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        logger.info(f"Calling Ollama chat: model={self.model}, temp={temperature}")

        ollama_messages = [
            {"role": msg.role, "content": msg.content}
            for msg in messages
        ]

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": ollama_messages,
                        "stream": False,
                        "options": {
                            "temperature": temperature,
                            "num_predict": max_tokens,
                        }
                    }
                )
                response.raise_for_status()
                data = response.json()

                content = data.get("message", {}).get("content", "")
                if not content:
                    raise LLMTransientError("Empty response from Ollama")

                logger.info(f"Ollama response: {len(content)} chars")
                return LLMResponse(content=content, model=self.model)

        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise _status_error("Ollama", e.response.status_code)
        except httpx.TimeoutException:
            logger.error("Ollama request timed out")
            raise LLMTransientError("Ollama service timed out")
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise LLMTransientError("Could not connect to Ollama")


class GeminiClient(BaseLLMClient):
    """LLM client for Google Gemini API."""

    def __init__(self):
        self.api_key = getattr(settings, 'GEMINI_API_KEY', '')
        self.model = getattr(settings, 'GEMINI_MODEL', 'gemini-1.5-flash')
        self.timeout = getattr(settings, 'GEMINI_TIMEOUT', 120)
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"

        if not self.api_key:
            raise LLMError("GEMINI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        logger.info(f"Calling Gemini API: model={self.model}, temp={temperature}")

        # System messages go into systemInstruction; assistant maps to "model"
        system_instruction = None
        gemini_contents = []

        for msg in messages:
            if msg.role == "system":
                system_instruction = msg.content
            else:
                role = "model" if msg.role == "assistant" else "user"
                gemini_contents.append({
                    "role": role,
                    "parts": [{"text": msg.content}]
                })

        request_body: Dict[str, Any] = {
            "contents": gemini_contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "topP": 0.95,
            }
        }

        if system_instruction:
            request_body["systemInstruction"] = {
                "parts": [{"text": system_instruction}]
            }

        url = f"{self.base_url}/models/{self.model}:generateContent?key={self.api_key}"

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    url,
                    json=request_body,
                    headers={"Content-Type": "application/json"}
                )
                response.raise_for_status()
                data = response.json()

                candidates = data.get("candidates", [])
                if not candidates:
                    if data.get("promptFeedback", {}).get("blockReason"):
                        reason = data["promptFeedback"]["blockReason"]
                        raise LLMError(f"Request blocked by Gemini: {reason}")
                    raise LLMTransientError("Empty response from Gemini API")

                parts = candidates[0].get("content", {}).get("parts", [])
                content = parts[0].get("text", "") if parts else ""
                if not content:
                    raise LLMTransientError("Empty response from Gemini API")

                usage = None
                if "usageMetadata" in data:
                    meta = data["usageMetadata"]
                    usage = {
                        "prompt_tokens": meta.get("promptTokenCount", 0),
                        "completion_tokens": meta.get("candidatesTokenCount", 0),
                        "total_tokens": meta.get("totalTokenCount", 0),
                    }

                logger.info(f"Gemini response: {len(content)} chars")
                return LLMResponse(content=content, model=self.model, usage=usage)

        except httpx.HTTPStatusError as e:
            logger.error(f"Gemini HTTP error: {e}")
            try:
                detail = e.response.json().get("error", {}).get("message", "")
            except ValueError:
                detail = ""
            raise _status_error("Gemini", e.response.status_code, detail)
        except httpx.TimeoutException:
            logger.error("Gemini request timed out")
            raise LLMTransientError("Gemini API timed out")
        except httpx.RequestError as e:
            logger.error(f"Gemini connection error: {e}")
            raise LLMTransientError("Could not connect to Gemini API")


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Works with: OpenAI, Azure OpenAI, Groq, Together, local servers, etc.
    """

    def __init__(self):
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = getattr(settings, 'OPENAI_MODEL', 'gpt-4o-mini')
        self.timeout = getattr(settings, 'OPENAI_TIMEOUT', 120)

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        logger.info(f"Calling OpenAI API: model={self.model}, temp={temperature}")

        openai_messages = [
            {"role": msg.role, "content": msg.content}
            for msg in messages
        ]

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    json={
                        "model": self.model,
                        "messages": openai_messages,
                        "temperature": temperature,
                        "max_tokens": max_tokens,
                    },
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    }
                )
                response.raise_for_status()
                data = response.json()

                choices = data.get("choices", [])
                content = choices[0].get("message", {}).get("content", "") if choices else ""
                if not content:
                    raise LLMTransientError("Empty response from OpenAI")

                logger.info(f"OpenAI response: {len(content)} chars")
                return LLMResponse(content=content, model=self.model, usage=data.get("usage"))

        except httpx.HTTPStatusError as e:
            logger.error(f"OpenAI HTTP error: {e}")
            raise _status_error("OpenAI", e.response.status_code)
        except httpx.TimeoutException:
            logger.error("OpenAI request timed out")
            raise LLMTransientError("OpenAI API timed out")
        except httpx.RequestError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise LLMTransientError("Could not connect to OpenAI API")


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """
    Get the configured LLM client instance.

    Uses LLM_PROVIDER setting to determine which client to use:
    - "openai" (default): OpenAI or compatible API
    - "ollama": Local Ollama inference
    - "gemini": Google Gemini API
    """
    global _client_instance

    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'gemini':
        logger.info("Using Gemini API for LLM inference")
        _client_instance = GeminiClient()
    elif provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        _client_instance = OllamaClient()
    else:
        logger.info("Using OpenAI-compatible API for LLM inference")
        _client_instance = OpenAICompatibleClient()

    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
