"""
Model Router Provider Abstraction

Unified interface over the three vision-language provider shapes:
  - OpenAI-compatible chat completions (bearer token)
  - Anthropic Messages (x-api-key + anthropic-version)
  - Ollama chat (local, no credential)

A provider only knows how to address its endpoint, assemble text + image
parts, and pull the assistant text and token usage out of the reply
envelope. Budgeting, single-flight and parsing belong to the client.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from sightline.shared.config import ConfigValidationError, ProviderName, VisionConfig
from sightline.shared.log_redaction import redact_dict, redact_string
from sightline.shared.types import CapturedFrame

from .errors import ParseError, TransportError

logger = logging.getLogger("sightline.model_router.providers")

MAX_REPLY_TOKENS = 1024


class Provider(ABC):
    """Abstract base class for vision-language providers."""

    name: str = ""
    path: str = ""
    cost_per_1k_tokens: float = 0.0
    requires_credential: bool = True

    def __init__(self, config: VisionConfig):
        """Initialize provider from the vision config."""
        self.config = config

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url()}{self.path}"

    @property
    def available(self) -> bool:
        """Credential present (or not needed)."""
        return not self.requires_credential or bool(self.config.credential)

    def build_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def build_payload(self, prompt: str, frames: List[CapturedFrame]) -> Dict[str, Any]:
        """Assemble the provider-specific request body."""
        pass

    @abstractmethod
    def extract_text(self, data: Dict[str, Any]) -> str:
        """Pull the assistant text out of the reply envelope."""
        pass

    @abstractmethod
    def extract_tokens(self, data: Dict[str, Any]) -> int:
        """Token usage reported in the reply envelope (0 if absent)."""
        pass

    def estimate_cost(self, tokens: int) -> float:
        return (tokens / 1000.0) * self.cost_per_1k_tokens

    async def chat(
        self,
        http: httpx.AsyncClient,
        prompt: str,
        frames: List[CapturedFrame],
        timeout: float,
    ) -> Dict[str, Any]:
        """Send one request and return ``{"text", "tokens", "model"}``.

        Raises TransportError or ParseError.
        """
        payload = self.build_payload(prompt, frames)
        headers = self.build_headers()
        logger.debug(
            "%s request to %s (%d image(s)) headers=%s",
            self.name, self.endpoint, len(frames), redact_dict(headers),
        )

        try:
            response = await http.post(
                self.endpoint,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.name} request timed out after {timeout:.1f}s") from e
        except httpx.HTTPStatusError as e:
            error_body = ""
            try:
                error_body = e.response.json().get("error", {})
                if isinstance(error_body, dict):
                    error_body = error_body.get("message", "")
            except Exception:
                error_body = e.response.text[:200]
            message = f"{self.name} API error ({e.response.status_code})"
            if error_body:
                message += f": {redact_string(str(error_body))}"
            raise TransportError(message) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.name} request failed: {redact_string(str(e))}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"{self.name} returned a non-JSON envelope") from e
        if not isinstance(data, dict):
            raise ParseError(f"{self.name} returned an unexpected envelope")

        return {
            "text": self.extract_text(data),
            "tokens": self.extract_tokens(data),
            "model": data.get("model", self.config.model_name),
        }


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class OpenAIProvider(Provider):
    """OpenAI-compatible chat completions (also OpenRouter and friends)."""

    name = "openai"
    path = "/chat/completions"
    cost_per_1k_tokens = 0.01

    def build_headers(self) -> Dict[str, str]:
        headers = super().build_headers()
        headers["Authorization"] = f"Bearer {self.config.credential}"
        return headers

    def build_payload(self, prompt: str, frames: List[CapturedFrame]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for frame in frames:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{frame.mime_type};base64,{frame.encoded}"},
            })
        return {
            "model": self.config.model_name,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": MAX_REPLY_TOKENS,
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            raise ParseError("openai reply has no choices")
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )
        if not content:
            raise ParseError("openai reply has empty message content")
        return content

    def extract_tokens(self, data: Dict[str, Any]) -> int:
        usage = data.get("usage") or {}
        total = _int(usage.get("total_tokens"))
        if total:
            return total
        return _int(usage.get("prompt_tokens")) + _int(usage.get("completion_tokens"))


class AnthropicProvider(Provider):
    """Anthropic Messages API."""

    name = "anthropic"
    path = "/messages"
    cost_per_1k_tokens = 0.008
    api_version = "2023-06-01"

    def build_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.config.credential,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    def build_payload(self, prompt: str, frames: List[CapturedFrame]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        for frame in frames:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": frame.mime_type,
                    "data": frame.encoded,
                },
            })
        content.append({"type": "text", "text": prompt})
        return {
            "model": self.config.model_name,
            "max_tokens": MAX_REPLY_TOKENS,
            "messages": [{"role": "user", "content": content}],
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        text_parts = [
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        text = "".join(text_parts)
        if not text:
            raise ParseError("anthropic reply has no text blocks")
        return text

    def extract_tokens(self, data: Dict[str, Any]) -> int:
        usage = data.get("usage") or {}
        return _int(usage.get("input_tokens")) + _int(usage.get("output_tokens"))


class OllamaProvider(Provider):
    """Local Ollama chat endpoint."""

    name = "ollama"
    path = "/chat"
    cost_per_1k_tokens = 0.0
    requires_credential = False

    def build_payload(self, prompt: str, frames: List[CapturedFrame]) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "user", "content": prompt}
        if frames:
            message["images"] = [frame.encoded for frame in frames]
        return {
            "model": self.config.model_name,
            "messages": [message],
            "stream": False,
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        message = data.get("message") or {}
        text = message.get("content") or data.get("response", "")
        if not text:
            raise ParseError("ollama reply has empty message content")
        return text

    def extract_tokens(self, data: Dict[str, Any]) -> int:
        return _int(data.get("prompt_eval_count")) + _int(data.get("eval_count"))


PROVIDERS = {
    ProviderName.OPENAI: OpenAIProvider,
    ProviderName.ANTHROPIC: AnthropicProvider,
    ProviderName.OLLAMA: OllamaProvider,
}


def get_provider(config: VisionConfig, name: Optional[str] = None) -> Provider:
    """Build the provider selected by config (or by explicit name)."""
    try:
        key = ProviderName(name or config.provider)
    except ValueError as e:
        raise ConfigValidationError(f"Unknown provider: {name or config.provider}") from e
    return PROVIDERS[key](config)
