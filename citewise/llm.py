from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from .errors import (
    ContentFiltered,
    ContextLengthExceeded,
    LlmError,
    LlmTimeout,
    ModelUnavailable,
    NetworkError,
    ProviderError,
    RateLimited,
)

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    role: str
    content: str


@dataclass
class LLMResponse:
    content: str
    usage: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None


class LLMClient(Protocol):
    """Minimal client interface for generative models."""

    model: str

    async def generate(self, messages: Iterable[LLMMessage], **kwargs: Any) -> LLMResponse:
        ...


def _error_text(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return " ".join(str(error.get(key, "")) for key in ("code", "type", "message")).strip()
        if error:
            return str(error)
    return str(body or "")


def map_status_error(status_code: int, body: Any, model: str) -> LlmError:
    """Map an HTTP failure from a chat completions endpoint to a typed error."""

    text = _error_text(body)
    lowered = text.lower()
    if status_code == 429:
        return RateLimited(f"rate limited by provider for {model}")
    if status_code == 404:
        return ModelUnavailable(f"model not available: {model}")
    if status_code in (500, 502, 503, 504, 529):
        return ModelUnavailable(f"{model} temporarily unavailable (HTTP {status_code})")
    if status_code == 408:
        return LlmTimeout(f"{model} request timed out")
    if "context_length" in lowered or "maximum context" in lowered or "too many tokens" in lowered:
        return ContextLengthExceeded(text or "context length exceeded")
    if "content_filter" in lowered or "content policy" in lowered or "safety" in lowered:
        return ContentFiltered(text or "content filtered")
    if status_code == 401:
        return ProviderError("invalid API key")
    return ProviderError(f"HTTP {status_code}: {text}" if text else f"HTTP {status_code}")


def map_anthropic_error(status_code: int, body: Any, model: str) -> LlmError:
    """Map an Anthropic Messages API failure to a typed error."""

    error = body.get("error") if isinstance(body, dict) else None
    error_type = error.get("type", "") if isinstance(error, dict) else ""
    message = error.get("message", "") if isinstance(error, dict) else str(body or "")
    if status_code == 401:
        return ProviderError("invalid API key")
    if status_code == 429:
        return RateLimited(f"rate limited by provider for {model}")
    if status_code == 529 or error_type == "overloaded_error":
        return RateLimited(f"{model} is overloaded")
    if status_code == 404:
        return ModelUnavailable(f"model not available: {model}")
    if status_code >= 500:
        return ModelUnavailable(f"{model} temporarily unavailable (HTTP {status_code})")
    if status_code == 400 and error_type == "invalid_request_error" and "token" in message.lower():
        return ContextLengthExceeded(message)
    return ProviderError(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


def map_openai_exception(exc: Exception, model: str) -> LlmError:
    """Translate exceptions raised by the ``openai`` SDK."""

    import openai  # type: ignore

    if isinstance(exc, openai.APITimeoutError):
        return LlmTimeout(f"{model} request timed out")
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        body = getattr(exc, "body", None) or {"message": exc.message}
        if isinstance(body, dict) and "error" not in body:
            body = {"error": body}
        return map_status_error(exc.status_code, body, model)
    return ProviderError(str(exc))


def _check_finish_reason(response: LLMResponse) -> LLMResponse:
    if response.finish_reason == "content_filter":
        raise ContentFiltered("response blocked by provider content filter")
    return response


class OpenAIClient:
    """Wrapper over the official OpenAI client."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        try:
            from openai import AsyncOpenAI  # type: ignore
        except ImportError as exc:
            raise RuntimeError(
                "openai package is required for OpenAIClient. Please install openai>=1.0."
            ) from exc

        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self.model = model
        self.timeout = timeout

    async def generate(
        self,
        messages: Iterable[LLMMessage],
        **kwargs: Any,
    ) -> LLMResponse:
        messages_payload = [{"role": m.role, "content": m.content} for m in messages]
        try:
            response = await self._client.chat.completions.create(
                model=self.model, messages=messages_payload, timeout=self.timeout, **kwargs
            )
        except Exception as exc:
            raise map_openai_exception(exc, self.model) from exc
        choice = response.choices[0]
        content = choice.message.content or ""
        usage = response.usage.model_dump() if hasattr(response.usage, "model_dump") else {}
        return _check_finish_reason(LLMResponse(content=content, usage=usage, finish_reason=choice.finish_reason))


class OpenRouterClient:
    """HTTP client for OpenRouter chat completions."""

    def __init__(
        self,
        model: str,
        api_key: str,
        endpoint: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = 40.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("OpenRouter API key is required.")
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport

    async def generate(
        self,
        messages: Iterable[LLMMessage],
        **kwargs: Any,
    ) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        payload.update(kwargs)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "citewise",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise LlmTimeout(f"{self.model} request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        try:
            data = response.json()
        except ValueError:
            data = {"error": {"message": response.text}}
        if response.status_code != 200:
            raise map_status_error(response.status_code, data, self.model)
        if "error" in data:
            code = data["error"].get("code") if isinstance(data["error"], dict) else None
            raise map_status_error(int(code) if isinstance(code, int) else 500, data, self.model)
        choice = data["choices"][0]
        content = choice.get("message", {}).get("content") or ""
        usage = data.get("usage", {})
        return _check_finish_reason(
            LLMResponse(content=content, usage=usage, finish_reason=choice.get("finish_reason"))
        )


class AnthropicClient:
    """HTTP client for the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        api_key: str,
        endpoint: str = "https://api.anthropic.com/v1/messages",
        timeout: float = 40.0,
        max_tokens: int = 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required.")
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._transport = transport

    def build_payload(self, messages: Iterable[LLMMessage], **kwargs: Any) -> Dict[str, Any]:
        system: List[str] = []
        turns: List[Dict[str, str]] = []
        for message in messages:
            if message.role == "system":
                system.append(message.content)
            else:
                turns.append({"role": message.role, "content": message.content})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": turns,
            "max_tokens": kwargs.get("max_tokens") or self.max_tokens,
        }
        if system:
            payload["system"] = "\n\n".join(system)
        if kwargs.get("temperature") is not None:
            payload["temperature"] = kwargs["temperature"]
        # ``response_format`` has no Messages API equivalent and is not sent.
        return payload

    async def generate(
        self,
        messages: Iterable[LLMMessage],
        **kwargs: Any,
    ) -> LLMResponse:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(messages, **kwargs)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise LlmTimeout(f"{self.model} request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc
        try:
            data = response.json()
        except ValueError:
            data = {"error": {"message": response.text}}
        if response.status_code != 200:
            raise map_anthropic_error(response.status_code, data, self.model)
        if not isinstance(data, dict):
            raise ProviderError(f"unexpected response from {self.model}")

        stop_reason = data.get("stop_reason")
        if stop_reason == "refusal":
            raise ContentFiltered("response refused by provider")
        if stop_reason == "max_tokens":
            logger.warning("%s stopped at max_tokens; answer may be truncated.", self.model)
        blocks = data.get("content") or []
        content = "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = dict(data.get("usage") or {})
        usage["total_tokens"] = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        return LLMResponse(content=content, usage=usage, finish_reason=stop_reason)


class LLMClientFactory:
    """Factory that builds LLM clients from configuration dictionaries."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def configured(self) -> List[str]:
        """Model ids whose credentials are present, in config order."""

        ready: List[str] = []
        for model_id, entry in self.config.items():
            entry = entry or {}
            if entry.get("api_key") and entry.get("model"):
                ready.append(model_id)
            else:
                logger.info("LLM %s has no credentials configured; skipping.", model_id)
        return ready

    def build(self, model_id: str) -> LLMClient:
        section_cfg = self.config.get(model_id) or {}
        provider = section_cfg.get("provider", "openai")
        model = section_cfg.get("model")
        if not model:
            raise ValueError(f"Missing model for {model_id} LLM configuration.")
        timeout = float(section_cfg.get("timeout", 40.0))
        if provider == "openai":
            return OpenAIClient(
                model=model,
                api_key=section_cfg.get("api_key"),
                base_url=section_cfg.get("base_url"),
                timeout=timeout,
            )
        if provider == "openrouter":
            api_key = section_cfg.get("api_key")
            endpoint = section_cfg.get("endpoint", "https://openrouter.ai/api/v1/chat/completions")
            if not api_key:
                raise ValueError(f"OpenRouter configuration requires model and api_key for {model_id}.")
            return OpenRouterClient(model=model, api_key=api_key, endpoint=endpoint, timeout=timeout)
        if provider == "anthropic":
            api_key = section_cfg.get("api_key")
            if not api_key:
                raise ValueError(f"Anthropic configuration requires model and api_key for {model_id}.")
            return AnthropicClient(
                model=model,
                api_key=api_key,
                endpoint=section_cfg.get("endpoint", "https://api.anthropic.com/v1/messages"),
                timeout=timeout,
                max_tokens=int(section_cfg.get("max_tokens", 1024)),
            )
        raise ValueError(f"Unsupported LLM provider: {provider}")
