"""Text-generation and embedding proxy over two interchangeable providers.

The primary provider speaks the OpenAI-compatible chat completions format
(Groq); the fallback is Gemini ``generateContent``. A provider without an
API key is skipped. Every outbound call is bounded by the configured
timeout and logged as one JSON line on ``studybuddy.llm``.
"""
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

import requests

from errors import UpstreamServiceError
from logging_config import get_llm_logger

logger = logging.getLogger(__name__)
_LLM_LOGGER = get_llm_logger()

EMBEDDING_DIMENSIONS = 768
STREAM_CHUNK_CHARS = 50

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")


def _strip_think(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _status_message(status_code: int) -> str:
    if status_code == 400:
        return "Invalid request to AI service"
    if status_code == 401:
        return "Invalid AI API key"
    if status_code == 403:
        return "AI API key does not have permission"
    if status_code == 429:
        return "AI service rate limit exceeded"
    return f"AI service error: {status_code}"


def chunk_text(text: str, limit: int = STREAM_CHUNK_CHARS) -> List[str]:
    """Split ``text`` on sentence boundaries, then pack words up to ``limit`` chars.

    Each chunk carries a trailing space so concatenating them reads naturally.
    A single word longer than ``limit`` becomes a chunk of its own.
    """
    chunks: List[str] = []
    for sentence in _SENTENCE_RE.findall(text or ""):
        words = sentence.split()
        current = ""
        for word in words:
            candidate = f"{current} {word}" if current else word
            if len(candidate) > limit and current:
                chunks.append(current + " ")
                current = word
            else:
                current = candidate
        if current:
            chunks.append(current + " ")
    return chunks


@dataclass
class GenerationResult:
    response: str
    model: str
    provider: str
    tokens_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "model": self.model,
            "provider": self.provider,
            "tokensUsed": self.tokens_used,
        }


class ProviderError(Exception):
    """A single provider attempt failed; the client may try the next one."""


class GroqProvider:
    name = "groq"

    def __init__(self, api_key: Optional[str], model: str, url: str):
        self.api_key = api_key
        self.model = model
        self.url = url

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(
        self,
        message: str,
        system_prompt: Optional[str],
        temperature: float,
        max_tokens: int,
        timeout: float,
    ) -> Tuple[str, int]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": message})
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": int(max_tokens),
        }
        r = requests.post(
            self.url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
        )
        r.raise_for_status()
        data = r.json()
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError(f"Unexpected response from {self.name}") from None
        usage = data.get("usage") if isinstance(data, dict) else None
        tokens = _coerce_int((usage or {}).get("total_tokens")) or 0
        return text, tokens


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str, base_url: str, embed_model: str = "text-embedding-004"):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.embed_model = embed_model

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(
        self,
        message: str,
        system_prompt: Optional[str],
        temperature: float,
        max_tokens: int,
        timeout: float,
    ) -> Tuple[str, int]:
        text = f"{system_prompt}\n\nUser: {message}" if system_prompt else message
        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": int(max_tokens),
                "topP": 0.8,
                "topK": 10,
            },
        }
        r = requests.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json=payload,
            timeout=timeout,
        )
        r.raise_for_status()
        data = r.json()
        try:
            generated = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("Invalid AI response format") from None
        tokens = _coerce_int((data.get("usageMetadata") or {}).get("totalTokenCount")) or 0
        return generated, tokens

    def embed(self, text: str, timeout: float) -> List[float]:
        r = requests.post(
            f"{self.base_url}/models/{self.embed_model}:embedContent",
            params={"key": self.api_key},
            json={"model": f"models/{self.embed_model}", "content": {"parts": [{"text": text}]}},
            timeout=timeout,
        )
        r.raise_for_status()
        data = r.json()
        try:
            values = data["embedding"]["values"]
        except (KeyError, TypeError):
            raise ProviderError("Invalid embedding response format") from None
        return [float(v) for v in values]


class AIClient:
    """Tries each configured provider in order until one returns text."""

    def __init__(self, providers: Sequence[Any], timeout: float = 30, embedder: Optional[GeminiProvider] = None):
        self.providers = list(providers)
        self.timeout = timeout
        self.embedder = embedder

    @classmethod
    def from_settings(cls, settings) -> "AIClient":
        gemini = GeminiProvider(
            settings.gemini_api_key,
            settings.gemini_model,
            settings.gemini_base_url,
            settings.gemini_embed_model,
        )
        groq = GroqProvider(settings.groq_api_key, settings.groq_model, settings.groq_url)
        return cls([groq, gemini], timeout=settings.ai_timeout, embedder=gemini)

    @property
    def configured(self) -> bool:
        return any(provider.configured for provider in self.providers)

    def _log_call(self, record: Dict[str, Any]) -> None:
        _LLM_LOGGER.info(json.dumps(record, ensure_ascii=False))

    def _attempt(self, provider, message, system_prompt, temperature, max_tokens, request_id) -> GenerationResult:
        start = time.perf_counter()
        tokens = None
        outcome = "error"
        try:
            try:
                text, tokens = provider.complete(message, system_prompt, temperature, max_tokens, self.timeout)
            except requests.Timeout:
                raise ProviderError(f"{provider.name} timed out after {self.timeout}s") from None
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else 0
                raise ProviderError(_status_message(status)) from None
            except (requests.RequestException, ValueError) as e:
                raise ProviderError(f"{provider.name} request failed: {e}") from None
            cleaned = _strip_think(text)
            if not cleaned:
                raise ProviderError(f"{provider.name} returned an empty response")
            outcome = "ok"
            return GenerationResult(response=cleaned, model=provider.model, provider=provider.name, tokens_used=tokens or 0)
        finally:
            self._log_call(
                {
                    "event": "llm_call",
                    "request_id": request_id,
                    "provider": provider.name,
                    "model": provider.model,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "tokens": tokens,
                    "outcome": outcome,
                }
            )

    def generate(
        self,
        message: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> GenerationResult:
        configured = [provider for provider in self.providers if provider.configured]
        if not configured:
            logger.error("No AI provider API key configured")
            raise UpstreamServiceError("AI service is not properly configured")

        request_id = uuid4().hex[:12]
        failures: List[str] = []
        for provider in configured:
            try:
                return self._attempt(provider, message, system_prompt, temperature, max_tokens, request_id)
            except ProviderError as e:
                failures.append(f"{provider.name}: {e}")
                logger.warning("AI provider %s failed (request_id=%s): %s", provider.name, request_id, e)
        raise UpstreamServiceError(
            "AI service temporarily unavailable (" + "; ".join(failures) + ")",
            correlation_id=request_id,
        )

    def stream(
        self,
        message: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> Iterator[str]:
        result = self.generate(message, system_prompt, temperature, max_tokens)
        yield from chunk_text(result.response)

    def embed(self, text: str) -> List[float]:
        if self.embedder is None or not self.embedder.configured:
            raise UpstreamServiceError("Embedding service is not properly configured")
        start = time.perf_counter()
        outcome = "error"
        try:
            vector = self.embedder.embed(text, self.timeout)
            outcome = "ok"
            return vector
        except (requests.RequestException, ProviderError, ValueError) as e:
            raise UpstreamServiceError(f"Embedding request failed: {e}") from None
        finally:
            self._log_call(
                {
                    "event": "embedding_call",
                    "provider": self.embedder.name,
                    "model": self.embedder.embed_model,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "outcome": outcome,
                }
            )
