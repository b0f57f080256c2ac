import os
import time
import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from core.exceptions import ProviderError, ProviderNotConfiguredError, ProviderTimeout
from models import Completion


@runtime_checkable
class EmbeddingProvider(Protocol):
    def embed_text(self, text: str) -> List[float]: ...


@runtime_checkable
class CompletionProvider(Protocol):
    def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Completion: ...

    def complete_stream(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]: ...


class LLMProvider(str, Enum):
    OPENAI = "openai"
    MINIMAX = "minimax"
    DEEPSEEK = "deepseek"


class LLMConfig:
    def __init__(
        self,
        provider: LLMProvider = LLMProvider.OPENAI,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: str = "text-embedding-3-small",
        embedding_dimension: int = 1536,
        chat_max_tokens: Optional[int] = None,
        chat_temperature: Optional[float] = None,
        request_timeout: Optional[float] = None,
        connectivity_timeout: Optional[float] = None,
    ):
        self.provider = provider
        default_key = os.getenv("OPENAI_API_KEY")
        if provider == LLMProvider.MINIMAX:
            default_key = os.getenv("MINIMAX_API_KEY") or default_key
        elif provider == LLMProvider.DEEPSEEK:
            default_key = os.getenv("DEEPSEEK_API_KEY") or default_key
        self.api_key = default_key if api_key is None else api_key
        self.embedding_model = embedding_model
        self.embedding_dimension = embedding_dimension
        default_max_tokens = _safe_positive_int(os.getenv("LLM_MAX_TOKENS"), 4000)
        default_temperature = _safe_temperature(os.getenv("LLM_TEMPERATURE"), 0.7)

        if provider == LLMProvider.MINIMAX:
            self.base_url = base_url or "https://api.minimaxi.com/v1"
            self.model = model or "MiniMax-M2.5"
            self.embedding_model = "embo-01"
            self.embedding_dimension = 1024
        elif provider == LLMProvider.DEEPSEEK:
            self.base_url = base_url or os.getenv("DEEPSEEK_BASE_URL") or "https://api.deepseek.com"
            self.model = model or "deepseek-chat"
            default_max_tokens = _safe_positive_int(os.getenv("DEEPSEEK_MAX_TOKENS"), 8192)
        else:
            self.base_url = base_url or "https://api.openai.com/v1"
            self.model = model or "gpt-4o-mini"

        self.chat_max_tokens = _safe_positive_int(chat_max_tokens, default_max_tokens)
        self.chat_temperature = _safe_temperature(chat_temperature, default_temperature)
        self.request_timeout = float(request_timeout) if request_timeout else 120.0
        self.connectivity_timeout = float(connectivity_timeout) if connectivity_timeout else 30.0


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def _safe_temperature(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return min(max(parsed, 0.0), 2.0)


def _delta_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None)
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    content = getattr(delta, "content", None) if delta is not None else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # some compatible servers stream content parts
        return "".join(part.text for part in content if isinstance(getattr(part, "text", None), str))
    message = getattr(choices[0], "message", None)
    text = getattr(message, "content", None)
    return text if isinstance(text, str) else ""


class LLMClient:
    """Completion and embedding provider backed by an OpenAI-compatible API.

    Failures are raised as ``ProviderError``; callers decide the fallback
    (secondary model, heuristic scoring, recency ordering).
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None
        self._logger = logging.getLogger("storyloom.llm")

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _require_key(self, operation: str):
        if not self.config.api_key:
            raise ProviderNotConfiguredError(
                f"{operation}: no api key configured for provider={self.config.provider.value}"
            )

    def _get_client(self):
        if self._client is not None:
            return self._client

        from openai import OpenAI
        self._client = OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )
        return self._client

    def _wrap_error(self, operation: str, exc: Exception) -> ProviderError:
        from openai import APITimeoutError

        if isinstance(exc, (APITimeoutError, TimeoutError)):
            return ProviderTimeout(f"{operation} timed out: {exc}")
        return ProviderError(f"{operation} failed: {exc}")

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stream: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        self._require_key("chat")
        started = time.perf_counter()
        try:
            client = self._get_client()
            if timeout:
                client = client.with_options(timeout=timeout)
            response = client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=_safe_temperature(temperature, self.config.chat_temperature),
                max_tokens=_safe_positive_int(max_tokens, self.config.chat_max_tokens),
                stream=stream,
            )
        except Exception as exc:
            self._logger.warning(
                "llm chat remote failed provider=%s model=%s error=%s",
                self.config.provider.value,
                self.config.model,
                exc,
            )
            raise self._wrap_error("chat", exc) from exc
        self._logger.info(
            "llm chat remote %s provider=%s model=%s latency_ms=%.2f",
            "stream" if stream else "success",
            self.config.provider.value,
            self.config.model,
            (time.perf_counter() - started) * 1000,
        )
        return response

    def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        response = self.chat(
            [{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        content = response.choices[0].message.content or ""
        usage: Dict[str, int] = {}
        raw_usage = getattr(response, "usage", None)
        if raw_usage is not None:
            for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
                value = getattr(raw_usage, key, None)
                if isinstance(value, int):
                    usage[key] = value
        return Completion(text=content, model=self.config.model, usage=usage)

    def complete_stream(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        started = time.perf_counter()
        emitted_chars = 0
        response = self.chat(
            [{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )
        try:
            for chunk in response:
                text = _delta_text(chunk)
                if not text:
                    continue
                emitted_chars += len(text)
                yield text
        except Exception as exc:
            self._logger.warning(
                "llm chat remote stream failed provider=%s model=%s chars=%d error=%s",
                self.config.provider.value,
                self.config.model,
                emitted_chars,
                exc,
            )
            raise self._wrap_error("stream", exc) from exc
        self._logger.info(
            "llm chat remote stream done provider=%s model=%s latency_ms=%.2f chars=%d",
            self.config.provider.value,
            self.config.model,
            (time.perf_counter() - started) * 1000,
            emitted_chars,
        )

    def check_connectivity(self, timeout: Optional[float] = None) -> bool:
        """One-token round trip under the short connectivity timeout."""
        self._require_key("connectivity")
        limit = timeout or self.config.connectivity_timeout
        started = time.perf_counter()
        try:
            self._get_client().with_options(timeout=limit).chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
            )
        except Exception as exc:
            raise self._wrap_error("connectivity", exc) from exc
        self._logger.info(
            "llm connectivity ok provider=%s model=%s latency_ms=%.2f timeout=%.0fs",
            self.config.provider.value,
            self.config.model,
            (time.perf_counter() - started) * 1000,
            limit,
        )
        return True

    def embed_text(self, text: str) -> List[float]:
        self._require_key("embedding")
        if self.config.provider == LLMProvider.MINIMAX:
            return self._embed_minimax(text)
        return self._embed_openai(text)

    def _embed_openai(self, text: str) -> List[float]:
        try:
            client = self._get_client()
            response = client.embeddings.create(model=self.config.embedding_model, input=text)
            return list(response.data[0].embedding)
        except Exception as exc:
            self._logger.warning(
                "embedding remote failed provider=%s model=%s error=%s",
                self.config.provider.value,
                self.config.embedding_model,
                exc,
            )
            raise self._wrap_error("embedding", exc) from exc

    def _embed_minimax(self, text: str) -> List[float]:
        import requests

        url = "https://api.minimax.chat/v1/text/embedding"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        payload = {"model": self.config.embedding_model, "text": text}
        try:
            response = requests.post(url, headers=headers, json=payload, timeout=30)
            response.raise_for_status()
            data = response.json()
            return list(data["data"]["embedding"])
        except requests.Timeout as exc:
            raise ProviderTimeout(f"embedding timed out: {exc}") from exc
        except (requests.RequestException, KeyError, TypeError, ValueError) as exc:
            self._logger.warning(
                "embedding remote failed provider=%s model=%s error=%s",
                self.config.provider.value,
                self.config.embedding_model,
                exc,
            )
            raise ProviderError(f"embedding failed: {exc}") from exc


def create_llm_client(provider: str = "openai", **kwargs) -> LLMClient:
    candidate = (provider or "openai").strip().lower()
    try:
        llm_provider = LLMProvider(candidate)
    except ValueError:
        logging.getLogger("storyloom.llm").warning(
            "unknown llm provider=%s fallback=openai",
            provider,
        )
        llm_provider = LLMProvider.OPENAI
    return LLMClient(LLMConfig(provider=llm_provider, **kwargs))


def create_llm_client_from_settings(settings: Any, model: Optional[str] = None) -> LLMClient:
    base_url = settings.openai_base_url
    if (settings.llm_provider or "").strip().lower() == "deepseek":
        base_url = settings.deepseek_base_url
    return create_llm_client(
        settings.llm_provider,
        api_key=settings.chat_api_key or "",
        base_url=base_url,
        model=model or settings.chat_model,
        embedding_model=settings.embedding_model,
        embedding_dimension=settings.embedding_dimension,
        chat_max_tokens=settings.llm_max_tokens,
        chat_temperature=settings.llm_temperature,
        request_timeout=settings.synthesis_timeout_seconds,
        connectivity_timeout=settings.connectivity_timeout_seconds,
    )
