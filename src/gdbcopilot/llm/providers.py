"""Provider dispatch for the three supported chat APIs.

Each provider is an entry in :data:`PROVIDERS` holding its request builder
and response readers; :class:`ProviderClient` does the HTTP, error
classification and cancellation once for all of them.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import requests

from ..core.cancel import CancelToken
from ..core.state import ChatMessage, ROLE_USER
from ..errors import ErrorKind, OperationCancelled, ProviderError, classify_status
from . import anthropic, openai_compat, openrouter
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

PROVIDER_MODELS: Dict[str, List[str]] = {
    "anthropic": [
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ],
    "openai": ["gpt-4o", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"],
    "openrouter": [
        "anthropic/claude-3-opus-20240229",
        "anthropic/claude-3-sonnet-20240229",
        "openai/gpt-4o",
        "openai/gpt-4o-mini",
        "google/gemini-1.5-pro",
        "meta-llama/llama-3-70b-instruct",
    ],
}


@dataclass
class ProviderConfig:
    base_url: str
    default_model: str
    timeout: float = 30.0
    max_tokens: Optional[int] = None
    json_mode: bool = False
    referer: str = openrouter.DEFAULT_REFERER
    title: str = openrouter.DEFAULT_TITLE


def default_provider_configs() -> Dict[str, ProviderConfig]:
    return {
        "anthropic": ProviderConfig(
            base_url="https://api.anthropic.com",
            default_model="claude-3-sonnet-20240229",
            max_tokens=anthropic.DEFAULT_MAX_TOKENS,
        ),
        "openai": ProviderConfig(
            base_url="https://api.openai.com",
            default_model="gpt-4-turbo",
            json_mode=True,
        ),
        "openrouter": ProviderConfig(
            base_url="https://openrouter.ai/api",
            default_model="openai/gpt-4o-mini",
        ),
    }


class _Wire(NamedTuple):
    build: Callable[..., Any]
    extract_text: Callable[[Dict[str, Any]], Optional[str]]
    extract_usage: Callable[[Dict[str, Any], str], Dict[str, Any]]
    error_message: Callable[[Any], Optional[str]]


def _build_anthropic(cfg: ProviderConfig, api_key: str, model: str, messages, system_prompt, max_tokens, json_mode):
    return anthropic.build_request(api_key, model, messages, system_prompt, max_tokens or cfg.max_tokens)


def _build_openai(cfg: ProviderConfig, api_key: str, model: str, messages, system_prompt, max_tokens, json_mode):
    return openai_compat.build_request(
        api_key, model, messages, system_prompt, max_tokens or cfg.max_tokens, json_mode=json_mode
    )


def _build_openrouter(cfg: ProviderConfig, api_key: str, model: str, messages, system_prompt, max_tokens, json_mode):
    return openrouter.build_request(
        api_key,
        model,
        messages,
        system_prompt,
        max_tokens or cfg.max_tokens,
        json_mode=json_mode,
        referer=cfg.referer,
        title=cfg.title,
    )


PROVIDERS: Dict[str, _Wire] = {
    "anthropic": _Wire(_build_anthropic, anthropic.extract_text, anthropic.extract_usage, anthropic.error_message),
    "openai": _Wire(
        _build_openai,
        openai_compat.extract_text,
        openai_compat.extract_usage,
        openai_compat.error_message,
    ),
    "openrouter": _Wire(_build_openrouter, openrouter.extract_text, openrouter.extract_usage, openrouter.error_message),
}


def list_providers() -> List[str]:
    return list(PROVIDERS)


def is_supported(provider: str) -> bool:
    return provider in PROVIDERS


@dataclass
class ProviderReply:
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)
    latency: float = 0.0


class ProviderClient:
    """Send chat requests to any supported provider.

    ``session_factory`` builds the ``requests.Session`` used for one call;
    tests pass a fake. Every call is recorded in ``metrics`` when given.
    """

    def __init__(
        self,
        configs: Optional[Dict[str, ProviderConfig]] = None,
        session_factory: Callable[[], Any] = requests.Session,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.configs = configs or default_provider_configs()
        self._session_factory = session_factory
        self.metrics = metrics

    def default_model(self, provider: str) -> str:
        cfg = self.configs.get(provider)
        return cfg.default_model if cfg else ""

    def send(
        self,
        provider: str,
        api_key: str,
        model: str,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        token: Optional[CancelToken] = None,
        json_mode: Optional[bool] = None,
    ) -> ProviderReply:
        """Send one chat request and return the reply text.

        ``json_mode`` overrides the provider's configured response_format setting.
        """
        wire = PROVIDERS.get(provider)
        cfg = self.configs.get(provider)
        if wire is None or cfg is None:
            raise ProviderError(provider or "unknown", ErrorKind.VALIDATION, f"unsupported provider: {provider!r}")
        if not api_key:
            raise ProviderError(provider, ErrorKind.AUTH, "API key not configured")
        model = model or cfg.default_model
        token = token or CancelToken.never()
        token.raise_if_cancelled()

        if json_mode is None:
            json_mode = cfg.json_mode
        path, headers, body = wire.build(cfg, api_key, model, messages, system_prompt, max_tokens, json_mode)
        url = cfg.base_url.rstrip("/") + path
        timeout = token.clamp(cfg.timeout)
        if timeout <= 0:
            raise OperationCancelled("deadline exceeded", deadline_exceeded=True)

        started = time.monotonic()
        try:
            reply = self._post(provider, wire, url, headers, body, model, timeout, token)
        except ProviderError as exc:
            self._record(provider, started, False, error=str(exc))
            raise
        except OperationCancelled:
            self._record(provider, started, False, error="cancelled")
            raise
        reply.latency = time.monotonic() - started
        self._record(provider, started, True, tokens=reply.usage.get("total_tokens"))
        return reply

    def _post(self, provider, wire: _Wire, url, headers, body, model, timeout, token: CancelToken) -> ProviderReply:
        session = self._session_factory()
        unregister = token.on_cancel(session.close)
        try:
            try:
                resp = session.post(url, headers=headers, json=body, timeout=timeout)
            except requests.Timeout as e:
                if token.cancelled:
                    raise OperationCancelled("provider call cancelled", deadline_exceeded=token.expired) from e
                raise ProviderError(provider, ErrorKind.TIMEOUT, f"request timed out after {timeout:.1f}s") from e
            except requests.RequestException as e:
                if token.cancelled:
                    raise OperationCancelled("provider call cancelled", deadline_exceeded=token.expired) from e
                raise ProviderError(provider, ErrorKind.NETWORK, f"request failed: {e}") from e
        finally:
            unregister()
            session.close()

        if not (200 <= resp.status_code < 300):
            raise self._http_error(provider, wire, resp)

        try:
            data = resp.json()
        except ValueError as e:
            snippet = (resp.text or "")[:200].replace("\n", " ")
            raise ProviderError(provider, ErrorKind.MODEL, f"non-JSON response: {snippet}") from e
        if not isinstance(data, dict):
            raise ProviderError(provider, ErrorKind.MODEL, "unexpected response shape")
        text = wire.extract_text(data)
        if text is None:
            raise ProviderError(provider, ErrorKind.MODEL, "response contained no text content")
        return ProviderReply(text=text, usage=wire.extract_usage(data, model))

    @staticmethod
    def _http_error(provider: str, wire: _Wire, resp: Any) -> ProviderError:
        raw = (resp.text or "").strip()
        detail = None
        try:
            detail = wire.error_message(resp.json())
        except ValueError:
            detail = None
        snippet = (detail or raw)[:200].replace("\n", " ")
        kind = classify_status(resp.status_code)
        return ProviderError(provider, kind, f"HTTP {resp.status_code}: {snippet}", status_code=resp.status_code)

    def _record(self, provider: str, started: float, success: bool, tokens=None, error=None) -> None:
        if self.metrics is not None:
            self.metrics.record_request(provider, time.monotonic() - started, success, tokens=tokens, error=error)

    def test_connection(
        self,
        provider: str,
        api_key: str,
        model: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> ProviderReply:
        """Send a one-token request to check credentials and reachability."""
        return self.send(
            provider,
            api_key,
            model or self.default_model(provider),
            [ChatMessage(role=ROLE_USER, content="test")],
            max_tokens=1,
            token=token,
            json_mode=False,
        )
