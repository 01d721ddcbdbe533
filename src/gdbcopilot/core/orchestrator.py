"""Chat orchestration: model call, parse, run gdb commands, optional follow-up.

One :meth:`ChatOrchestrator.handle` call serves one user submission:

    prepare (cache, context trimming)
    -> primary model call through the resilience layer
    -> parse (with at most one reformat turn)
    -> run the requested gdb commands with capture
    -> follow-up model call with the captured output, if asked for
    -> result

Everything below runs under one :class:`CancelToken` whose deadline bounds
the whole orchestration.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from ..backends.base import DebuggerEngine
from ..errors import GdbCopilotError, OperationCancelled, ProviderError, ErrorKind
from ..llm.cache import ResponseCache, make_cache_key
from ..llm.context import ContextManager, estimate_tokens
from ..llm.metrics import MetricsCollector
from ..llm.providers import ProviderClient, is_supported
from ..llm.resilience import ResilientExecutor
from ..prompts.defaults import NOT_RUNNING_SUFFIX, SYSTEM_PROMPT, build_reformat_prompt, build_user_content
from ..session_log import (
    EVENT_CACHE_HIT,
    EVENT_CHAT_PARSE,
    EVENT_CHAT_RESULT,
    EVENT_CONTEXT_TRIMMED,
    EVENT_GDB_COMMAND,
    EVENT_GDB_OUTPUT,
    EVENT_LLM_REQUEST,
    EVENT_LLM_RESPONSE,
    EVENT_LLM_RETRY,
    EVENT_USER_INPUT,
    SessionLogHolder,
)
from ..settings import Settings, SettingsStore
from .cancel import CancelToken
from .executor import CommandExecutor, CommandOutcome
from .parser import parse_reply
from .state import (
    COMMAND_OUTPUT_CONTEXT_DESCRIPTION,
    COMMAND_OUTPUT_CONTEXT_TYPE,
    ActionBlock,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ContextItem,
    OrchestrationPhase,
    ROLE_USER,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0


def build_messages(request: ChatRequest) -> List[ChatMessage]:
    """History followed by the user message with its context block prepended."""
    messages = [ChatMessage(m.role, m.content) for m in request.history]
    messages.append(ChatMessage(ROLE_USER, build_user_content(request.message, request.context)))
    return messages


class ChatOrchestrator:
    def __init__(
        self,
        settings: SettingsStore,
        client: ProviderClient,
        resilience: ResilientExecutor,
        engine: Optional[DebuggerEngine],
        cache: Optional[ResponseCache] = None,
        context_manager: Optional[ContextManager] = None,
        metrics: Optional[MetricsCollector] = None,
        session_logs: Optional[SessionLogHolder] = None,
        capture_timeout: float = 2.0,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        reformat_enabled: bool = True,
    ) -> None:
        self.settings = settings
        self.client = client
        self.resilience = resilience
        self.engine = engine
        self.cache = cache
        self.context_manager = context_manager
        self.metrics = metrics
        self.session_logs = session_logs or SessionLogHolder()
        self.executor = CommandExecutor(engine, timeout=capture_timeout)
        self.request_timeout = request_timeout
        self.reformat_enabled = reformat_enabled

    # ------------------------------------------------------------------
    def handle(self, request: ChatRequest, token: Optional[CancelToken] = None) -> ChatResult:
        """Serve one chat submission and return the final answer.

        Provider failures on the primary turn propagate (after retries);
        everything after a usable primary reply degrades to the primary text.
        """
        token = token or CancelToken(self.request_timeout)
        settings = self.settings.get()
        if not is_supported(settings.provider):
            raise ProviderError(settings.provider, ErrorKind.VALIDATION, "unsupported provider")
        model = settings.model or self.client.default_model(settings.provider)
        log = self.session_logs
        log.event(
            EVENT_USER_INPUT,
            request.message,
            history_length=len(request.history),
            context_items=len(request.context),
        )

        cache_key = None
        if self.cache is not None and self.cache.enabled:
            cache_key = make_cache_key(settings.provider, model, request)
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._metric("record_cache_hit", settings.provider)
                log.event(EVENT_CACHE_HIT, "served from cache", cache_key=cache_key)
                return cached
            self._metric("record_cache_miss", settings.provider)

        req = self._fit_context(request)
        result = ChatResult(text="")
        result.phase = OrchestrationPhase.PRIMARY_PENDING
        try:
            raw = self._call(settings, model, req, token, result, turn="primary")
        except GdbCopilotError as e:
            result.phase = OrchestrationPhase.FAILED
            log.error(f"primary model call failed: {e}", provider=settings.provider, error_type=_kind(e))
            raise

        block = parse_reply(raw)
        result.phase = OrchestrationPhase.PARSED
        log.event(EVENT_CHAT_PARSE, block.text, strategy=block.strategy.value, commands=block.commands)
        if block.is_fallback and self.reformat_enabled and raw.strip():
            block = self._reformat(settings, model, req, raw, block, token, result)
        result.text = block.text
        result.parse_strategy = block.strategy

        if any(c.strip() for c in block.commands):
            if self.engine is not None and self.engine.is_running():
                self._execute(block, req, settings, model, token, result)
            else:
                result.text += NOT_RUNNING_SUFFIX
                log.event(EVENT_GDB_COMMAND, "skipped commands, gdb is not running", commands=block.commands)

        result.phase = OrchestrationPhase.DONE
        log.event(EVENT_CHAT_RESULT, result.text, **_result_payload(result))
        if cache_key is not None and self.cache is not None:
            self.cache.set(cache_key, result)
        return result

    # ------------------------------------------------------------------
    def _fit_context(self, request: ChatRequest) -> ChatRequest:
        if self.context_manager is None or not self.context_manager.enabled:
            return request
        trimmed_req, trimmed = self.context_manager.process(request)
        if trimmed:
            if self.metrics is not None:
                self.metrics.record_context_trim()
            self.session_logs.event(
                EVENT_CONTEXT_TRIMMED,
                "request trimmed to fit the context budget",
                before_tokens=estimate_tokens(request),
                after_tokens=estimate_tokens(trimmed_req),
            )
        return trimmed_req

    def _call(
        self,
        settings: Settings,
        model: str,
        req: ChatRequest,
        token: CancelToken,
        result: ChatResult,
        turn: str,
        max_attempts: Optional[int] = None,
    ) -> str:
        messages = build_messages(req)
        log = self.session_logs
        log.event(
            EVENT_LLM_REQUEST,
            req.message,
            turn=turn,
            provider=settings.provider,
            model=model,
            messages=len(messages),
        )

        def attempt() -> str:
            result.provider_calls += 1
            reply = self.client.send(
                settings.provider,
                settings.api_key,
                model,
                messages,
                system_prompt=SYSTEM_PROMPT,
                token=token,
            )
            return reply.text

        def on_retry(n: int, exc: BaseException, delay: float) -> None:
            log.event(EVENT_LLM_RETRY, str(exc), level=logging.WARNING, turn=turn, attempt=n, delay=round(delay, 3))

        text = self.resilience.execute(
            settings.provider, attempt, token=token, on_retry=on_retry, max_attempts=max_attempts
        )
        log.event(EVENT_LLM_RESPONSE, text, turn=turn, provider=settings.provider)
        return text

    def _reformat(
        self,
        settings: Settings,
        model: str,
        req: ChatRequest,
        raw: str,
        fallback: ActionBlock,
        token: CancelToken,
        result: ChatResult,
    ) -> ActionBlock:
        """One remedial turn asking the model to restate *raw* as JSON."""
        reformat_req = ChatRequest(message=build_reformat_prompt(raw), history=req.history, context=req.context)
        reformat_req = self._fit_context(reformat_req)
        try:
            reply = self._call(settings, model, reformat_req, token, result, turn="reformat", max_attempts=1)
        except OperationCancelled:
            raise
        except GdbCopilotError as e:
            logger.info("reformat turn failed, keeping the original reply: %s", e)
            self.session_logs.error(f"reformat turn failed: {e}", error_type=_kind(e))
            return fallback
        block = parse_reply(reply)
        if block.is_fallback:
            return fallback
        result.reformatted = True
        self.session_logs.event(EVENT_CHAT_PARSE, block.text, strategy=block.strategy.value, turn="reformat")
        return block

    def _execute(
        self,
        block: ActionBlock,
        req: ChatRequest,
        settings: Settings,
        model: str,
        token: CancelToken,
        result: ChatResult,
    ) -> None:
        result.phase = OrchestrationPhase.EXECUTING
        log = self.session_logs

        def on_outcome(outcome: CommandOutcome) -> None:
            if outcome.ok:
                log.event(EVENT_GDB_OUTPUT, outcome.output, command=outcome.command, elapsed=round(outcome.elapsed, 3))
            else:
                log.error(f"gdb command failed: {outcome.command}: {outcome.error}", command=outcome.command)

        execution = self.executor.execute(block.commands, token=token, on_outcome=on_outcome)
        result.executed_commands = execution.executed_commands
        result.combined_output = execution.combined_output
        logger.debug(execution.summary())

        if not (block.wait_for_output and result.combined_output.strip()):
            return
        result.phase = OrchestrationPhase.FOLLOW_UP_PENDING
        follow_req = req.with_context(
            ContextItem(
                type=COMMAND_OUTPUT_CONTEXT_TYPE,
                description=COMMAND_OUTPUT_CONTEXT_DESCRIPTION,
                content=result.combined_output,
            )
        )
        follow_req = self._fit_context(follow_req)
        try:
            reply = self._call(settings, model, follow_req, token, result, turn="follow-up")
        except Exception as e:
            # the primary answer stands on any follow-up failure
            result.follow_up_error = str(e) or e.__class__.__name__
            logger.info("follow-up turn failed, keeping primary text: %s", result.follow_up_error)
            log.error(f"follow-up turn failed: {result.follow_up_error}", error_type=_kind(e))
            return
        if reply.strip():
            follow = parse_reply(reply)
            result.text = follow.text
            log.event(EVENT_CHAT_PARSE, follow.text, strategy=follow.strategy.value, turn="follow-up")

    def _metric(self, name: str, provider: str) -> None:
        if self.metrics is not None:
            getattr(self.metrics, name)(provider)


def _kind(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.kind.value
    if isinstance(exc, OperationCancelled):
        return "timeout" if exc.deadline_exceeded else "cancelled"
    return "internal"


def _result_payload(result: ChatResult) -> dict:
    payload = result.to_dict()
    payload.pop("text", None)
    return payload
