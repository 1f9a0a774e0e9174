"""LLM 请求编排。

负责一次消息处理的完整生命周期：
1. 构建上下文：固定 system prompt + 最近 K 轮历史 + 当前用户消息。
2. 带中止令牌发起 Provider 调用，超时计时器到期即中止并抛出 LlmTimeoutError。
3. 对失败进行分类（连接、超时、响应格式、HTTP 状态、取消）。
4. 成功后追加 (user, assistant) 一对历史并持久化。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, List, Optional
from uuid import uuid4

from pm_agent.domain.conversation import ConversationHistory
from pm_agent.domain.exceptions import (
    BusinessError,
    HttpError,
    LlmTimeoutError,
    RequestCancelledError,
    ValidationError,
)
from pm_agent.domain.models import ConversationTurn, ValidatedSettings
from pm_agent.domain.result import Err, Ok, Result
from pm_agent.infrastructure.logging.logger import log_event
from pm_agent.providers import ProviderFactory, create_provider

from .config import RuntimeConfig
from .validator import SettingsValidator


class AbortToken:
    """绑定到一次网络调用的取消句柄。

    reason 记录中止原因（"timeout" 或 "cancelled"），
    用于把底层的 CancelledError 转换成对应的业务异常。
    """

    def __init__(self) -> None:
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def aborted(self) -> bool:
        return self.reason is not None

    def bind(self, task: asyncio.Task, timeout: Optional[float]) -> None:
        self._task = task
        if timeout is not None:
            self._timer = asyncio.get_running_loop().call_later(timeout, self.abort, "timeout")

    def abort(self, reason: str = "cancelled") -> bool:
        if self.aborted or self._task is None or self._task.done():
            return False
        self.reason = reason
        self._task.cancel()
        return True

    def release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class RequestOrchestrator:
    def __init__(
        self,
        history: ConversationHistory,
        system_prompt: str,
        *,
        config: Optional[RuntimeConfig] = None,
        provider_factory: ProviderFactory = create_provider,
        validator: Optional[SettingsValidator] = None,
    ):
        self._history = history
        self._system_prompt = system_prompt
        self._config = config or RuntimeConfig()
        self._provider_factory = provider_factory
        self._validator = validator
        self._token: Optional[AbortToken] = None

    @property
    def in_flight(self) -> bool:
        return self._token is not None

    def build_context(self, message: str) -> List[ConversationTurn]:
        turns = [ConversationTurn(role="system", content=self._system_prompt)]
        turns.extend(self._history.recent(self._config.context_turns))
        turns.append(ConversationTurn(role="user", content=message))
        return turns

    async def process(self, message: str, settings: ValidatedSettings) -> Result[str, BusinessError]:
        start_time = time.monotonic()
        log_ctx = {
            "trace_id": f"tr-{uuid4().hex}",
            "server_type": settings.server_type,
            "model": settings.model,
        }
        context = self.build_context(message)
        client = self._provider_factory(settings.server_type, settings.api_url, None)
        log_event(logging.INFO, "Calling provider", log_ctx, message_count=len(context), verified=settings.verified)
        try:
            content = await self._call(client.complete(context, settings.model, settings.parameters))
        except BusinessError as e:
            log_event(
                logging.WARNING,
                "Provider call failed",
                log_ctx,
                code=e.code,
                error=e.message,
                error_type=type(e).__name__,
                elapsed_seconds=round(time.monotonic() - start_time, 2),
            )
            if self._is_settings_failure(e):
                await self._revalidate(settings, log_ctx)
            return Err(e)

        self._history.append_pair(message, content)
        self._history.persist()
        log_event(
            logging.INFO,
            "Completed request",
            log_ctx,
            elapsed_seconds=round(time.monotonic() - start_time, 2),
            response_chars=len(content),
            history_size=len(self._history),
        )
        return Ok(content)

    def cancel(self) -> bool:
        """中止进行中的调用；没有进行中的调用时返回 False。"""
        if self._token is None:
            return False
        return self._token.abort("cancelled")

    async def _call(self, coro: Awaitable[str]) -> str:
        token = AbortToken()
        task = asyncio.ensure_future(coro)
        token.bind(task, self._config.llm_timeout)
        self._token = token
        try:
            return await task
        except asyncio.CancelledError:
            if token.reason == "timeout":
                raise LlmTimeoutError(
                    code="TIMEOUT",
                    message=f"LLM request exceeded {self._config.llm_timeout:g}s",
                )
            if token.reason == "cancelled":
                raise RequestCancelledError(code="CANCELLED", message="LLM request was cancelled")
            raise
        finally:
            token.release()
            self._token = None

    @staticmethod
    def _is_settings_failure(error: BusinessError) -> bool:
        if isinstance(error, ValidationError):
            return True
        if isinstance(error, HttpError):
            return error.status == 404 or "model" in error.body.lower()
        return False

    async def _revalidate(self, settings: ValidatedSettings, log_ctx: dict) -> None:
        if self._validator is None:
            return
        result = await self._validator.validate(settings.to_candidate())
        if result.ok:
            log_event(logging.INFO, "Settings re-validated after provider failure", log_ctx, resolved_model=result.value.model)
        else:
            log_event(logging.WARNING, "Re-validation failed", log_ctx, error=result.error.message)
