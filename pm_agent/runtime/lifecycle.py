"""Agent 运行时与生命周期控制。

状态机：
    UNINITIALIZED -> INITIALIZING -> READY -> SHUTTING_DOWN -> SHUTDOWN

- initialize() 可重入：INITIALIZING 期间的并发调用共享同一个进行中的结果，
  READY 后再次调用直接返回成功，不会重新校验。
- shutdown() 幂等：清理只执行一次，SHUTDOWN 为吸收态。

所有状态都在同一个事件循环上修改，依靠布尔/状态标志互斥，不使用锁。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from pm_agent.domain.conversation import CONVERSATION_ID_KEY, ConversationHistory, StateStore
from pm_agent.domain.exceptions import BusinessError, ShutdownError, ThrottledError
from pm_agent.domain.models import (
    Admission,
    CandidateSettings,
    InboundEvent,
    QueueEntry,
    RuntimeState,
    ThrottleWindow,
    ValidatedSettings,
)
from pm_agent.domain.result import Result
from pm_agent.infrastructure.logging.logger import log_event
from pm_agent.infrastructure.storage.json_store import JsonStateStore
from pm_agent.prompts import load_system_prompt
from pm_agent.providers import ProviderFactory, create_provider

from .channel import INBOUND_TOPIC, EventChannel, Subscription
from .config import RuntimeConfig
from .emitter import ResponseEmitter
from .gate import FloodGate
from .orchestrator import RequestOrchestrator
from .validator import SettingsValidator
from .work_queue import WorkQueue


THROTTLE_WARNING = "Too many messages in a short time. Please wait a few seconds before sending more."
SHUTDOWN_NOTICE = "Project Manager agent has been shut down."


@dataclass(frozen=True)
class InitResult:
    """initialize() 的结果。

    ok=True 且 verified=False 表示 best-effort 模式：运行时可用，
    但设置没有通过服务端确认，error 中保留最后一次校验失败的原因。
    """

    ok: bool
    verified: bool = False
    settings: Optional[ValidatedSettings] = None
    error: Optional[BusinessError] = None


class AgentRuntime:
    """Project Manager Agent 运行时。

    依赖全部通过构造参数注入（时钟、Provider 工厂、事件通道、状态存储），
    同一进程内可以存在多个互不影响的实例。
    """

    def __init__(
        self,
        *,
        channel: Optional[EventChannel] = None,
        store: Optional[StateStore] = None,
        config: Optional[RuntimeConfig] = None,
        provider_factory: ProviderFactory = create_provider,
        clock: Callable[[], float] = time.monotonic,
        system_prompt: Optional[str] = None,
    ):
        self.config = config or RuntimeConfig.from_settings()
        self.channel = channel or EventChannel()
        self._store = store if store is not None else JsonStateStore()
        self._clock = clock
        self._state = RuntimeState.UNINITIALIZED

        self.history = ConversationHistory(self._store, cap=self.config.history_cap)
        self.validator = SettingsValidator(self._store, self.config, provider_factory)
        self.orchestrator = RequestOrchestrator(
            self.history,
            system_prompt or load_system_prompt(self.config.agent_type),
            config=self.config,
            provider_factory=provider_factory,
            validator=self.validator,
        )
        self.emitter = ResponseEmitter(
            self.channel,
            clock=clock,
            author=self.config.author,
            min_spacing=self.config.emit_min_spacing,
            recent_limit=self.config.recent_id_limit,
            recent_keep=self.config.recent_id_keep,
        )
        self.queue = WorkQueue(
            self._handle_entry,
            clock=clock,
            tick_interval=self.config.queue_tick,
            min_interval=self.config.queue_min_interval,
            entry_ttl=self.config.queue_entry_ttl,
        )
        self.gate = FloodGate(
            self.queue,
            clock=clock,
            limit=self.config.throttle_limit,
            window=self.config.throttle_window,
            cooldown=self.config.throttle_cooldown,
            on_throttle=self._on_throttle,
        )

        self._candidate: Optional[CandidateSettings] = None
        self._init_task: Optional[asyncio.Future] = None
        self._init_result: Optional[InitResult] = None
        self._shutdown_task: Optional[asyncio.Future] = None
        self._subscriptions: List[Subscription] = []
        self._background: set = set()
        self._log_ctx: Dict[str, Any] = {"agent_type": self.config.agent_type}

    # ---- 只读状态 ----

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def settings(self) -> Optional[ValidatedSettings]:
        """最近一次校验（或 best-effort）得到的设置。"""
        return self.validator.cached

    @property
    def conversation_id(self) -> Optional[str]:
        return self._store.get(CONVERSATION_ID_KEY)

    # ---- 初始化 ----

    async def initialize(self, candidate: Optional[CandidateSettings] = None) -> InitResult:
        if self._state in (RuntimeState.SHUTTING_DOWN, RuntimeState.SHUTDOWN):
            return InitResult(ok=False, error=ShutdownError(code="SHUTDOWN", message="Runtime is shut down"))
        if self._state == RuntimeState.READY and self._init_result is not None:
            return self._init_result
        if self._init_task is None:
            self._state = RuntimeState.INITIALIZING
            self._init_task = asyncio.ensure_future(self._do_initialize(candidate))
        task = self._init_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return InitResult(ok=False, error=ShutdownError(code="SHUTDOWN", message="Shut down during initialization"))
            raise
        except Exception:
            # 意外故障向上传播；清空任务以便下一次调用重新初始化
            if self._init_task is task:
                self._init_task = None
            raise

    async def _do_initialize(self, candidate: Optional[CandidateSettings]) -> InitResult:
        log_event(logging.INFO, "Initializing runtime", self._log_ctx)
        if not self._store.get(CONVERSATION_ID_KEY):
            self._store.set(CONVERSATION_ID_KEY, f"c-{uuid4().hex}")

        cached = self.validator.load_cached()
        self._candidate = candidate or (cached.to_candidate() if cached else self.validator.defaults())
        result = await self.validator.validate_with_fallback(self._candidate)
        if self._state != RuntimeState.INITIALIZING:
            return InitResult(ok=False, error=ShutdownError(code="SHUTDOWN", message="Shut down during initialization"))

        if result.ok:
            init_result = InitResult(ok=True, verified=True, settings=result.value)
        else:
            settings = self.validator.best_effort(self._candidate)
            log_event(
                logging.WARNING,
                "Validation failed on all providers, continuing with unverified settings",
                self._log_ctx,
                error=result.error.message,
                code=result.error.code,
                server_type=settings.server_type,
                model=settings.model,
            )
            init_result = InitResult(ok=True, verified=False, settings=settings, error=result.error)

        self._subscriptions.append(self.channel.subscribe(INBOUND_TOPIC, self._on_inbound))
        self.queue.start()
        self.gate.open()
        self._init_result = init_result
        self._state = RuntimeState.READY
        log_event(
            logging.INFO,
            "Runtime ready",
            self._log_ctx,
            verified=init_result.verified,
            conversation_id=self.conversation_id,
        )
        return init_result

    # ---- 入站 ----

    def submit(self, event: Union[InboundEvent, Dict[str, Any]]) -> Admission:
        """准入一条 UI 事件；只有通过准入的事件会进入工作队列。"""
        if isinstance(event, dict):
            event = InboundEvent.from_dict(event)
        if self._state != RuntimeState.READY:
            return Admission.drop("shutdown")
        admission = self.gate.admit(event)
        if not admission.accepted:
            log_event(logging.INFO, "Inbound event dropped", self._log_ctx, message_id=event.message_id, reason=admission.reason)
        return admission

    def _on_inbound(self, payload: Any) -> None:
        self.submit(payload)

    def _on_throttle(self, window: ThrottleWindow) -> None:
        error = ThrottledError(
            code="THROTTLED",
            message=THROTTLE_WARNING,
            http_status=429,
            count=window.count,
            cooldown_until=window.cooldown_until,
        )
        log_event(logging.WARNING, "Throttle warning sent", self._log_ctx, code=error.code, episodes=self.gate.episodes)
        self.emitter.emit(
            error.message,
            message_id=f"throttle-{uuid4().hex}",
            is_error=True,
            bypass_spacing=True,
        )
        limit = self.config.emergency_throttle_episodes
        if limit and self.gate.episodes >= limit:
            log_event(logging.ERROR, "Emergency shutdown after repeated floods", self._log_ctx, episodes=self.gate.episodes)
            self._spawn(self.shutdown(reason="emergency"))

    # ---- 处理 ----

    async def _handle_entry(self, entry: QueueEntry) -> Result[str, BusinessError]:
        event = entry.payload
        if event.settings is not None and (self._candidate is None or event.settings.differs_from(self._candidate)):
            await self.update_settings(event.settings)

        settings = self.settings
        if settings is None:
            settings = self.validator.best_effort(self._candidate)
        try:
            result = await self.orchestrator.process(event.message, settings)
        except Exception:
            # 意外故障：先告知 UI，再交给队列记录并标记为 error
            if self._state == RuntimeState.READY:
                await self.emitter.deliver(
                    "Error: unexpected failure while processing the message",
                    message_id=event.message_id,
                    is_error=True,
                )
            raise
        if self._state != RuntimeState.READY:
            return result
        if result.ok:
            await self.emitter.deliver(result.value, message_id=event.message_id)
        else:
            error = result.error
            log_event(
                logging.ERROR,
                "Message processing failed",
                self._log_ctx,
                message_id=event.message_id,
                code=error.code,
                error_type=type(error).__name__,
            )
            await self.emitter.deliver(f"Error: {error.message}", message_id=event.message_id, is_error=True)
        return result

    async def update_settings(self, candidate: CandidateSettings) -> Result[ValidatedSettings, BusinessError]:
        """校验新设置；失败时保留当前设置不变。

        只有校验通过的设置才会被记为当前候选，
        失败的设置随下一条消息再次到达时会重新校验。
        """
        result = await self.validator.validate(candidate)
        if result.ok:
            self._candidate = candidate
            log_event(logging.INFO, "Settings updated", self._log_ctx, model=result.value.model, server_type=result.value.server_type)
        else:
            log_event(logging.WARNING, "Settings update rejected", self._log_ctx, error=result.error.message)
        return result

    def cancel_current(self) -> bool:
        return self.orchestrator.cancel()

    def clear_conversation(self) -> str:
        """清空对话历史并生成新的会话 ID。"""
        self.history.clear()
        conversation_id = f"c-{uuid4().hex}"
        self._store.set(CONVERSATION_ID_KEY, conversation_id)
        log_event(logging.INFO, "Conversation cleared", self._log_ctx, conversation_id=conversation_id)
        return conversation_id

    # ---- 关闭 ----

    async def shutdown(self, reason: str = "requested") -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._do_shutdown(reason))
        await asyncio.shield(self._shutdown_task)

    async def _do_shutdown(self, reason: str) -> None:
        previous = self._state
        self._state = RuntimeState.SHUTTING_DOWN
        log_event(logging.INFO, "Shutting down runtime", self._log_ctx, reason=reason, previous_state=previous.value)

        self.gate.close()
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self.orchestrator.cancel()
        await self.queue.stop()
        for task in list(self._background):
            if task is not asyncio.current_task():
                task.cancel()
        self._background.clear()

        self.emitter.emit(
            SHUTDOWN_NOTICE,
            message_id=f"shutdown-{uuid4().hex}",
            bypass_spacing=True,
        )
        self._state = RuntimeState.SHUTDOWN
        log_event(logging.INFO, "Runtime shut down", self._log_ctx, reason=reason)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
