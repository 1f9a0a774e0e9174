"""对外 API 服务模块。

为不自行管理运行时实例的宿主提供简化的函数接口。
"""

from typing import Any, Dict, Optional
from uuid import uuid4

from pm_agent.config.settings import settings as app_settings
from pm_agent.domain.models import Admission, CandidateSettings, InboundEvent, RuntimeState
from pm_agent.infrastructure.storage.json_store import JsonStateStore
from pm_agent.runtime import AgentRuntime, RuntimeConfig


_runtime: Optional[AgentRuntime] = None


def get_default_runtime() -> AgentRuntime:
    """获取默认的运行时实例（单例）。关闭后再次调用会创建新实例。"""
    global _runtime
    if _runtime is None or _runtime.state == RuntimeState.SHUTDOWN:
        _runtime = AgentRuntime(
            store=JsonStateStore(root=app_settings.storage_root),
            config=RuntimeConfig.from_settings(app_settings),
        )
    return _runtime


async def submit_message(
    message: str,
    message_id: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Admission:
    """向默认运行时提交一条用户消息。

    Args:
        message: 用户输入内容
        message_id: 消息ID（可选，不提供则自动生成）
        settings: UI 传来的 camelCase 设置（可选）

    Returns:
        准入结果；被拒绝时 reason 为 shutdown/duplicate/throttled/invalid
    """
    runtime = get_default_runtime()
    await runtime.initialize()
    event = InboundEvent(
        message=message,
        message_id=message_id or f"msg-{uuid4().hex}",
        settings=CandidateSettings.from_dict(settings) if settings else None,
    )
    return runtime.submit(event)


async def shutdown_default_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.shutdown()
        _runtime = None
