"""PM Agent 顶层包。

该包提供仪表盘 "Project Manager" 助手的运行时核心，
包括配置加载、领域模型、本地 LLM Provider 适配、
准入控制、工作队列、设置校验、请求编排与生命周期管理。
"""

from pm_agent.runtime import AgentRuntime, EventChannel, InitResult, RuntimeConfig

__all__ = ["AgentRuntime", "EventChannel", "InitResult", "RuntimeConfig"]
