"""运行时共享的数据模型。

本模块定义了 Agent 运行时在各组件之间传递的标准数据结构：

- Message: 发往 UI 的一条消息，id 一旦发出内容即不可变。
- ConversationTurn: 对话历史中的一轮（user/assistant/system）。
- CandidateSettings / ValidatedSettings: 未校验与已校验的 Provider 配置。
- QueueEntry / ThrottleWindow / RuntimeState: 运行时内部状态。
- InboundEvent / Admission: UI 入站事件以及准入结果。

UI 侧使用 camelCase 字段（messageId、serverType 等），
这里统一在 from_dict / to_event 中做转换。
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


Role = Literal["system", "user", "assistant"]
QueueStatus = Literal["pending", "processing", "done", "error"]
ServerType = Literal["lmStudio", "ollama"]


@dataclass
class Message:
    """发往 UI 的消息。"""

    id: str
    author: str
    content: str
    timestamp: str
    channel: Optional[str] = None
    mentions: List[str] = field(default_factory=list)
    is_thinking: bool = False
    is_error: bool = False

    def to_event(self) -> Dict[str, Any]:
        """转换为出站事件的 JSON 结构。"""
        return {
            "content": self.content,
            "messageId": self.id,
            "timestamp": self.timestamp,
            "isError": self.is_error,
        }


@dataclass
class ConversationTurn:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ModelParameters:
    """生成参数，字段名与 Provider 请求体一一对应。"""

    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    max_tokens: int = 1024
    context_length: int = 4096

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], base: Optional["ModelParameters"] = None) -> "ModelParameters":
        params = asdict(base or cls())
        aliases = {
            "topP": "top_p",
            "topK": "top_k",
            "repeatPenalty": "repeat_penalty",
            "maxTokens": "max_tokens",
            "contextLength": "context_length",
        }
        for key, value in (data or {}).items():
            name = aliases.get(key, key)
            if name in params and value is not None:
                params[name] = value
        return cls(**params)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "repeatPenalty": self.repeat_penalty,
            "maxTokens": self.max_tokens,
            "contextLength": self.context_length,
        }


@dataclass
class CandidateSettings:
    """用户或存储提供的配置，未经校验，字段可能缺失。"""

    server_type: Optional[str] = None
    api_url: Optional[str] = None
    model: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CandidateSettings":
        data = data or {}
        return cls(
            server_type=data.get("serverType", data.get("server_type")),
            api_url=data.get("apiUrl", data.get("api_url")),
            model=data.get("model"),
            parameters=data.get("parameters"),
        )

    def differs_from(self, other: "CandidateSettings") -> bool:
        """只比较有意义的字段：serverType、apiUrl、model。"""
        return (
            self.server_type != other.server_type
            or self.api_url != other.api_url
            or self.model != other.model
        )


@dataclass(frozen=True)
class ValidatedSettings:
    """经过服务端确认的配置，Orchestrator 只使用这种配置。

    verified=False 仅出现在 best-effort 初始化路径上：
    两个 Provider 都不可达时，使用缓存或默认配置继续运行。
    """

    server_type: ServerType
    api_url: str
    model: str
    parameters: ModelParameters
    verified: bool = True
    available_models: tuple = ()

    def to_candidate(self) -> CandidateSettings:
        return CandidateSettings(
            server_type=self.server_type,
            api_url=self.api_url,
            model=self.model,
            parameters=self.parameters.to_dict(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverType": self.server_type,
            "apiUrl": self.api_url,
            "model": self.model,
            "parameters": self.parameters.to_dict(),
            "verified": self.verified,
        }


@dataclass
class QueueEntry:
    message_id: str
    payload: "InboundEvent"
    enqueued_at: float
    status: QueueStatus = "pending"
    finished_at: Optional[float] = None


@dataclass
class ThrottleWindow:
    window_start: float
    count: int = 0
    limit: int = 10
    is_throttled: bool = False
    cooldown_until: Optional[float] = None


class RuntimeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    SHUTDOWN = "shutdown"


@dataclass
class InboundEvent:
    """UI 发来的请求：{message, messageId, settings?}。"""

    message: str
    message_id: str
    settings: Optional[CandidateSettings] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundEvent":
        raw_settings = data.get("settings")
        return cls(
            message=str(data.get("message") or ""),
            message_id=str(data.get("messageId") or data.get("message_id") or ""),
            settings=CandidateSettings.from_dict(raw_settings) if raw_settings else None,
        )


DropReason = Literal["shutdown", "duplicate", "throttled", "invalid"]


@dataclass(frozen=True)
class Admission:
    accepted: bool
    reason: Optional[DropReason] = None

    @classmethod
    def accept(cls) -> "Admission":
        return cls(accepted=True)

    @classmethod
    def drop(cls, reason: DropReason) -> "Admission":
        return cls(accepted=False, reason=reason)
