from typing import Any, List, Optional, Protocol

from .models import ConversationTurn, Role


HISTORY_KEY = "conversation_history"
CONVERSATION_ID_KEY = "conversation_id"
SETTINGS_CACHE_KEY = "validated_settings"


class StateStore(Protocol):
    """宿主提供的简单键值存储（get/set）。"""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class ConversationHistory:
    """有序、只追加的对话历史。

    请求期间只读取最近 K 轮，裁剪到上限只在持久化时发生，
    保证正在进行的请求看到的上下文不会被中途改变。
    """

    def __init__(self, store: StateStore, cap: int = 50):
        self._store = store
        self._cap = cap
        self._turns: List[ConversationTurn] = self._load()

    def _load(self) -> List[ConversationTurn]:
        raw = self._store.get(HISTORY_KEY) or []
        turns: List[ConversationTurn] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            role = item.get("role")
            if role not in ("system", "user", "assistant"):
                continue
            turns.append(ConversationTurn(role=role, content=str(item.get("content") or "")))
        return turns[-self._cap:]

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def recent(self, k: int) -> List[ConversationTurn]:
        if k <= 0:
            return []
        return list(self._turns[-k:])

    def append(self, role: Role, content: str) -> None:
        self._turns.append(ConversationTurn(role=role, content=content))

    def append_pair(self, user_content: str, assistant_content: str) -> None:
        self.append("user", user_content)
        self.append("assistant", assistant_content)

    def persist(self) -> None:
        if len(self._turns) > self._cap:
            del self._turns[: len(self._turns) - self._cap]
        self._store.set(HISTORY_KEY, [t.to_dict() for t in self._turns])

    def clear(self) -> None:
        self._turns = []
        self._store.set(HISTORY_KEY, [])

    def last(self) -> Optional[ConversationTurn]:
        return self._turns[-1] if self._turns else None
