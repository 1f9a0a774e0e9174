import copy
import json
import os
import re
from pathlib import Path
from typing import Any, Dict
from uuid import uuid4

from pm_agent.config.settings import settings
from pm_agent.domain.conversation import StateStore
from pm_agent.domain.exceptions import BusinessError


_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonStateStore(StateStore):
    """每个 key 一个 JSON 文件，写入时先写临时文件再原子替换。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._state_root = self._root / "state"
        self._state_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return default
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._state_root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key or ""):
            raise BusinessError(code="STORE_INVALID_KEY", message=f"Invalid state key: {key!r}")
        return self._state_root / f"{key}.json"


class MemoryStateStore(StateStore):
    def __init__(self, initial: Dict[str, Any] | None = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
