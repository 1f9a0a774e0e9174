"""Ollama Provider 适配器。

- 模型列表: GET {base_url}/api/tags -> {"models": [{"name": ...}]}
- 生成: POST {base_url}/api/generate -> {"response": ...}

/api/generate 只接受单个 prompt，这里把 system + 历史 + 当前消息
拼接为一段对话文本，并以 "Assistant:" 结尾引导模型续写。
"""

from typing import Any, Dict, List, Optional

from pm_agent.domain.exceptions import MalformedResponseError
from pm_agent.domain.models import ConversationTurn, ModelParameters
from pm_agent.providers.http_utils import request_json
from pm_agent.providers.registry import OLLAMA_CONFIG


_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


class OllamaClient:
    """Ollama Provider 客户端实现。"""

    name = "ollama"

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = 10.0):
        self.base_url = (base_url or OLLAMA_CONFIG.base_url).rstrip("/")
        self._timeout = timeout

    async def list_models(self) -> List[str]:
        data = await request_json("GET", f"{self.base_url}{OLLAMA_CONFIG.models_path}", timeout=self._timeout)
        items = data.get("models")
        if not isinstance(items, list):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Model list missing 'models' array")
        return [str(m["name"]) for m in items if isinstance(m, dict) and m.get("name")]

    async def complete(
        self,
        messages: List[ConversationTurn],
        model: str,
        parameters: ModelParameters,
    ) -> str:
        payload = self._build_payload(messages, model, parameters)
        data = await request_json(
            "POST",
            f"{self.base_url}{OLLAMA_CONFIG.completion_path}",
            timeout=self._timeout,
            payload=payload,
        )
        response = data.get("response")
        if not isinstance(response, str):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response has no 'response' field")
        return response

    def _build_payload(self, messages: List[ConversationTurn], model: str, parameters: ModelParameters) -> Dict[str, Any]:
        return {
            "model": model,
            "prompt": self.build_prompt(messages),
            "stream": False,
            "options": {
                "temperature": parameters.temperature,
                "top_p": parameters.top_p,
                "top_k": parameters.top_k,
                "repeat_penalty": parameters.repeat_penalty,
                "num_predict": parameters.max_tokens,
                "num_ctx": parameters.context_length,
            },
        }

    @staticmethod
    def build_prompt(messages: List[ConversationTurn]) -> str:
        lines = [f"{_ROLE_LABELS.get(m.role, m.role)}: {m.content}" for m in messages]
        lines.append("Assistant:")
        return "\n\n".join(lines)
