"""LM Studio Provider 适配器。

LM Studio 提供 OpenAI 兼容接口：
- 模型列表: GET {base_url}/v1/models -> {"data": [{"id": ...}]}
- 生成: POST {base_url}/v1/chat/completions -> {"choices": [{"message": {"content": ...}}]}

本实现只依赖公共字段：model/messages/temperature/top_p/top_k/repeat_penalty/max_tokens/stream。
"""

from typing import Any, Dict, List, Optional

from pm_agent.domain.exceptions import MalformedResponseError
from pm_agent.domain.models import ConversationTurn, ModelParameters
from pm_agent.providers.http_utils import request_json
from pm_agent.providers.registry import LMSTUDIO_CONFIG


class LmStudioClient:
    """LM Studio Provider 客户端实现。"""

    name = "lmStudio"

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = 10.0):
        self.base_url = (base_url or LMSTUDIO_CONFIG.base_url).rstrip("/")
        self._timeout = timeout

    async def list_models(self) -> List[str]:
        data = await request_json("GET", f"{self.base_url}{LMSTUDIO_CONFIG.models_path}", timeout=self._timeout)
        items = data.get("data")
        if not isinstance(items, list):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Model list missing 'data' array")
        return [str(m["id"]) for m in items if isinstance(m, dict) and m.get("id")]

    async def complete(
        self,
        messages: List[ConversationTurn],
        model: str,
        parameters: ModelParameters,
    ) -> str:
        payload = self._build_payload(messages, model, parameters)
        data = await request_json(
            "POST",
            f"{self.base_url}{LMSTUDIO_CONFIG.completion_path}",
            timeout=self._timeout,
            payload=payload,
        )
        return self._parse_response(data)

    # ---- 辅助方法 ----

    def _build_payload(self, messages: List[ConversationTurn], model: str, parameters: ModelParameters) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": parameters.temperature,
            "top_p": parameters.top_p,
            "top_k": parameters.top_k,
            "repeat_penalty": parameters.repeat_penalty,
            "max_tokens": parameters.max_tokens,
            "stream": False,
        }

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response has no choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response choice has no message content")
        return content
