"""Provider 抽象接口。

运行时不直接依赖具体服务的 HTTP 细节，而是依赖此协议：

- 每种本地服务实现一个 ProviderClient（LmStudioClient、OllamaClient）。
- 负责：列出可用模型，以及把对话上下文转成具体 API 请求并取回补全文本。

所有方法都是协程，调用方负责超时与取消（见 runtime.orchestrator）。
"""

from typing import List, Protocol

from pm_agent.domain.models import ConversationTurn, ModelParameters


class ProviderClient(Protocol):
    """本地 LLM Provider 客户端协议。

    实现者需要提供：
    - name: 服务类型（lmStudio / ollama），用于日志。
    - list_models(): 返回服务端可用的模型 ID 列表。
    - complete(...): 执行一次非流式生成，返回补全文本。
    """

    name: str
    base_url: str

    async def list_models(self) -> List[str]:
        ...

    async def complete(
        self,
        messages: List[ConversationTurn],
        model: str,
        parameters: ModelParameters,
    ) -> str:
        ...
