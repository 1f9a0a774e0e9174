"""本地 LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护各服务类型的端点约定与模型偏好 (registry)。
- 提供具体实现 (lmstudio_client、ollama_client)。
"""

from typing import Callable, Optional

from pm_agent.providers.base import ProviderClient
from pm_agent.providers.lmstudio_client import LmStudioClient
from pm_agent.providers.ollama_client import OllamaClient
from pm_agent.providers.registry import get_provider_config


ProviderFactory = Callable[[str, Optional[str], Optional[float]], ProviderClient]


def create_provider(
    server_type: str,
    base_url: Optional[str] = None,
    timeout: Optional[float] = 10.0,
) -> ProviderClient:
    """根据服务类型创建 Provider 实例。未知类型抛出 KeyError。"""

    cfg = get_provider_config(server_type)
    if cfg.name == "ollama":
        return OllamaClient(base_url or cfg.base_url, timeout=timeout)
    return LmStudioClient(base_url or cfg.base_url, timeout=timeout)
