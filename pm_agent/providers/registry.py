"""Provider 配置。

本模块集中描述每种本地 LLM 服务的约定：

- base_url: 该类型服务的规范默认地址。
- port: 约定端口，用于 URL 归一化时判断地址是否匹配服务类型。
- models_path / completion_path: 模型列表与生成接口的路径。

运行时只关心 server_type，具体端点由这里集中配置，便于接入更多兼容服务。"""

from dataclasses import dataclass
from typing import Mapping, Tuple


@dataclass(frozen=True)
class ProviderConfig:
    """某种本地 LLM 服务的整体配置。"""

    name: str
    base_url: str
    port: int
    models_path: str
    completion_path: str


LMSTUDIO_CONFIG = ProviderConfig(
    name="lmStudio",
    base_url="http://localhost:1234",
    port=1234,
    models_path="/v1/models",
    completion_path="/v1/chat/completions",
)

OLLAMA_CONFIG = ProviderConfig(
    name="ollama",
    base_url="http://localhost:11434",
    port=11434,
    models_path="/api/tags",
    completion_path="/api/generate",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "lmStudio": LMSTUDIO_CONFIG,
    "ollama": OLLAMA_CONFIG,
}

# 模型回退时的架构族关键字，按优先级排列
DEFAULT_MODEL_PREFERENCES: Tuple[str, ...] = ("qwen", "deepseek", "mistral", "llama")


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = (name or "").lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def other_provider(name: str) -> ProviderConfig:
    """返回另一种已知服务类型，用于一次性回退。"""

    current = get_provider_config(name)
    for cfg in PROVIDER_REGISTRY.values():
        if cfg.name != current.name:
            return cfg
    raise KeyError(f"No fallback provider for {name!r}")
