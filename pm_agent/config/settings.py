"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("PM_AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_server_type: str = Field(
        default="lmStudio",
        description="默认的本地 LLM 服务类型：lmStudio 或 ollama",
    )
    default_model: str = Field(
        default="qwen2.5-7b-instruct-1m",
        description="默认模型 ID，校验时若服务端不存在会自动回退",
    )

    # 生成参数默认值
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    top_k: int = Field(default=40, ge=0)
    repeat_penalty: float = Field(default=1.1, ge=0.0)
    max_tokens: int = Field(default=1024, ge=1)
    context_length: int = Field(default=4096, ge=1)

    model_preferences: List[str] = Field(
        default_factory=lambda: ["qwen", "deepseek", "mistral", "llama"],
        description="模型回退时的关键字优先级（按顺序匹配）",
    )

    # ---- 超时 ----
    http_timeout: float = Field(default=10.0, ge=1.0, description="模型列表请求超时时间（秒）")
    llm_timeout: float = Field(default=60.0, ge=1.0, description="单次生成请求超时时间（秒）")

    # ---- 运行时调优 ----
    throttle_limit: int = Field(default=10, ge=1, description="限流窗口内允许的事件数")
    throttle_window: float = Field(default=1.0, gt=0.0, description="限流窗口（秒）")
    throttle_cooldown: float = Field(default=5.0, gt=0.0, description="触发限流后的冷却时间（秒）")
    emergency_throttle_episodes: int = Field(
        default=0,
        ge=0,
        description="累计限流次数达到该值时紧急关闭运行时，0 表示禁用",
    )
    queue_tick: float = Field(default=0.1, gt=0.0, description="队列轮询间隔（秒）")
    queue_min_interval: float = Field(default=0.1, ge=0.0, description="两条消息处理之间的最小间隔（秒）")
    queue_entry_ttl: float = Field(default=300.0, gt=0.0, description="已完成队列条目的保留时间（秒）")
    emit_min_spacing: float = Field(default=0.1, ge=0.0, description="两次输出之间的最小间隔（秒）")
    recent_id_limit: int = Field(default=100, ge=1)
    recent_id_keep: int = Field(default=50, ge=1)
    context_turns: int = Field(default=5, ge=0, le=100, description="构建请求时携带的历史轮数")
    history_cap: int = Field(default=50, ge=2, description="持久化历史的最大条数")

    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="PM_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("default_server_type")
    @classmethod
    def validate_server_type(cls, v: str) -> str:
        if v not in {"lmStudio", "ollama"}:
            raise ValueError("default_server_type must be 'lmStudio' or 'ollama'")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = PydanticSettings
