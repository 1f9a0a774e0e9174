"""Runtime tuning parameters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

from pm_agent.domain.models import ModelParameters
from pm_agent.providers.registry import DEFAULT_MODEL_PREFERENCES


@dataclass
class RuntimeConfig:
    """All knobs of a single AgentRuntime instance.

    Durations are in seconds. The defaults mirror ``config.settings``; use
    :meth:`from_settings` to pick up environment / config.yaml overrides.
    """

    default_server_type: str = "lmStudio"
    default_model: str = "qwen2.5-7b-instruct-1m"
    default_parameters: ModelParameters = field(default_factory=ModelParameters)
    model_preferences: Tuple[str, ...] = DEFAULT_MODEL_PREFERENCES

    models_timeout: float = 10.0
    llm_timeout: float = 60.0

    throttle_limit: int = 10
    throttle_window: float = 1.0
    throttle_cooldown: float = 5.0
    emergency_throttle_episodes: int = 0

    queue_tick: float = 0.1
    queue_min_interval: float = 0.1
    queue_entry_ttl: float = 300.0

    emit_min_spacing: float = 0.1
    recent_id_limit: int = 100
    recent_id_keep: int = 50

    context_turns: int = 5
    history_cap: int = 50

    agent_type: str = "project-manager"
    author: str = "Project Manager"

    def __post_init__(self) -> None:
        if self.recent_id_keep > self.recent_id_limit:
            self.recent_id_keep = self.recent_id_limit
        self.model_preferences = tuple(p.lower() for p in self.model_preferences)

    @classmethod
    def from_settings(cls, cfg=None) -> "RuntimeConfig":
        if cfg is None:
            from pm_agent.config.settings import settings as cfg
        return cls(
            default_server_type=cfg.default_server_type,
            default_model=cfg.default_model,
            default_parameters=ModelParameters(
                temperature=cfg.temperature,
                top_p=cfg.top_p,
                top_k=cfg.top_k,
                repeat_penalty=cfg.repeat_penalty,
                max_tokens=cfg.max_tokens,
                context_length=cfg.context_length,
            ),
            model_preferences=tuple(cfg.model_preferences),
            models_timeout=cfg.http_timeout,
            llm_timeout=cfg.llm_timeout,
            throttle_limit=cfg.throttle_limit,
            throttle_window=cfg.throttle_window,
            throttle_cooldown=cfg.throttle_cooldown,
            emergency_throttle_episodes=cfg.emergency_throttle_episodes,
            queue_tick=cfg.queue_tick,
            queue_min_interval=cfg.queue_min_interval,
            queue_entry_ttl=cfg.queue_entry_ttl,
            emit_min_spacing=cfg.emit_min_spacing,
            recent_id_limit=cfg.recent_id_limit,
            recent_id_keep=cfg.recent_id_keep,
            context_turns=cfg.context_turns,
            history_cap=cfg.history_cap,
        )
