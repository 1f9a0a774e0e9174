"""Settings validation against a live LLM server.

Turns ``CandidateSettings`` into ``ValidatedSettings``: required fields are
checked, the URL is normalized for the server type, the model list is
fetched and an unavailable model is replaced by a deterministic fallback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Iterable, List, Optional, Sequence

import httpx

from pm_agent.domain.conversation import SETTINGS_CACHE_KEY, StateStore
from pm_agent.domain.exceptions import (
    BusinessError,
    ConnectivityError,
    NoModelsAvailableError,
    ValidationError,
)
from pm_agent.domain.models import CandidateSettings, ModelParameters, ValidatedSettings
from pm_agent.domain.result import Err, Ok, Result
from pm_agent.infrastructure.logging.logger import log_event
from pm_agent.providers import ProviderFactory, create_provider
from pm_agent.providers.registry import PROVIDER_REGISTRY, get_provider_config, other_provider

from .config import RuntimeConfig


_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_API_SUFFIXES = ("/v1", "/api")
_ENDPOINT_PATHS = sorted(
    {*_API_SUFFIXES, *(p for cfg in PROVIDER_REGISTRY.values() for p in (cfg.models_path, cfg.completion_path))},
    key=len,
    reverse=True,
)


def normalize_url(api_url: str, server_type: str) -> str:
    """Normalize a user supplied base URL for ``server_type``.

    ``localhost:1234`` -> ``http://localhost:1234``. Trailing slashes and a
    pasted ``/v1`` or ``/api`` suffix are removed, as is a pasted endpoint
    path such as ``/v1/models`` or ``/api/generate``. When the URL does not use
    the conventional port of the server type, the canonical default URL of
    that type is returned instead.
    """
    cfg = get_provider_config(server_type)
    url = api_url.strip()
    if not _SCHEME_RE.match(url):
        url = f"http://{url}"
    url = url.rstrip("/")
    for suffix in _ENDPOINT_PATHS:
        if url.endswith(suffix):
            url = url[: -len(suffix)].rstrip("/")
            break
    try:
        port = httpx.URL(url).port
    except httpx.InvalidURL:
        port = None
    if port != cfg.port:
        return cfg.base_url
    return url


def select_model(requested: str, available: Sequence[str], preferences: Iterable[str]) -> Optional[str]:
    """Pick ``requested`` if served, else the first match of the ranked keywords, else the first model."""
    if not available:
        return None
    if requested in available:
        return requested
    lowered = [(m, m.lower()) for m in available]
    for keyword in preferences:
        key = keyword.lower()
        for model, name in lowered:
            if key in name:
                return model
    return available[0]


class SettingsValidator:
    """Validates provider settings and caches the latest validated set.

    Calls are serialized by the runtime (one initialization or one queue
    entry at a time), so no locking happens here.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[RuntimeConfig] = None,
        provider_factory: ProviderFactory = create_provider,
    ):
        self._store = store
        self._config = config or RuntimeConfig()
        self._provider_factory = provider_factory
        self._cached: Optional[ValidatedSettings] = None

    @property
    def cached(self) -> Optional[ValidatedSettings]:
        return self._cached

    def load_cached(self) -> Optional[ValidatedSettings]:
        """Return the in-memory cache, falling back to the persisted one."""
        if self._cached is not None:
            return self._cached
        raw = self._store.get(SETTINGS_CACHE_KEY)
        if not isinstance(raw, dict):
            return None
        candidate = CandidateSettings.from_dict(raw)
        try:
            server_type = get_provider_config(candidate.server_type or "").name
        except KeyError:
            return None
        if not candidate.api_url or not candidate.model:
            return None
        return ValidatedSettings(
            server_type=server_type,
            api_url=candidate.api_url,
            model=candidate.model,
            parameters=ModelParameters.from_dict(candidate.parameters, self._config.default_parameters),
            verified=bool(raw.get("verified", False)),
        )

    def defaults(self) -> CandidateSettings:
        cfg = get_provider_config(self._config.default_server_type)
        return CandidateSettings(
            server_type=cfg.name,
            api_url=cfg.base_url,
            model=self._config.default_model,
            parameters=self._config.default_parameters.to_dict(),
        )

    async def validate(self, candidate: CandidateSettings) -> Result[ValidatedSettings, BusinessError]:
        missing = [
            name
            for name, value in (
                ("serverType", candidate.server_type),
                ("model", candidate.model),
                ("apiUrl", candidate.api_url),
            )
            if not value
        ]
        if missing:
            return Err(ValidationError(code="MISSING_FIELDS", message=f"Missing settings: {', '.join(missing)}", missing=missing))
        try:
            provider_cfg = get_provider_config(candidate.server_type)
        except KeyError:
            return Err(ValidationError(code="UNKNOWN_SERVER_TYPE", message=f"Unknown server type: {candidate.server_type}"))

        api_url = normalize_url(candidate.api_url, provider_cfg.name)
        ctx = {"server_type": provider_cfg.name, "api_url": api_url, "model": candidate.model}
        client = self._provider_factory(provider_cfg.name, api_url, self._config.models_timeout)
        try:
            models: List[str] = await client.list_models()
        except BusinessError as e:
            log_event(logging.WARNING, "Model listing failed", ctx, error=e.message, code=e.code)
            return Err(ConnectivityError(code="CONNECTIVITY_ERROR", message=e.message, cause=e.code, **ctx))

        model = select_model(candidate.model, models, self._config.model_preferences)
        if model is None:
            return Err(NoModelsAvailableError(code="NO_MODELS", message=f"No models available at {api_url}", **ctx))
        if model != candidate.model:
            log_event(logging.INFO, "Requested model unavailable, using fallback", ctx, fallback=model)

        validated = ValidatedSettings(
            server_type=provider_cfg.name,
            api_url=api_url,
            model=model,
            parameters=ModelParameters.from_dict(candidate.parameters, self._config.default_parameters),
            verified=True,
            available_models=tuple(models),
        )
        self._remember(validated)
        log_event(logging.INFO, "Settings validated", ctx, resolved_model=model, model_count=len(models))
        return Ok(validated)

    async def validate_with_fallback(self, candidate: CandidateSettings) -> Result[ValidatedSettings, BusinessError]:
        """Validate against the requested server type, then once against the other one."""
        first = await self.validate(candidate)
        if first.ok:
            return first
        try:
            alt = other_provider(candidate.server_type or self._config.default_server_type)
        except KeyError:
            return first
        log_event(
            logging.WARNING,
            "Primary provider failed, trying fallback provider",
            {"server_type": candidate.server_type, "fallback": alt.name},
            error=first.error.message,
        )
        second = await self.validate(
            CandidateSettings(
                server_type=alt.name,
                api_url=alt.base_url,
                model=candidate.model or self._config.default_model,
                parameters=candidate.parameters,
            )
        )
        if second.ok:
            return second
        return first

    def best_effort(self, candidate: Optional[CandidateSettings] = None) -> ValidatedSettings:
        """Unverified settings from the last cache, the candidate, or defaults."""
        cached = self.load_cached()
        if cached is not None:
            settings = replace(cached, verified=False)
        else:
            base = self.defaults()
            source = candidate or base
            try:
                server_type = get_provider_config(source.server_type or "").name
            except KeyError:
                server_type = base.server_type
            settings = ValidatedSettings(
                server_type=server_type,
                api_url=normalize_url(source.api_url or get_provider_config(server_type).base_url, server_type),
                model=source.model or base.model,
                parameters=ModelParameters.from_dict(source.parameters, self._config.default_parameters),
                verified=False,
            )
        self._cached = settings
        return settings

    def _remember(self, validated: ValidatedSettings) -> None:
        self._cached = validated
        self._store.set(SETTINGS_CACHE_KEY, validated.to_dict())
