"""
Static model registry and resolver.

The registry is parsed once from ``AI_PROVIDERS_CONFIG``:

    {"providers": [
        {"id": "google", "name": "Google Gemini",
         "models": [{"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash",
                     "default": true, "vision": true, "maxContext": 1048576}]}
    ]}

Providers or models that fail validation are skipped with a warning so that
one bad entry does not take the whole chat endpoint down. After loading the
registry is never mutated and is shared by all requests without locking.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from dragonchat.errors import ValidationError
from dragonchat.logging_config import logger
from dragonchat.settings import settings


class ModelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    default: bool = False
    text: bool = True
    vision: bool = False
    max_context: Optional[int] = Field(default=None, alias="maxContext", gt=0)
    max_output_tokens: int = Field(4096, alias="maxOutputTokens", gt=0)


class ProviderConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    sdk: Optional[str] = Field(default=None, description="google / openai / claude")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    api_keys_env: Optional[str] = Field(default=None, alias="apiKeysEnv")
    models: List[ModelConfig] = Field(default_factory=list)


@dataclass(frozen=True)
class ModelCapabilities:
    text: bool = True
    vision: bool = False
    max_context: Optional[int] = None
    max_output_tokens: int = 4096


@dataclass(frozen=True)
class ProviderModelEntry:
    provider_id: str
    model_id: str
    name: str
    default: bool = False
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)

    @property
    def key(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass(frozen=True)
class ProviderEntry:
    id: str
    name: str
    sdk: Optional[str] = None
    base_url: Optional[str] = None
    api_keys_env: Optional[str] = None
    models: Tuple[ProviderModelEntry, ...] = ()

    def get_api_keys(self) -> List[str]:
        """
        Keys come from the environment so they never live in the registry JSON.
        """
        candidates = []
        if self.api_keys_env:
            candidates.append(self.api_keys_env)
        candidates.append(f"{self.id.upper().replace('-', '_')}_API_KEYS")
        if self.id.lower() in ("google", "gemini"):
            candidates.append("GEMINI_API_KEYS")
        for env_var in candidates:
            raw = os.getenv(env_var)
            if raw:
                return [item.strip() for item in raw.split(",") if item.strip()]
        return []


def _build_provider(raw: Any) -> Optional[ProviderEntry]:
    try:
        cfg = ProviderConfig.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("Skipping invalid provider entry %r: %s", raw, exc)
        return None

    seen: set[str] = set()
    models: List[ProviderModelEntry] = []
    for model in cfg.models:
        if model.id in seen:
            logger.warning("Provider %s lists model %s twice; keeping the first", cfg.id, model.id)
            continue
        seen.add(model.id)
        models.append(
            ProviderModelEntry(
                provider_id=cfg.id,
                model_id=model.id,
                name=model.name or model.id,
                default=model.default,
                capabilities=ModelCapabilities(
                    text=model.text,
                    vision=model.vision,
                    max_context=model.max_context,
                    max_output_tokens=model.max_output_tokens,
                ),
            )
        )

    return ProviderEntry(
        id=cfg.id,
        name=cfg.name or cfg.id,
        sdk=cfg.sdk,
        base_url=cfg.base_url,
        api_keys_env=cfg.api_keys_env,
        models=tuple(models),
    )


class ModelRegistry:
    """Read-only lookup of the configured providers and models."""

    def __init__(self, providers: List[ProviderEntry]) -> None:
        self._providers: Tuple[ProviderEntry, ...] = tuple(providers)
        self._by_key: Dict[str, ProviderModelEntry] = {}
        self._by_model_id: Dict[str, ProviderModelEntry] = {}
        for provider in self._providers:
            for model in provider.models:
                self._by_key.setdefault(model.key, model)
                # Bare ids resolve to the first provider that lists them.
                self._by_model_id.setdefault(model.model_id, model)

    @classmethod
    def from_config(cls, raw: Optional[str]) -> "ModelRegistry":
        if not raw:
            logger.warning("AI_PROVIDERS_CONFIG is not set; no chat models are available")
            return cls([])
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse AI_PROVIDERS_CONFIG: %s", exc)
            return cls([])

        raw_providers = payload.get("providers") if isinstance(payload, dict) else None
        if not isinstance(raw_providers, list):
            logger.error("AI_PROVIDERS_CONFIG must contain a 'providers' list")
            return cls([])

        providers: List[ProviderEntry] = []
        seen_ids: set[str] = set()
        for item in raw_providers:
            provider = _build_provider(item)
            if provider is None:
                continue
            if provider.id in seen_ids:
                logger.warning("Duplicate provider id %s in AI_PROVIDERS_CONFIG; skipping", provider.id)
                continue
            seen_ids.add(provider.id)
            providers.append(provider)

        logger.info(
            "Loaded %d provider(s) with %d model(s)",
            len(providers),
            sum(len(p.models) for p in providers),
        )
        return cls(providers)

    @property
    def providers(self) -> Tuple[ProviderEntry, ...]:
        return self._providers

    def get_provider(self, provider_id: str) -> Optional[ProviderEntry]:
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None

    def default_entry(self) -> Optional[ProviderModelEntry]:
        for provider in self._providers:
            for model in provider.models:
                if model.default:
                    return model
        for provider in self._providers:
            if provider.models:
                return provider.models[0]
        return None

    def lookup(self, requested: Optional[str]) -> Optional[ProviderModelEntry]:
        if not requested:
            return self.default_entry()
        # Model ids may themselves contain "/", so fall back to the bare id.
        return self._by_key.get(requested) or self._by_model_id.get(requested)

    def resolve(self, requested: Optional[str]) -> ProviderModelEntry:
        entry = self.lookup(requested)
        if entry is None:
            raise ValidationError("Invalid model specified or no models configured")
        return entry

    def list_providers(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": provider.id,
                "name": provider.name,
                "models": [
                    {
                        "id": model.model_id,
                        "name": model.name,
                        "key": model.key,
                        "default": model.default,
                        "vision": model.capabilities.vision,
                        "max_context": model.capabilities.max_context,
                    }
                    for model in provider.models
                ],
            }
            for provider in self._providers
        ]


_registry: Optional[ModelRegistry] = None


def get_model_registry() -> ModelRegistry:
    """
    Process-wide registry, built from settings on first use.
    """
    global _registry
    if _registry is None:
        _registry = ModelRegistry.from_config(settings.ai_providers_config)
    return _registry


__all__ = [
    "ModelCapabilities",
    "ModelConfig",
    "ModelRegistry",
    "ProviderConfig",
    "ProviderEntry",
    "ProviderModelEntry",
    "get_model_registry",
]
