from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gemini_bridge.errors import UnknownBackendError
from gemini_bridge.settings import Settings

OPENROUTER_BACKEND = "openrouter"
GEMINI_BACKEND = "gemini"


class ModelTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary: str
    fallback: str

    @field_validator("primary", "fallback")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("model tier identifiers must be non-empty")
        return normalized


class BackendVariant(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str
    base_url: str
    chat_path: str = "/chat/completions"
    part_style: Literal["openai", "gemini"] = "openai"
    model_role: str = "assistant"
    tiers: ModelTier
    quota_policy: Literal["phrases", "co_occurrence"] = "phrases"

    @property
    def endpoint(self) -> str:
        path = self.chat_path if self.chat_path.startswith("/") else f"/{self.chat_path}"
        return self.base_url.rstrip("/") + path


class BackendCatalog(BaseModel):
    default_backend: str = OPENROUTER_BACKEND
    backends: dict[str, BackendVariant] = Field(default_factory=dict)

    def names(self) -> list[str]:
        return sorted(self.backends)

    def get(self, name: str | None = None) -> BackendVariant:
        key = (name or self.default_backend).strip().lower()
        variant = self.backends.get(key)
        if variant is None:
            raise UnknownBackendError(key, self.names())
        return variant


def builtin_backends(settings: Settings) -> dict[str, dict[str, Any]]:
    """Return the built-in variant templates.

    The ``gemini`` template has no default ``base_url``: Google's own API does
    not serve ``/chat/completions`` with Gemini-style parts, so it must point at
    a compatible proxy (``GEMINI_BASE_URL`` or the YAML overlay). Without one
    the variant is left out of the catalog.
    """
    backends: dict[str, dict[str, Any]] = {
        OPENROUTER_BACKEND: {
            "name": OPENROUTER_BACKEND,
            "base_url": settings.openrouter_base_url,
            "part_style": "openai",
            "model_role": "assistant",
            "quota_policy": "phrases",
            "tiers": {
                "primary": "google/gemini-2.5-flash-image-preview:free",
                "fallback": "google/gemini-2.5-flash-image-preview",
            },
        },
        GEMINI_BACKEND: {
            "name": GEMINI_BACKEND,
            "part_style": "gemini",
            "model_role": "model",
            "quota_policy": "co_occurrence",
            "tiers": {
                "primary": "gemini-2.5-flash-image-preview",
                "fallback": "gemini-2.5-flash-image",
            },
        },
    }
    if settings.gemini_base_url:
        backends[GEMINI_BACKEND]["base_url"] = settings.gemini_base_url
    return backends


def _load_yaml_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Backend config not found at '{path}'. "
            "Create it or unset BACKEND_CONFIG_PATH.",
        )
    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{path}'.")
    return payload


def _merge_backend(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key == "tiers" and isinstance(value, dict):
            merged["tiers"] = {**merged.get("tiers", {}), **value}
        else:
            merged[key] = value
    return merged


def load_backend_catalog(settings: Settings) -> BackendCatalog:
    raw_backends = builtin_backends(settings)
    default_backend = settings.backend_variant.strip().lower() or OPENROUTER_BACKEND

    if settings.backend_config_path:
        document = _load_yaml_document(Path(settings.backend_config_path))
        configured_default = document.get("default_backend")
        if isinstance(configured_default, str) and configured_default.strip():
            default_backend = configured_default.strip().lower()
        overrides = document.get("backends") or {}
        if not isinstance(overrides, dict):
            raise ValueError("'backends' must be a mapping of backend name to settings.")
        for name, override in overrides.items():
            key = str(name).strip().lower()
            if not isinstance(override, dict):
                raise ValueError(f"Backend '{key}' must be a mapping.")
            base = raw_backends.get(key, {"name": key})
            raw_backends[key] = _merge_backend(base, {**override, "name": key})

    if not raw_backends[GEMINI_BACKEND].get("base_url"):
        del raw_backends[GEMINI_BACKEND]

    tier_overrides = {
        field: value
        for field, value in (
            ("primary", settings.primary_model),
            ("fallback", settings.fallback_model),
        )
        if value
    }
    if tier_overrides and default_backend in raw_backends:
        raw_backends[default_backend] = _merge_backend(
            raw_backends[default_backend], {"tiers": tier_overrides}
        )

    if default_backend not in raw_backends:
        raise ValueError(
            f"Default backend '{default_backend}' is not configured. "
            f"Available backends: {', '.join(sorted(raw_backends))}."
        )

    return BackendCatalog.model_validate(
        {"default_backend": default_backend, "backends": raw_backends}
    )
