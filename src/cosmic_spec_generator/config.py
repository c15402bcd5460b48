"""Configuration loading and per-role LLM settings."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import ProjectConfig

load_dotenv()

DEFAULT_BASE_URL = "https://api.openai.com/v1"

_AZURE_HOSTS = ("openai.azure.com", "cognitiveservices.azure.com")

# agent role -> ModelConfig field; roles not listed use models.default
ROLE_MODEL_FIELDS: dict[str, str] = {
    "splitter": "splitter",
    "chat": "splitter",
    "writer": "writer",
    "enhancer": "writer",
    "namer": "namer",
    "analyzer": "analyzer",
    "image_analyzer": "analyzer",
    "diagrammer": "diagrammer",
}

# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_RE = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _resolve_env_vars(value: Any) -> Any:
    """Substitute environment variables throughout a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_RE.sub(lambda m: os.environ.get(m.group(1)) or (m.group(2) or ""), value)
    if isinstance(value, dict):
        return {key: _resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def apply_endpoint_fallbacks(config: ProjectConfig) -> ProjectConfig:
    """Fill what the config leaves empty from the ``OPENAI_*`` variables.

    An explicitly configured default model is never replaced by ``OPENAI_MODEL``.
    """
    endpoint = config.endpoint
    endpoint.api_key = endpoint.api_key or os.getenv("OPENAI_API_KEY", "")
    endpoint.api_version = endpoint.api_version or os.getenv("OPENAI_API_VERSION", "")
    endpoint.base_url = (endpoint.base_url or os.getenv("OPENAI_BASE_URL", "") or DEFAULT_BASE_URL).rstrip("/")

    env_model = os.getenv("OPENAI_MODEL")
    if env_model and "default" not in config.models.model_fields_set:
        config.models.default = env_model
    return config


def load_config(config_path: str | Path) -> ProjectConfig:
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return apply_endpoint_fallbacks(ProjectConfig.model_validate(_resolve_env_vars(raw)))


# ---------------------------------------------------------------------------
# Role -> model -> endpoint
# ---------------------------------------------------------------------------

def is_azure_endpoint(url: str) -> bool:
    host = url.lower()
    return any(h in host for h in _AZURE_HOSTS)


def resolve_role_model(role: str, config: ProjectConfig) -> str:
    """The model name an agent role runs on."""
    field_name = ROLE_MODEL_FIELDS.get(role.lower())
    chosen = getattr(config.models, field_name) if field_name else None
    return chosen or config.models.default


def build_role_entry(role: str, config: ProjectConfig) -> dict[str, Any]:
    """One AG2 ``config_list`` entry for *role*.

    A per-model override replaces the shared endpoint (its ``api_type``, when
    given, is passed through as-is). Otherwise Azure hosts are addressed by
    deployment and anything else as an OpenAI-compatible ``base_url``.
    """
    model = resolve_role_model(role, config)
    endpoint = config.endpoint
    override = config.models.overrides.get(model)

    entry: dict[str, Any] = {"model": model, "api_key": endpoint.api_key}
    if override is not None:
        entry["api_key"] = override.api_key or endpoint.api_key
        entry["base_url"] = override.base_url.rstrip("/")
        if override.api_type:
            entry["api_type"] = override.api_type
        if override.api_version:
            entry["api_version"] = override.api_version
        return entry

    if endpoint.base_url and is_azure_endpoint(endpoint.base_url):
        entry.update(
            api_type="azure",
            azure_endpoint=endpoint.base_url,
            azure_deployment=model,
            api_version=endpoint.api_version,
        )
    elif endpoint.base_url:
        entry["base_url"] = endpoint.base_url
    return entry


def build_role_llm_config(
    role: str,
    config: ProjectConfig,
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> dict[str, Any]:
    """AG2 ``llm_config`` for an agent of the given role (see ``ROLE_MODEL_FIELDS``)."""
    entry = build_role_entry(role, config)
    if max_tokens is not None:
        entry["max_tokens"] = max_tokens
    llm_config: dict[str, Any] = {
        "config_list": [entry],
        "timeout": config.timeout,
        "cache_seed": config.seed,
    }
    if temperature is not None:
        llm_config["temperature"] = temperature
    return llm_config
