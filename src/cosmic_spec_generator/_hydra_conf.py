"""Hydra structured config dataclasses.

These mirror the Pydantic ``ProjectConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ProjectConfig`` via
``cli._to_project_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from hydra.core.config_store import ConfigStore


@dataclass
class EndpointConf:
    api_key: str = "${oc.env:OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:OPENAI_API_VERSION,''}"
    base_url: str = "${oc.env:OPENAI_BASE_URL,''}"


@dataclass
class ModelEndpointOverrideConf:
    base_url: str = ""
    api_key: str | None = None
    api_version: str | None = None
    api_type: str | None = None


@dataclass
class ModelConf:
    default: str = "${oc.env:OPENAI_MODEL,glm-4-flash}"
    splitter: str | None = None
    writer: str | None = None
    namer: str | None = None
    analyzer: str | None = None
    diagrammer: str | None = None
    overrides: dict[str, ModelEndpointOverrideConf] = field(default_factory=dict)


@dataclass
class ServerConf:
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_upload_mb: int = 50
    image_cache_size: int = 10


@dataclass
class CosmicSpecConf:
    # --- CLI-only fields ---
    mode: str = "analyze"                 # analyze | spec | parse | diagram | serve | templates
    input: str = ""
    output: str = ""
    server_url: str = ""                  # run loops against a remote server instead of in-process
    verbose: bool = False
    quiet: bool = False

    # --- ProjectConfig fields ---
    project_name: str = "cosmic-spec"
    endpoint: EndpointConf = field(default_factory=EndpointConf)
    models: ModelConf = field(default_factory=ModelConf)
    server: ServerConf = field(default_factory=ServerConf)

    # Round controller
    target_functions: int = 30
    max_analysis_rounds: int = 12
    analysis_cooldown: float = 1.5

    # Chapter pipeline
    template_id: int = 1
    chapter_delay: float = 0.5

    # Uniqueness enforcement
    ai_naming: bool = True
    shuffle_attributes: bool = False

    # Diagram rendering
    kroki_url: str = "https://kroki.io"
    kroki_timeout: int = 30
    diagram_max_retries: int = 4

    timeout: int = 120
    seed: int | None = None


# Keys in CosmicSpecConf that are NOT part of ProjectConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "input", "output", "server_url", "verbose", "quiet",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore.

    Two entries are stored:
    - ``cosmicspec_schema`` for user config files (``defaults: [cosmicspec_schema]``)
    - ``config`` used when no ``--config-dir`` is given (e.g. ``cosmicspec mode=serve``)
    """
    cs = ConfigStore.instance()
    cs.store(name="cosmicspec_schema", node=CosmicSpecConf)
    cs.store(name="config", node=CosmicSpecConf)
