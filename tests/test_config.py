"""Tests for config.py — YAML loading and LLM config building."""

from __future__ import annotations

from pathlib import Path

import pytest

from cosmic_spec_generator.config import (
    DEFAULT_BASE_URL,
    _resolve_env_vars,
    apply_endpoint_fallbacks,
    build_role_llm_config,
    is_azure_endpoint,
    load_config,
    resolve_role_model,
)
from cosmic_spec_generator.models import ProjectConfig

SAMPLE_YAML = """\
project_name: 订单系统
endpoint:
  api_key: ${COSMIC_TEST_KEY}
  base_url: https://llm.example.com/v1/
models:
  default: glm-4-plus
  writer: glm-4-long
target_functions: 40
template_id: 2
"""


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_API_VERSION", "OPENAI_MODEL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def sample_config_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE_YAML, encoding="utf-8")
    return path


class TestResolveEnvVars:
    def test_string_replacement(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert _resolve_env_vars("${TEST_VAR}") == "hello"

    def test_missing_var_becomes_empty(self, monkeypatch):
        monkeypatch.delenv("NONEXISTENT_VAR", raising=False)
        assert _resolve_env_vars("${NONEXISTENT_VAR}") == ""

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("COSMIC_UNSET", raising=False)
        monkeypatch.setenv("COSMIC_SET", "3002")
        assert _resolve_env_vars("${COSMIC_UNSET:-https://kroki.io}") == "https://kroki.io"
        assert _resolve_env_vars("port=${COSMIC_SET:-3001}") == "port=3002"

    def test_nested(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "secret")
        result = _resolve_env_vars({"api_key": "${MY_KEY}", "hosts": ["${MY_KEY}", "plain"]})
        assert result == {"api_key": "secret", "hosts": ["secret", "plain"]}

    def test_non_string_passthrough(self):
        assert _resolve_env_vars(42) == 42
        assert _resolve_env_vars(None) is None


class TestLoadConfig:
    def test_load_sample_config(self, sample_config_path, clean_env):
        clean_env.setenv("COSMIC_TEST_KEY", "yaml-key")
        config = load_config(sample_config_path)
        assert config.project_name == "订单系统"
        assert config.endpoint.api_key == "yaml-key"
        assert config.endpoint.base_url == "https://llm.example.com/v1"
        assert config.target_functions == 40
        assert config.template_id == 2

    def test_missing_config_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config("nonexistent.yaml")

    def test_explicit_model_wins_over_env(self, sample_config_path, clean_env):
        clean_env.setenv("OPENAI_MODEL", "env-model")
        config = load_config(sample_config_path)
        assert config.models.default == "glm-4-plus"


class TestEndpointFallbacks:
    def test_env_fills_empty_fields(self, clean_env):
        clean_env.setenv("OPENAI_API_KEY", "env-key")
        clean_env.setenv("OPENAI_BASE_URL", "https://proxy.example.com/v1/")
        clean_env.setenv("OPENAI_MODEL", "env-model")
        config = apply_endpoint_fallbacks(ProjectConfig())
        assert config.endpoint.api_key == "env-key"
        assert config.endpoint.base_url == "https://proxy.example.com/v1"
        assert config.models.default == "env-model"

    def test_default_base_url(self, clean_env):
        config = apply_endpoint_fallbacks(ProjectConfig())
        assert config.endpoint.base_url == DEFAULT_BASE_URL
        assert config.endpoint.api_key == ""


class TestBuildRoleLlmConfig:
    def test_writer_role(self):
        config = ProjectConfig(
            models={"default": "glm-4-flash", "writer": "glm-4-long"},
            endpoint={"api_key": "k", "base_url": "https://llm.example.com/v1"},
        )
        llm_config = build_role_llm_config("writer", config, temperature=0.7, max_tokens=16000)
        entry = llm_config["config_list"][0]
        assert entry["model"] == "glm-4-long"
        assert entry["base_url"] == "https://llm.example.com/v1"
        assert entry["max_tokens"] == 16000
        assert llm_config["temperature"] == 0.7

    def test_enhancer_shares_writer_model(self):
        config = ProjectConfig(models={"default": "a", "writer": "b"})
        assert resolve_role_model("enhancer", config) == "b"

    def test_unknown_role_uses_default(self):
        config = ProjectConfig(models={"default": "gpt-4o"}, endpoint={"api_key": "k"})
        llm_config = build_role_llm_config("unknown_role", config)
        assert llm_config["config_list"][0]["model"] == "gpt-4o"

    def test_azure_endpoint(self):
        config = ProjectConfig(
            models={"default": "gpt-4o"},
            endpoint={"api_key": "k", "api_version": "2024-06-01", "base_url": "https://x.openai.azure.com"},
        )
        entry = build_role_llm_config("splitter", config)["config_list"][0]
        assert entry["api_type"] == "azure"
        assert entry["azure_deployment"] == "gpt-4o"

    def test_azure_host_detection(self):
        assert is_azure_endpoint("https://x.cognitiveservices.azure.com/")
        assert not is_azure_endpoint("https://open.bigmodel.cn/api/paas/v4")

    def test_model_override(self):
        config = ProjectConfig(
            models={
                "default": "local-model",
                "overrides": {"local-model": {"base_url": "http://localhost:11434/v1/", "api_key": "ollama"}},
            },
            endpoint={"api_key": "k", "base_url": "https://llm.example.com/v1"},
        )
        entry = build_role_llm_config("namer", config)["config_list"][0]
        assert entry["base_url"] == "http://localhost:11434/v1"
        assert entry["api_key"] == "ollama"
