"""Tests for the Hydra-based CLI (cli.py)."""

from __future__ import annotations

from pathlib import Path

from hydra import compose, initialize
from omegaconf import OmegaConf

from cosmic_spec_generator._hydra_conf import CLI_ONLY_KEYS, CosmicSpecConf, register_configs
from cosmic_spec_generator.cli import _MODE_DISPATCH, _output_path, _to_project_config
from cosmic_spec_generator.models import ProjectConfig


class TestDefaultConfig:
    """Verify the ConfigStore ``config`` node composes and converts."""

    def test_default_config_loads(self):
        register_configs()
        with initialize(version_base=None):
            cfg = compose(config_name="config")
            assert cfg.mode == "analyze"
            assert cfg.server_url == ""
            assert cfg.target_functions == 30

    def test_overrides_apply(self):
        register_configs()
        with initialize(version_base=None):
            cfg = compose(config_name="config", overrides=["template_id=2", "server.port=8080"])
            assert cfg.template_id == 2
            assert cfg.server.port == 8080

    def test_default_config_converts_to_project_config(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://llm.example.com/v1")
        monkeypatch.setenv("OPENAI_MODEL", "glm-4-plus")

        register_configs()
        with initialize(version_base=None):
            cfg = compose(config_name="config")
            pc = _to_project_config(cfg)
            assert isinstance(pc, ProjectConfig)
            assert pc.project_name == "cosmic-spec"
            assert pc.endpoint.api_key == "test"
            assert pc.models.default == "glm-4-plus"


class TestModeDispatch:
    """Verify mode dispatch table."""

    def test_all_modes_present(self):
        expected = {"analyze", "spec", "parse", "diagram", "serve", "templates"}
        assert set(_MODE_DISPATCH.keys()) == expected

    def test_all_modes_are_callable(self):
        for name, handler in _MODE_DISPATCH.items():
            assert callable(handler), f"Handler for mode {name!r} is not callable"


class TestOutputPath:
    def test_derived_from_input(self, tmp_path: Path):
        cfg = OmegaConf.create({"output": ""})
        out = _output_path(cfg, tmp_path / "req.docx", "_cosmic.xlsx")
        assert out == tmp_path / "req_cosmic.xlsx"

    def test_explicit_output_creates_parent(self, tmp_path: Path):
        cfg = OmegaConf.create({"output": str(tmp_path / "out" / "spec.md")})
        out = _output_path(cfg, tmp_path / "req.docx", "_spec.md")
        assert out.parent.is_dir()
        assert out.name == "spec.md"


class TestCliOnlyKeys:
    """CLI_ONLY_KEYS should match the extra fields in CosmicSpecConf."""

    def test_cli_keys_not_in_project_config(self):
        pc_fields = set(ProjectConfig.model_fields.keys())
        for key in CLI_ONLY_KEYS:
            assert key not in pc_fields, f"CLI-only key {key!r} found in ProjectConfig"

    def test_cli_keys_in_conf(self):
        conf_fields = set(CosmicSpecConf.__dataclass_fields__)
        for key in CLI_ONLY_KEYS:
            assert key in conf_fields, f"CLI-only key {key!r} not found in CosmicSpecConf"

    def test_conf_covers_project_config(self):
        conf_fields = set(CosmicSpecConf.__dataclass_fields__) - CLI_ONLY_KEYS
        assert conf_fields == set(ProjectConfig.model_fields.keys())
