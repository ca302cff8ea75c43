"""Tests for configuration loading and endpoint validation."""

import pytest
import yaml
from pydantic import ValidationError

from ollama_assistant.config import (
    AssistantConfig,
    load_config,
    validate_endpoint,
)
from ollama_assistant.errors import ConfigError


class TestAssistantConfig:
    def test_defaults(self):
        cfg = AssistantConfig()
        assert cfg.endpoint_url == "http://localhost:11434"
        assert cfg.model_name == "llama3"
        assert cfg.min_context_window == 2049
        assert cfg.max_context_window == 32768
        assert cfg.temperature is None
        assert cfg.escape_markup is True

    def test_assignment_validated(self):
        cfg = AssistantConfig()
        with pytest.raises(ValidationError):
            cfg.timeout = "soon"

    def test_context_window_must_be_positive(self):
        with pytest.raises(ValidationError):
            AssistantConfig(min_context_window=0)

    def test_context_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            AssistantConfig(min_context_window=40000, max_context_window=32768)

    def test_context_bounds_checked_on_assignment(self):
        cfg = AssistantConfig()
        with pytest.raises(ValidationError, match="must not exceed"):
            cfg.max_context_window = 1024


class TestLoadConfig:
    @pytest.fixture(autouse=True)
    def _isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))

    def test_defaults_when_no_file(self):
        cfg, path = load_config()
        assert path is None
        assert cfg.model_name == "llama3"

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "does_not_exist.yaml")

    def test_load_from_yaml(self, tmp_path):
        config_path = tmp_path / "custom.yaml"
        config_path.write_text(yaml.dump({
            "endpoint_url": "http://gpu-box:11434",
            "model_name": "qwen3:8b",
            "temperature": 0.1,
            "max_context_window": 65536,
        }))

        cfg, path = load_config(config_path)
        assert path == config_path.resolve()
        assert cfg.endpoint_url == "http://gpu-box:11434"
        assert cfg.model_name == "qwen3:8b"
        assert cfg.temperature == 0.1
        assert cfg.max_context_window == 65536

    def test_discovered_in_cwd(self, tmp_path):
        (tmp_path / "ollama_assistant.yaml").write_text("model_name: codellama\n")

        cfg, path = load_config()
        assert path is not None
        assert cfg.model_name == "codellama"

    def test_discovered_in_home(self, tmp_path):
        home_dir = tmp_path / "home" / ".ollama_assistant"
        home_dir.mkdir(parents=True)
        (home_dir / "ollama_assistant.yaml").write_text("model_name: mistral\n")

        cfg, _ = load_config()
        assert cfg.model_name == "mistral"

    def test_inverted_context_bounds_rejected(self, tmp_path):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("min_context_window: 65536\nmax_context_window: 4096\n")

        with pytest.raises(ValidationError, match="min_context_window"):
            load_config(config_path)

    def test_load_empty_yaml(self, tmp_path):
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")

        cfg, _ = load_config(config_path)
        assert cfg.model_name == "llama3"


class TestValidateEndpoint:
    def test_valid(self):
        cfg = AssistantConfig(endpoint_url=" http://localhost:11434 ", model_name="llama3")
        assert validate_endpoint(cfg) == ("http://localhost:11434", "llama3")

    @pytest.mark.parametrize("url,model,message", [
        ("", "llama3", "not configured"),
        ("localhost:11434", "llama3", "Invalid"),
        ("ftp://host", "llama3", "Invalid"),
        ("http://", "llama3", "Invalid"),
        ("http://localhost:11434", "   ", "No model"),
    ])
    def test_invalid(self, url, model, message):
        cfg = AssistantConfig(endpoint_url=url, model_name=model)
        with pytest.raises(ConfigError, match=message):
            validate_endpoint(cfg)
