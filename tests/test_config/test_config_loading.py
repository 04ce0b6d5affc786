from pathlib import Path

import pytest

import recall_chat.config as config_module
from recall_chat.config import Config
from recall_chat.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: openai\n"
            "  model: gpt-4o-mini\n"
            "memory:\n"
            "  max_memories: 8\n"
            "  stale_after_days: 7\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "openai"
    assert cfg.model.model == "gpt-4o-mini"
    assert cfg.memory.max_memories == 8
    assert cfg.memory.stale_after_days == 7
    assert cfg.memory.min_age_days == 30


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "model:\n"
            "  provider: ollama\n"
            "  model: llama3.2\n"
            "agent:\n"
            "  max_passes: 3\n"
            "  capabilities:\n"
            "    - generate_random_number\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.model.provider == "ollama"
    assert cfg.agent.max_passes == 3
    assert cfg.agent.capabilities == ["generate_random_number"]


def test_defaults_without_any_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.memory.max_memories == 5
    assert cfg.memory.min_access_count == 2
    assert cfg.agent.max_passes == 10
    assert cfg.agent.capabilities is None
    assert cfg.model.title_model == "gpt-4o-mini"


def test_environment_variables_use_the_recall_prefix(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("RECALL_MEMORY__MAX_MEMORIES", "12")
    monkeypatch.setenv("RECALL_WEB__PORT", "9000")

    cfg = Config.load()

    assert cfg.memory.max_memories == 12
    assert cfg.web.port == 9000


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.memory.max_memories = 9
    cfg.store.path = str(tmp_path / "db.sqlite")
    path = tmp_path / "saved.yaml"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.memory.max_memories == 9
    assert loaded.store.path == str(tmp_path / "db.sqlite")


def test_malformed_yaml_raises_configuration_error(tmp_path: Path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("model: [unclosed\n", encoding="utf-8")
    listing = tmp_path / "listing.yaml"
    listing.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.from_yaml(broken)
    with pytest.raises(ConfigurationError, match="Expected a mapping"):
        Config.from_yaml(listing)
