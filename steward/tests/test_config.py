"""Tests for configuration loading, env overrides and saving."""

import json
import pytest
from unittest.mock import patch

from steward.common.config import (
    DEFAULT_KB_TARGETS,
    LLMConfig,
    StewardConfig,
    load_config,
    save_config,
)

_ENV_VARS = [
    "SLACK_BOT_TOKEN", "SLACK_SIGNING_SECRET", "ADMIN_USER_ID", "SLACK_BOT_USER_ID", "PORT",
    "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL", "OPENAI_API_KEY", "OPENAI_MODEL",
    "GOOGLE_API_KEY", "GEMINI_API_KEY", "GOOGLE_MODEL", "OLLAMA_ENDPOINT", "OLLAMA_MODEL",
    "STEWARD_LLM_PROVIDER", "STEWARD_LLM_FALLBACKS", "STEWARD_KB_PATH", "STEWARD_DB_PATH",
    "STEWARD_MEMORY_DB_PATH", "STEWARD_CONVERSATION_TTL_MINUTES", "STEWARD_RULES_FILE", "STEWARD_OEM_VENDORS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_llm_defaults(self):
        cfg = LLMConfig()
        assert cfg.provider == "ollama"
        assert cfg.ollama_model == "qwen2.5:3b"
        assert cfg.fallback_providers == []

    def test_steward_defaults(self):
        cfg = StewardConfig()
        assert cfg.bot_name == "KITT"
        assert cfg.conversation.ttl_minutes == 30
        assert cfg.conversation.max_pairs == 10
        assert cfg.classifier.fallback_on_error is True
        assert cfg.knowledge.targets == DEFAULT_KB_TARGETS
        assert cfg.classifier.rules_file == ""
        assert "Lenovo" in cfg.knowledge.oem_vendors

    def test_default_targets_are_copies(self):
        cfg = StewardConfig()
        cfg.knowledge.targets["oem"]["section"] = "## Changed"
        assert DEFAULT_KB_TARGETS["oem"]["section"] == "## OEM Partners"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        with patch("steward.common.config.CONFIG_PATH", tmp_path / "missing.json"):
            cfg = load_config()
        assert cfg.llm.provider == "ollama"
        assert cfg.slack.port == 3000

    def test_file_sections(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "llm": {"provider": "anthropic", "anthropic_api_key": "sk-ant", "fallback_providers": ["ollama"]},
            "slack": {"admin_user_id": "UADMIN", "port": 4000},
            "conversation": {"ttl_minutes": 5, "max_pairs": 2},
            "classifier": {"confirm_enabled": False},
            "bot_name": "Jarvis",
        }))

        with patch("steward.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.provider == "anthropic"
        assert cfg.llm.anthropic_api_key == "sk-ant"
        assert cfg.llm.fallback_providers == ["ollama"]
        assert cfg.slack.admin_user_id == "UADMIN"
        assert cfg.slack.port == 4000
        assert cfg.conversation.ttl_minutes == 5
        assert cfg.classifier.confirm_enabled is False
        assert cfg.bot_name == "Jarvis"

    def test_targets_merge_over_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "knowledge": {
                "targets": {
                    "oem": {"file": "partners.md", "section": "## Partners"},
                    "ces": None,
                },
            },
        }))

        with patch("steward.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.knowledge.targets["oem"] == {"file": "partners.md", "section": "## Partners"}
        assert "ces" not in cfg.knowledge.targets
        assert cfg.knowledge.targets["general"]["section"] == "## Decision Context"

    def test_rules_file_and_vendors(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "classifier": {"rules_file": "~/rules.json"},
            "knowledge": {"oem_vendors": ["Acme", "Globex"]},
        }))

        with patch("steward.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.classifier.rules_file == "~/rules.json"
        assert cfg.knowledge.oem_vendors == ["Acme", "Globex"]

    def test_vendor_list_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STEWARD_OEM_VENDORS", "Acme, Initech,")
        monkeypatch.setenv("STEWARD_RULES_FILE", "/etc/steward/rules.json")

        with patch("steward.common.config.CONFIG_PATH", tmp_path / "missing.json"):
            cfg = load_config()

        assert cfg.knowledge.oem_vendors == ["Acme", "Initech"]
        assert cfg.classifier.rules_file == "/etc/steward/rules.json"

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("steward.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.provider == "ollama"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"slack": {"admin_user_id": "UFILE"}}))
        monkeypatch.setenv("ADMIN_USER_ID", "UENV")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        monkeypatch.setenv("STEWARD_LLM_FALLBACKS", "anthropic, openai")
        monkeypatch.setenv("STEWARD_KB_PATH", "/srv/kb")

        with patch("steward.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.slack.admin_user_id == "UENV"
        assert cfg.llm.anthropic_api_key == "sk-env"
        assert cfg.llm.fallback_providers == ["anthropic", "openai"]
        assert cfg.knowledge.base_path == "/srv/kb"
        assert "anthropic_api_key" in cfg._env_sourced_keys


class TestSaveConfig:
    def test_env_sourced_secrets_not_persisted(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-secret")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")

        with patch("steward.common.config.CONFIG_PATH", config_file), \
                patch("steward.common.config.CONFIG_DIR", tmp_path):
            cfg = load_config()
            cfg.slack.admin_user_id = "UADMIN"
            save_config(cfg)

        data = json.loads(config_file.read_text())
        assert data["slack"]["bot_token"] == ""
        assert data["llm"]["openai_api_key"] == ""
        assert data["slack"]["admin_user_id"] == "UADMIN"

    def test_round_trip_keeps_targets(self, tmp_path):
        config_file = tmp_path / "config.json"
        cfg = StewardConfig()
        cfg.knowledge.targets["demo"] = {"file": "demo.md", "section": "## Demos"}
        cfg.knowledge.oem_vendors = ["Acme"]

        with patch("steward.common.config.CONFIG_PATH", config_file), \
                patch("steward.common.config.CONFIG_DIR", tmp_path):
            save_config(cfg)
            loaded = load_config()

        assert loaded.knowledge.targets["demo"] == {"file": "demo.md", "section": "## Demos"}
        assert loaded.knowledge.oem_vendors == ["Acme"]
