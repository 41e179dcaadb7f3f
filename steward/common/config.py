"""
Configuration Management for Steward

Loads configuration from ~/.steward/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List

logger = logging.getLogger("steward.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".steward"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
DATA_DIR = CONFIG_DIR / "data"

DEFAULT_KB_FILES = {
    "product": "knowledge-base.md",
    "customers": "customers.md",
    "roadmap": "roadmap.md",
    "priorities": "priorities.md",
    "resources": "resources.md",
    "pm_memory": "pm-memory.md",
}

DEFAULT_OEM_VENDORS = ["ASUS", "Acer", "HP", "Dell", "Lenovo", "Gigabyte", "Mouse Computer", "OEM"]

# Update type -> knowledge document + section the approved entry is filed under
DEFAULT_KB_TARGETS = {
    "oem": {"file": "customers.md", "section": "## OEM Partners"},
    "ces": {"file": "pm-memory.md", "section": "## Events"},
    "contact": {"file": "pm-memory.md", "section": "## Waiting for Reply"},
    "pending": {"file": "pm-memory.md", "section": "## Waiting for Reply"},
    "admin_correction": {"file": "pm-memory.md", "section": "## Decision Context"},
    "general": {"file": "pm-memory.md", "section": "## Decision Context"},
}


@dataclass
class LLMConfig:
    """LLM provider configuration, tried in order: provider, then fallback_providers"""
    provider: str = "ollama"
    fallback_providers: List[str] = field(default_factory=list)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    ollama_endpoint: str = "http://localhost:11434/api/generate"
    ollama_model: str = "qwen2.5:3b"
    timeout: float = 30.0


@dataclass
class SlackConfig:
    """Slack workspace configuration"""
    bot_token: str = ""
    signing_secret: str = ""
    admin_user_id: str = ""
    bot_user_id: str = ""
    port: int = 3000


@dataclass
class StorageConfig:
    """SQLite database locations"""
    records_db_path: str = str(DATA_DIR / "steward.db")
    memory_db_path: str = str(DATA_DIR / "memory.db")


@dataclass
class ConversationConfig:
    """Rolling conversation window"""
    ttl_minutes: int = 30
    max_pairs: int = 10


@dataclass
class ClassifierConfig:
    """Intent classifier tuning"""
    confirm_enabled: bool = True
    confirm_timeout: float = 15.0
    fallback_on_error: bool = True  # prefer reviewer noise over lost updates
    rules_file: str = ""  # JSON rule table replacing the built-in phrases


@dataclass
class KnowledgeConfig:
    """Knowledge document locations and filing targets"""
    base_path: str = str(Path.home() / "knowledge")
    files: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_KB_FILES))
    targets: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_KB_TARGETS.items()}
    )
    last_updated_prefix: str = "> Last updated: "
    oem_vendors: List[str] = field(default_factory=lambda: list(DEFAULT_OEM_VENDORS))


@dataclass
class StewardConfig:
    """Main Steward configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    bot_name: str = "KITT"
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        fallback_providers=list(llm_data.get("fallback_providers", [])),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        ollama_endpoint=llm_data.get("ollama_endpoint", defaults.ollama_endpoint),
        ollama_model=llm_data.get("ollama_model", defaults.ollama_model),
        timeout=float(llm_data.get("timeout", defaults.timeout)),
    )


def _parse_slack_config(data: dict) -> SlackConfig:
    """Parse slack section from config dict"""
    slack_data = data.get("slack", {})
    return SlackConfig(
        bot_token=slack_data.get("bot_token", ""),
        signing_secret=slack_data.get("signing_secret", ""),
        admin_user_id=slack_data.get("admin_user_id", ""),
        bot_user_id=slack_data.get("bot_user_id", ""),
        port=int(slack_data.get("port", 3000)),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    storage_data = data.get("storage", {})
    defaults = StorageConfig()
    return StorageConfig(
        records_db_path=storage_data.get("records_db_path", defaults.records_db_path),
        memory_db_path=storage_data.get("memory_db_path", defaults.memory_db_path),
    )


def _parse_conversation_config(data: dict) -> ConversationConfig:
    conv_data = data.get("conversation", {})
    return ConversationConfig(
        ttl_minutes=int(conv_data.get("ttl_minutes", 30)),
        max_pairs=int(conv_data.get("max_pairs", 10)),
    )


def _parse_classifier_config(data: dict) -> ClassifierConfig:
    cls_data = data.get("classifier", {})
    return ClassifierConfig(
        confirm_enabled=bool(cls_data.get("confirm_enabled", True)),
        confirm_timeout=float(cls_data.get("confirm_timeout", 15.0)),
        fallback_on_error=bool(cls_data.get("fallback_on_error", True)),
        rules_file=cls_data.get("rules_file", ""),
    )


def _parse_knowledge_config(data: dict) -> KnowledgeConfig:
    """Parse knowledge section; targets merge over the defaults per type"""
    kb_data = data.get("knowledge", {})
    defaults = KnowledgeConfig()

    targets = defaults.targets
    for type_name, target in kb_data.get("targets", {}).items():
        if target is None:
            targets.pop(type_name, None)
        else:
            targets[type_name] = {"file": target["file"], "section": target["section"]}

    return KnowledgeConfig(
        base_path=kb_data.get("base_path", defaults.base_path),
        files=kb_data.get("files", defaults.files),
        targets=targets,
        last_updated_prefix=kb_data.get("last_updated_prefix", defaults.last_updated_prefix),
        oem_vendors=list(kb_data.get("oem_vendors", defaults.oem_vendors)),
    )


def load_config() -> StewardConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.steward/config.json)
    3. Default values
    """
    config = StewardConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.slack = _parse_slack_config(data)
            config.storage = _parse_storage_config(data)
            config.conversation = _parse_conversation_config(data)
            config.classifier = _parse_classifier_config(data)
            config.knowledge = _parse_knowledge_config(data)
            config.bot_name = data.get("bot_name", "KITT")
        except (json.JSONDecodeError, IOError, KeyError) as e:
            logger.warning("Failed to load config file: %s", e)

    # Slack env overrides
    _env_slack_map = {
        "SLACK_BOT_TOKEN": "bot_token",
        "SLACK_SIGNING_SECRET": "signing_secret",
        "ADMIN_USER_ID": "admin_user_id",
        "SLACK_BOT_USER_ID": "bot_user_id",
    }
    for env_var, attr in _env_slack_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.slack, attr, val)
            config._env_sourced_keys.add(attr)
    if os.getenv("PORT"):
        config.slack.port = int(os.getenv("PORT"))

    # LLM env overrides
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "OLLAMA_ENDPOINT": "ollama_endpoint",
        "OLLAMA_MODEL": "ollama_model",
        "STEWARD_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)
    if os.getenv("STEWARD_LLM_FALLBACKS"):
        config.llm.fallback_providers = [
            p.strip() for p in os.getenv("STEWARD_LLM_FALLBACKS").split(",") if p.strip()
        ]

    if os.getenv("STEWARD_KB_PATH"):
        config.knowledge.base_path = os.getenv("STEWARD_KB_PATH")
    if os.getenv("STEWARD_DB_PATH"):
        config.storage.records_db_path = os.getenv("STEWARD_DB_PATH")
    if os.getenv("STEWARD_MEMORY_DB_PATH"):
        config.storage.memory_db_path = os.getenv("STEWARD_MEMORY_DB_PATH")
    if os.getenv("STEWARD_CONVERSATION_TTL_MINUTES"):
        config.conversation.ttl_minutes = int(os.getenv("STEWARD_CONVERSATION_TTL_MINUTES"))
    if os.getenv("STEWARD_RULES_FILE"):
        config.classifier.rules_file = os.getenv("STEWARD_RULES_FILE")
    if os.getenv("STEWARD_OEM_VENDORS"):
        config.knowledge.oem_vendors = [
            v.strip() for v in os.getenv("STEWARD_OEM_VENDORS").split(",") if v.strip()
        ]

    return config


def save_config(config: StewardConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "fallback_providers": config.llm.fallback_providers,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
        "ollama_endpoint": config.llm.ollama_endpoint,
        "ollama_model": config.llm.ollama_model,
        "timeout": config.llm.timeout,
    }
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    slack_section = {
        "bot_token": config.slack.bot_token,
        "signing_secret": config.slack.signing_secret,
        "admin_user_id": config.slack.admin_user_id,
        "bot_user_id": config.slack.bot_user_id,
        "port": config.slack.port,
    }
    for key in ("bot_token", "signing_secret"):
        if key in env_sourced:
            slack_section[key] = ""

    data = {
        "llm": llm_section,
        "slack": slack_section,
        "storage": {
            "records_db_path": config.storage.records_db_path,
            "memory_db_path": config.storage.memory_db_path,
        },
        "conversation": {
            "ttl_minutes": config.conversation.ttl_minutes,
            "max_pairs": config.conversation.max_pairs,
        },
        "classifier": {
            "confirm_enabled": config.classifier.confirm_enabled,
            "confirm_timeout": config.classifier.confirm_timeout,
            "fallback_on_error": config.classifier.fallback_on_error,
            "rules_file": config.classifier.rules_file,
        },
        "knowledge": {
            "base_path": config.knowledge.base_path,
            "files": config.knowledge.files,
            "targets": config.knowledge.targets,
            "last_updated_prefix": config.knowledge.last_updated_prefix,
            "oem_vendors": config.knowledge.oem_vendors,
        },
        "bot_name": config.bot_name,
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
