"""
Settings — loads agent.yaml and provides validated configuration.

The settings file is the single source of truth for user-configurable values:
model service endpoint and credentials, model names, memory database and
retrieval depths, tool catalog path, and router behaviour. Environment
variables override file values so deployments can inject secrets.

Usage:
    from settings import get_settings
    settings = get_settings()
    print(settings.models.chat)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from config import (
    DEFAULT_SEMANTIC_TOP_K, DEFAULT_TURN_TIMEOUT,
    MODEL_SERVICE_BACKOFF, MODEL_SERVICE_MAX_ATTEMPTS, MODEL_SERVICE_TIMEOUT,
    PROMPT_EXTENSION, ROUTER_DEFAULT_PROMPT, ROUTER_MAX_OUTPUT_TOKENS,
)

logger = logging.getLogger(__name__)

# ── Settings Path Resolution ──
_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_SETTINGS_PATH = _PROJECT_ROOT / "agent.yaml"


# ── Dataclasses ──

@dataclass
class ModelServiceConfig:
    api_key: str = ""  # loaded from OPENAI_API_KEY
    base_url: str = "https://api.openai.com/v1"
    timeout: float = MODEL_SERVICE_TIMEOUT
    max_attempts: int = MODEL_SERVICE_MAX_ATTEMPTS
    backoff_seconds: float = MODEL_SERVICE_BACKOFF


@dataclass
class ModelsConfig:
    chat: str = "gpt-4.1-mini"
    embedding: str = "text-embedding-3-small"


@dataclass
class MemoryConfig:
    db_path: str = str(_PROJECT_ROOT / "agent_memory.db")
    embedding_dim: int = 1536
    semantic_top_k: int = DEFAULT_SEMANTIC_TOP_K
    depth: int = 4
    fact_tool: str = "db_boleto"  # tool whose output carries status= markers


@dataclass
class RouterConfig:
    default_prompt: str = ROUTER_DEFAULT_PROMPT
    extension: str = PROMPT_EXTENSION
    max_output_tokens: int = ROUTER_MAX_OUTPUT_TOKENS


@dataclass
class Settings:
    model_service: ModelServiceConfig = field(default_factory=ModelServiceConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    tools_path: str = "tools.yml"
    turn_timeout: float = DEFAULT_TURN_TIMEOUT
    verbose: bool = False


# ── Parsing ──

def _parse_dict(data: dict, cls, **overrides):
    """Create a dataclass instance from a dict, ignoring unknown keys."""
    import dataclasses
    field_names = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in data.items() if k in field_names}
    filtered.update(overrides)
    return cls(**filtered)


def _env_int(key: str, default: int) -> int:
    """Positive integer from the environment, else the default."""
    value = os.environ.get(key, "")
    if value:
        try:
            n = int(value)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", key, value)
            return default
        if n > 0:
            return n
    return default


def _load_settings_from_dict(raw: dict) -> Settings:
    """Parse a raw YAML dict into a Settings dataclass."""
    settings = Settings()

    if "model_service" in raw and isinstance(raw["model_service"], dict):
        settings.model_service = _parse_dict(raw["model_service"], ModelServiceConfig)

    if "models" in raw and isinstance(raw["models"], dict):
        settings.models = _parse_dict(raw["models"], ModelsConfig)

    if "memory" in raw and isinstance(raw["memory"], dict):
        settings.memory = _parse_dict(raw["memory"], MemoryConfig)

    if "router" in raw and isinstance(raw["router"], dict):
        settings.router = _parse_dict(raw["router"], RouterConfig)

    if "tools_path" in raw:
        settings.tools_path = str(raw["tools_path"])
    if "turn_timeout" in raw:
        settings.turn_timeout = float(raw["turn_timeout"])
    if "verbose" in raw:
        settings.verbose = bool(raw["verbose"])

    return settings


def _apply_env_overrides(settings: Settings) -> Settings:
    """Environment variables win over file values."""
    ms = settings.model_service
    ms.api_key = os.environ.get("OPENAI_API_KEY", ms.api_key)
    ms.base_url = os.environ.get("OPENAI_BASE_URL", ms.base_url)

    settings.models.chat = os.environ.get("GPT_MODEL", settings.models.chat)
    settings.models.embedding = os.environ.get("EMBEDDING_MODEL", settings.models.embedding)

    mem = settings.memory
    mem.embedding_dim = _env_int("EMBEDDING_DIM", mem.embedding_dim)
    mem.semantic_top_k = _env_int("MEM_SEM_TOPK", mem.semantic_top_k)
    mem.depth = _env_int("MEM_DEPTH", mem.depth)
    mem.db_path = os.environ.get("AGENT_DB_PATH", mem.db_path)

    settings.tools_path = os.environ.get("TOOLS_PATH", settings.tools_path)
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML. Falls back to defaults if the file is missing."""
    env_path = os.environ.get("AGENT_CONFIG_PATH")
    settings_path = Path(path) if path else (Path(env_path) if env_path else _DEFAULT_SETTINGS_PATH)

    if not settings_path.exists():
        logger.info("No agent.yaml found at %s, using defaults", settings_path)
        return _apply_env_overrides(Settings())

    try:
        raw = yaml.safe_load(settings_path.read_text()) or {}
    except yaml.YAMLError as e:
        logger.error("Failed to parse %s: %s, using defaults", settings_path, e)
        return _apply_env_overrides(Settings())

    if not isinstance(raw, dict):
        logger.warning("%s is not a valid YAML mapping, using defaults", settings_path)
        return _apply_env_overrides(Settings())

    settings = _apply_env_overrides(_load_settings_from_dict(raw))
    logger.info("Settings loaded: chat=%s, embedding=%s, db=%s",
                settings.models.chat, settings.models.embedding, settings.memory.db_path)
    return settings


# ── Singleton ──

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the settings singleton. Loads on first call."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings() -> Settings:
    """Force reload of the settings from disk and environment."""
    global _settings
    _settings = load_settings()
    return _settings
