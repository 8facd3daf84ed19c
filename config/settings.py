"""
Configuration loader for the prompt relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


DEFAULT_QUEUE_NAME = "prompt_tasks_queue"
DEFAULT_RECONNECT_DELAY_MS = 5000

# provider -> (default model, API key environment variable)
PROVIDER_DEFAULTS = {
    "openai": ("gpt-3.5-turbo", "OPENAI_API_KEY"),
    "anthropic": ("claude-3-5-haiku-latest", "ANTHROPIC_API_KEY"),
}


@dataclass
class LLMConfig:
    provider: str = "openai"            # "openai" | "anthropic"
    model: str = ""                     # empty: the provider's default model
    max_tokens: int = 1024
    api_key: str = ""                   # empty: the provider's key variable

    def __post_init__(self):
        model, key_var = PROVIDER_DEFAULTS.get(self.provider, PROVIDER_DEFAULTS["openai"])
        self.model = self.model or model
        self.api_key = self.api_key or _env(key_var)


@dataclass
class QueueConfig:
    amqp_url: str = field(default_factory=lambda: _env("RABBITMQ_URL", "amqp://localhost"))
    queue_name: str = DEFAULT_QUEUE_NAME
    reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS   # flat delay between attempts
    prefetch_count: int = 1             # one in-flight message per worker

    @property
    def reconnect_delay(self) -> float:
        return self.reconnect_delay_ms / 1000


@dataclass
class DatabaseConfig:
    url: str = field(default_factory=lambda: _env("DATABASE_URL", "sqlite:///./prompt_relay.db"))
    library_backend: str = "memory"     # "sql" | "memory"


@dataclass
class Settings:
    app_name: str = "PromptRelay"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (empty when unset)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PROMPT_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider") or settings.llm.provider,
                model=llm.get("model") or "",
                max_tokens=llm.get("max_tokens", settings.llm.max_tokens),
                api_key=llm.get("api_key") or "",
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                amqp_url=q.get("amqp_url") or settings.queue.amqp_url,
                queue_name=q.get("queue_name", settings.queue.queue_name),
                reconnect_delay_ms=q.get("reconnect_delay_ms", settings.queue.reconnect_delay_ms),
                prefetch_count=q.get("prefetch_count", settings.queue.prefetch_count),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url") or settings.database.url,
                library_backend=db.get("library_backend", settings.database.library_backend),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
