"""
Configuration loader for the flow interpreter.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class FlowConfig:
    debounce_ms: int = 10000                # used when the flow has no debounce_time
    debounce_merge: str = "latest"          # "latest" | "join"
    max_steps: int = 100                    # node executions per walk
    paragraph_delay_s: float = 2.0
    link_delay_s: float = 3.0
    media_delay_s: float = 5.0
    timeout_scan_interval_s: int = 60
    timeout_scan_batch_size: int = 100


@dataclass
class LLMConfig:
    provider: str = "openai"               # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    timeout_s: float = 60.0


@dataclass
class HttpConfig:
    timeout_s: float = 15.0
    user_agent: str = "flow-interpreter/1.0"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flows.db"      # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"           # "sql" | "memory" | "file"
    store_file_dir: str = "./data"


@dataclass
class DispatchConfig:
    sender: str = "store"                   # "store" | "http"
    base_url: str = ""
    token: str = ""
    timeout_s: float = 10.0


@dataclass
class ErrorTrackingConfig:
    sentry_dsn: str = ""
    environment: str = "production"
    traces_sample_rate: float = 0.0


@dataclass
class Settings:
    app_name: str = "FlowInterpreter"
    debug: bool = False
    timezone: str = "UTC"
    flow: FlowConfig = field(default_factory=FlowConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    error_tracking: ErrorTrackingConfig = field(default_factory=ErrorTrackingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _section(cls, raw: dict[str, Any], defaults):
    """Build a config section, keeping defaults for missing or unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**{**defaults.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "flow" in raw:
            settings.flow = _section(FlowConfig, raw["flow"], settings.flow)
        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"], settings.llm)
        if "http" in raw:
            settings.http = _section(HttpConfig, raw["http"], settings.http)
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "dispatch" in raw:
            settings.dispatch = _section(DispatchConfig, raw["dispatch"], settings.dispatch)
        if "error_tracking" in raw:
            settings.error_tracking = _section(
                ErrorTrackingConfig, raw["error_tracking"], settings.error_tracking,
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
