"""
Configuration loader for the flow execution engine.
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
class LLMConfig:
    provider: str = "openai"                  # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    condition_model: str = ""                 # model for prompt transitions (empty = model)
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    timeout_seconds: float = 15.0
    history_window: int = 6                   # messages shown to the condition evaluator


@dataclass
class FunctionsConfig:
    http_timeout_seconds: float = 10.0
    http_retries: int = 1                     # extra attempts on connection errors only
    code_timeout_seconds: float = 2.0
    code_memory_mb: int = 256


@dataclass
class EngineConfig:
    max_hops: int = 25                        # silent advances allowed in one turn
    history_limit: int = 40                   # messages a session keeps between turns
    error_message: str = "I'm sorry, there was an error in the conversation flow."
    fallback_message: str = "I apologize, could you please repeat that?"


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    functions: FunctionsConfig = field(default_factory=FunctionsConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOW_ENGINE_CONFIG",
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
            defaults = LLMConfig()
            settings.llm = LLMConfig(
                provider=llm.get("provider", defaults.provider),
                model=llm.get("model", defaults.model),
                condition_model=llm.get("condition_model", defaults.condition_model),
                temperature=llm.get("temperature", defaults.temperature),
                max_tokens=llm.get("max_tokens", defaults.max_tokens),
                api_key=llm.get("api_key", ""),
                timeout_seconds=llm.get("timeout_seconds", defaults.timeout_seconds),
                history_window=llm.get("history_window", defaults.history_window),
            )

        if "functions" in raw:
            fn = raw["functions"]
            defaults = FunctionsConfig()
            settings.functions = FunctionsConfig(
                http_timeout_seconds=fn.get("http_timeout_seconds", defaults.http_timeout_seconds),
                http_retries=fn.get("http_retries", defaults.http_retries),
                code_timeout_seconds=fn.get("code_timeout_seconds", defaults.code_timeout_seconds),
                code_memory_mb=fn.get("code_memory_mb", defaults.code_memory_mb),
            )

        if "engine" in raw:
            eng = raw["engine"]
            defaults = EngineConfig()
            settings.engine = EngineConfig(
                max_hops=eng.get("max_hops", defaults.max_hops),
                history_limit=eng.get("history_limit", defaults.history_limit),
                error_message=eng.get("error_message", defaults.error_message),
                fallback_message=eng.get("fallback_message", defaults.fallback_message),
            )

    if not settings.llm.api_key or settings.llm.api_key.startswith("${"):
        env_key = "ANTHROPIC_API_KEY" if settings.llm.provider == "anthropic" else "OPENAI_API_KEY"
        settings.llm.api_key = os.environ.get(env_key, "")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
