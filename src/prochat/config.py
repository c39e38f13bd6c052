"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. When writing code, you are precise and produce clean, "
    "working code. You format responses using markdown. When asked to edit files or write code, "
    "use the available tools to read, write, and edit files directly. Be concise but thorough."
)

PROVIDERS = ("anthropic", "openai")

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
}

MODEL_ALIASES: dict[str, str] = {
    "sonnet": "claude-sonnet-4-20250514",
    "s": "claude-sonnet-4-20250514",
    "opus": "claude-opus-4-20250514",
    "o": "claude-opus-4-20250514",
    "haiku": "claude-haiku-4-5-20251001",
    "h": "claude-haiku-4-5-20251001",
    "gpt4": "gpt-4o",
    "gpt4m": "gpt-4o-mini",
}


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.strip().lower(), name.strip())


@dataclass
class AIConfig:
    provider: str = "anthropic"
    model: str = DEFAULT_MODELS["anthropic"]
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"
    max_tokens: int = 8192
    temperature: float = 0.7
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    request_timeout: int = 120  # seconds; read timeout for the HTTP stream
    connect_timeout: int = 10  # seconds; TCP connect timeout
    verify_ssl: bool = True

    def resolved_api_key(self) -> str | None:
        """Return the credential for the active provider, or None when unset."""
        key = self.anthropic_api_key if self.provider == "anthropic" else self.openai_api_key
        return key or None


@dataclass
class ToolsConfig:
    enabled: bool = True
    command_timeout: int = 120
    allowed_tools: list[str] = field(default_factory=list)
    denied_tools: list[str] = field(default_factory=list)


@dataclass
class CliConfig:
    tick_rate_ms: int = 250
    notify_on_complete: bool = True
    restore_last: bool = True
    last_conversation_id: str | None = None


@dataclass
class AppSettings:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".prochat")

    @property
    def conversations_dir(self) -> Path:
        return self.data_dir / "conversations"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


@dataclass
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    app: AppSettings = field(default_factory=AppSettings)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    cli: CliConfig = field(default_factory=CliConfig)
    config_path: Path | None = None


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    env_dir = os.environ.get("PROCHAT_DATA_DIR")
    if env_dir:
        return Path(os.path.expanduser(env_dir)) / "config.yaml"
    return Path.home() / ".prochat" / "config.yaml"


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    return str(raw).lower() not in ("false", "0", "no", "off")


def _as_int(raw: Any, name: str, minimum: int = 1) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _as_str_list(raw: Any, name: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{name} must be a list of tool names")
    return [str(item) for item in raw]


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")

    ai_raw = raw.get("ai", {}) or {}
    provider = (ai_raw.get("provider") or os.environ.get("PROCHAT_PROVIDER", "anthropic")).lower()
    if provider not in PROVIDERS:
        raise ValueError(f"ai.provider must be one of {', '.join(PROVIDERS)}, got {provider!r}")

    model = ai_raw.get("model") or os.environ.get("PROCHAT_MODEL") or DEFAULT_MODELS[provider]

    try:
        temperature = float(ai_raw.get("temperature", 0.7))
    except (TypeError, ValueError) as e:
        raise ValueError(f"ai.temperature must be a number, got {ai_raw.get('temperature')!r}") from e
    if not 0.0 <= temperature <= 2.0:
        raise ValueError(f"ai.temperature must be between 0.0 and 2.0, got {temperature}")

    ai = AIConfig(
        provider=provider,
        model=resolve_model_alias(model),
        anthropic_api_key=ai_raw.get("anthropic_api_key") or os.environ.get("ANTHROPIC_API_KEY", ""),
        openai_api_key=ai_raw.get("openai_api_key") or os.environ.get("OPENAI_API_KEY", ""),
        anthropic_base_url=(ai_raw.get("anthropic_base_url") or "https://api.anthropic.com").rstrip("/"),
        openai_base_url=(ai_raw.get("openai_base_url") or "https://api.openai.com/v1").rstrip("/"),
        max_tokens=_as_int(ai_raw.get("max_tokens", 8192), "ai.max_tokens"),
        temperature=temperature,
        system_prompt=ai_raw.get("system_prompt") or _DEFAULT_SYSTEM_PROMPT,
        request_timeout=_as_int(ai_raw.get("request_timeout", 120), "ai.request_timeout"),
        connect_timeout=_as_int(ai_raw.get("connect_timeout", 10), "ai.connect_timeout"),
        verify_ssl=_as_bool(ai_raw.get("verify_ssl"), True),
    )

    app_raw = raw.get("app", {}) or {}
    data_dir_raw = app_raw.get("data_dir") or os.environ.get("PROCHAT_DATA_DIR") or "~/.prochat"
    app_settings = AppSettings(data_dir=Path(os.path.expanduser(data_dir_raw)))

    tools_raw = raw.get("tools", {}) or {}
    tools_config = ToolsConfig(
        enabled=_as_bool(tools_raw.get("enabled"), True),
        command_timeout=_as_int(tools_raw.get("command_timeout", 120), "tools.command_timeout"),
        allowed_tools=_as_str_list(tools_raw.get("allowed_tools"), "tools.allowed_tools"),
        denied_tools=_as_str_list(tools_raw.get("denied_tools"), "tools.denied_tools"),
    )

    cli_raw = raw.get("cli", {}) or {}
    cli_config = CliConfig(
        tick_rate_ms=_as_int(cli_raw.get("tick_rate_ms", 250), "cli.tick_rate_ms", minimum=10),
        notify_on_complete=_as_bool(cli_raw.get("notify_on_complete"), True),
        restore_last=_as_bool(cli_raw.get("restore_last"), True),
        last_conversation_id=cli_raw.get("last_conversation_id") or None,
    )

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(
        ai=ai,
        app=app_settings,
        tools=tools_config,
        cli=cli_config,
        config_path=path,
    )


def save_last_conversation(conversation_id: str | None, config_path: Path | None = None) -> None:
    """Record the last active conversation id in the config file.

    Read-modify-write so unrelated keys survive. Failures are logged, not raised.
    """
    path = config_path or _get_config_path()
    try:
        raw: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        cli_section = (raw.get("cli") or {}) if isinstance(raw, dict) else None
        if not isinstance(cli_section, dict):
            logger.warning("Not recording last conversation: %s has no usable cli section", path)
            return
        raw["cli"] = cli_section
        if cli_section.get("last_conversation_id") == conversation_id:
            return
        cli_section["last_conversation_id"] = conversation_id
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(raw, f, default_flow_style=False, sort_keys=False)
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not record last conversation in %s: %s", path, e)
