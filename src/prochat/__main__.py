"""CLI entry point for pro-chat."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import __version__
from .config import DEFAULT_MODELS, PROVIDERS, AppConfig, load_config, resolve_model_alias

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _setup_logging(logs_dir: Path) -> None:
    """Log to a rotating file under the data dir; the terminal belongs to the UI."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if os.environ.get("PROCHAT_DEBUG") else logging.INFO)
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            logs_dir / "prochat.log", maxBytes=2_000_000, backupCount=3, encoding="utf-8"
        )
    except OSError as e:
        print(f"Warning: cannot open log file in {logs_dir}: {e}", file=sys.stderr)
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)

    if os.environ.get("PROCHAT_LOG_STDERR") == "1":
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(stream)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Cannot read configuration: {e}", file=sys.stderr)
        sys.exit(1)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.provider:
        if args.provider != config.ai.provider:
            config.ai.model = DEFAULT_MODELS[args.provider]
        config.ai.provider = args.provider
    if args.model:
        config.ai.model = resolve_model_alias(args.model)
    if args.allowed_tools:
        extra = [t.strip() for t in args.allowed_tools.split(",") if t.strip()]
        existing = set(config.tools.allowed_tools)
        config.tools.allowed_tools.extend(t for t in extra if t not in existing)


def main() -> None:
    parser = argparse.ArgumentParser(prog="prochat", description="pro-chat - streaming LLM chat in your terminal")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-p", "--prompt", default=None, help="Send this message as soon as the session starts")
    parser.add_argument("-m", "--model", default=None, help="Model name or alias (sonnet, opus, haiku, gpt4, gpt4m)")
    parser.add_argument("--provider", choices=PROVIDERS, default=None, help="Provider for this session")
    parser.add_argument(
        "-c",
        "--conversation",
        dest="conversation_id",
        default=None,
        help="Open a saved conversation by id",
    )
    parser.add_argument(
        "--config-path",
        dest="config_path",
        type=Path,
        default=None,
        help="Path to config.yaml (default: ~/.prochat/config.yaml)",
    )
    parser.add_argument("--no-tools", action="store_true", help="Disable built-in tools")
    parser.add_argument(
        "--allowed-tools",
        dest="allowed_tools",
        default=None,
        help="Comma-separated list of tools that run without asking (e.g., execute,write_file)",
    )
    args = parser.parse_args()

    config = _load_config_or_exit(args.config_path)
    _apply_overrides(config, args)
    _setup_logging(config.app.logs_dir)
    logging.getLogger(__name__).info(
        "Starting pro-chat %s (provider=%s model=%s)", __version__, config.ai.provider, config.ai.model
    )

    from .cli.repl import run_cli

    try:
        asyncio.run(
            run_cli(
                config,
                prompt=args.prompt,
                conversation_id=args.conversation_id,
                no_tools=args.no_tools,
            )
        )
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass


if __name__ == "__main__":
    main()
