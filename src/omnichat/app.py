"""Command-line entry point: send one prompt and stream the reply to stdout."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import fields
from typing import Any, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import ChatCompletionsClient
from .ai.orchestration import ChatEventType, ChatStatus, ConversationOrchestrator, OrchestratorConfig
from .chat.message_model import Message
from .services.settings import Settings, load_settings
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging_utils.resolve_level(default=logging.WARNING)
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `omnichat` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("OMNICHAT_DEBUG", default=False)
    configure_logging(debug)

    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.model:
        overrides["model"] = args.model
    if args.endpoint:
        overrides["endpoint"] = args.endpoint

    settings = load_settings(overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.dump_settings:
        _dump_settings(settings, overrides=overrides)
        return 0

    if args.list_models:
        return asyncio.run(_list_models(settings))

    prompt = " ".join(args.prompt).strip() if args.prompt else sys.stdin.read().strip()
    if not prompt:
        print("Nothing to send: pass a prompt or pipe one on stdin.", file=sys.stderr)
        return 2
    if not settings.api_key:
        print("No API key configured; set OMNICHAT_API_KEY or use --set api_key=...", file=sys.stderr)
        return 2

    try:
        status = asyncio.run(run_prompt(prompt, settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130
    return 0 if status is ChatStatus.IDLE else 1


async def run_prompt(prompt: str, settings: Settings, *, stream: TextIO | None = None) -> ChatStatus:
    """Send ``prompt`` through a fresh orchestrator and print the reply as it renders."""

    destination = stream or sys.stdout
    client = ChatCompletionsClient(settings.client_settings())
    orchestrator = ConversationOrchestrator(OrchestratorConfig.from_settings(settings), client=client)
    printer = _StreamPrinter(destination)
    orchestrator.subscribe(ChatEventType.MESSAGES_UPDATED, printer)
    try:
        orchestrator.send_message(prompt)
        await orchestrator.wait_until_idle()
        status = orchestrator.status
    finally:
        orchestrator.destroy()
        await client.aclose()
    destination.write("\n")
    destination.flush()
    return status


class _StreamPrinter:
    """Writes newly rendered assistant text to a stream."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._printed: dict[str, int] = {}

    def __call__(self, messages: Sequence[Message]) -> None:
        for message in messages:
            if message.role != "assistant":
                continue
            text = message.text
            offset = self._printed.get(message.id, 0)
            if len(text) <= offset:
                continue
            self._stream.write(text[offset:])
            self._stream.flush()
            self._printed[message.id] = len(text)


async def _list_models(settings: Settings) -> int:
    client = ChatCompletionsClient(settings.client_settings())
    try:
        models = await client.list_models()
    except Exception as exc:
        print(f"Unable to list models: {exc}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()
    for model in models:
        print(model)
    return 0


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="omnichat",
        description="Send a prompt to an OpenAI-compatible chat endpoint and stream the answer.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text; read from stdin when omitted.")
    parser.add_argument("--model", help="Model identifier to use for this run.")
    parser.add_argument("--endpoint", help="Full chat-completions URL.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a setting for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    parser.add_argument("--list-models", action="store_true", help="List the endpoint's models and exit.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    known = {item.name: item for item in fields(Settings)}
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, known[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(settings: Settings, *, overrides: Mapping[str, Any], stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    output = {
        "settings": settings.describe(),
        "meta": {
            "cli_overrides": sorted(overrides.keys()),
            "environment_variables": sorted(name for name in os.environ if name.startswith("OMNICHAT_")),
        },
    }
    json.dump(output, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
