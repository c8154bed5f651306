"""
Text-driven command line for Lab Assist.

Commands:
    repl         Type utterances instead of speaking them
    status       Print NLU backend status as JSON
    init-config  Write a default config file
    pull         Download the model for an Ollama tier
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .backends.model_backend import OLLAMA_KINDS, OllamaBackend
from .backends.ollama_client import OllamaClient
from .config import DEFAULT_CONFIG_PATH, PRESETS, AppConfig, load_config
from .service import CommandService
from .storage import LabStore
from .types import BackendKind, CommandResult, ConfigError, TranscriptionResult


def _print_result(result: CommandResult) -> None:
    marker = "ok" if result.success else "--"
    print(f"[{marker}] {result.message}")


async def _repl(config: AppConfig, confidence: float) -> int:
    store = LabStore(config=config.database)
    service = CommandService(store, config=config)
    try:
        await service.initialize()
        print(f"Active backend: {service.get_current_nlu_backend()['backend']}")
        print("Type a command, or 'quit' to exit.")
        while True:
            try:
                line = input("> ")
            except EOFError:
                break
            if line.strip().lower() in ("quit", "exit"):
                break

            result = await service.process_transcription(TranscriptionResult(line, confidence))
            if result.needs_confirmation:
                answer = input(f"{result.confirmation_prompt} [y/N] ")
                result = service.confirm(answer.strip().lower() in ("y", "yes"))
            _print_result(result)
    finally:
        await service.aclose()
        store.close()
    return 0


async def _status(config: AppConfig) -> int:
    store = LabStore(":memory:", config=config.database)
    service = CommandService(store, config=config)
    try:
        status = await service.get_nlu_status()
    finally:
        await service.aclose()
        store.close()
    print(json.dumps(status, indent=2))
    return 0


async def _pull(config: AppConfig, backend: str) -> int:
    kind = BackendKind(backend)
    client = OllamaClient(host=config.ai.ollama_host)
    try:
        installed = await OllamaBackend(kind, client).ensure_model(pull=True)
    finally:
        await client.aclose()
    print(f"{kind.value}: {'installed' if installed else 'not available'}")
    return 0 if installed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lab-assist", description=__doc__.splitlines()[1])
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--log-level", default=None, help="Override log level")
    sub = parser.add_subparsers(dest="command", required=True)

    repl = sub.add_parser("repl", help="Interactive text session")
    repl.add_argument(
        "--confidence", type=float, default=0.95, help="Transcription confidence to assume"
    )

    sub.add_parser("status", help="Show NLU backend status")

    init = sub.add_parser("init-config", help="Write a default config file")
    init.add_argument("--preset", choices=sorted(PRESETS), default=None)
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    pull = sub.add_parser("pull", help="Download a model tier")
    pull.add_argument("backend", choices=sorted(k.value for k in OLLAMA_KINDS))

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "init-config":
        path = args.config or DEFAULT_CONFIG_PATH
        if path.exists() and not args.force:
            print(f"Config already exists at {path} (use --force to overwrite)", file=sys.stderr)
            return 1
        config = AppConfig()
        if args.preset:
            config = config.with_preset(args.preset)
        config.save(path)
        print(f"Created Lab Assist config at {path}")
        return 0

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"{e}: {e.details}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=(args.log_level or config.logging.level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "repl":
        return asyncio.run(_repl(config, args.confidence))
    if args.command == "status":
        return asyncio.run(_status(config))
    return asyncio.run(_pull(config, args.backend))


if __name__ == "__main__":
    sys.exit(main())
