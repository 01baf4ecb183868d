"""
BearBridge CLI

Usage:
    bearbridge serve [options]
    bearbridge call ACTION [--param KEY=VALUE ...] [options]
    bearbridge actions
    bearbridge doctor

Commands:
    serve      Run the MCP server over stdio.
    call       Run one Bear action and print Bear's reply as JSON.
    actions    List supported Bear actions and their fields.
    doctor     Show platform, token and database diagnostics.

Exit codes for ``call``: 0 success, 1 invalid input, 2 timeout, dispatch
or Bear-reported error.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from bearbridge.bear.actions import ACTIONS, get_action
from bearbridge.bear.api import BearAPI
from bearbridge.callback.correlator import CommandCorrelator
from bearbridge.core.config import BridgeConfig
from bearbridge.core.errors import BearBridgeError, ValidationError
from bearbridge.core.types import ActionSpec, TokenPolicy
from bearbridge.platform import get_config_dir, get_platform_info, log_platform_summary
from bearbridge.version import __version__

logger = logging.getLogger("BearBridge.CLI")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FAILED = 2

_TRUE_WORDS = ("true", "1", "yes", "on")
_FALSE_WORDS = ("false", "0", "no", "off")


def configure_logging(level: str = "info", log_file: Optional[str] = None) -> None:
    """Log to stderr (stdout carries MCP traffic) and optionally to a file."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="a"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


def load_config(path: Optional[Path]) -> BridgeConfig:
    """Explicit --config, else config.yaml in the config dir if present, else environment."""
    if path is not None:
        return BridgeConfig.from_yaml(str(path))
    default_path = get_config_dir() / "config.yaml"
    if default_path.exists():
        return BridgeConfig.from_yaml(str(default_path))
    return BridgeConfig.from_env()


def parse_params(spec: ActionSpec, pairs: List[str]) -> Dict[str, object]:
    """Turn ``key=value`` pairs into parameters, reading booleans the way a shell user writes them."""
    params: Dict[str, object] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationError(f"Expected KEY=VALUE, got '{pair}'")
        if key in spec.booleans:
            lowered = value.strip().lower()
            if lowered in _TRUE_WORDS:
                params[key] = True
                continue
            if lowered in _FALSE_WORDS:
                params[key] = False
                continue
        params[key] = value
    return params


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def cmd_serve(args: argparse.Namespace, config: BridgeConfig) -> int:
    from bearbridge.mcp.handlers import ToolContext
    from bearbridge.mcp.runtime import AsyncRuntime
    from bearbridge.mcp.server import McpServer
    from bearbridge.platform import find_open_command
    from bearbridge.store.bear_db import BearDatabase

    log_platform_summary()
    db_path = config.resolved_database_path()
    warnings: List[str] = []
    if not config.bear.token:
        warnings.append("No Bear API token configured; get_tags and 'selected' note actions will fail.")
    if not find_open_command(config.bear.open_command):
        warnings.append("No URL open command found; callback tools cannot reach Bear.")
    if not db_path.exists():
        warnings.append(f"Bear database not found at {db_path}; db_* tools will fail.")

    ctx = ToolContext(
        api=BearAPI(CommandCorrelator.from_config(config), token=config.bear.token),
        runtime=AsyncRuntime(),
        db_factory=functools.partial(BearDatabase, db_path),
    )
    McpServer(ctx, startup_warnings=warnings).serve()
    return EXIT_OK


def cmd_call(args: argparse.Namespace, config: BridgeConfig) -> int:
    try:
        spec = get_action(args.action)
        params = parse_params(spec, args.param)
        api = BearAPI(CommandCorrelator.from_config(config), token=config.bear.token)
        payload = asyncio.run(api.call(args.action, params))
    except ValidationError as exc:
        print(f"Invalid input: {exc}", file=sys.stderr)
        return EXIT_INVALID
    except BearBridgeError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_FAILED

    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
    return EXIT_OK


def cmd_actions(args: argparse.Namespace, config: BridgeConfig) -> int:
    for name in sorted(ACTIONS):
        spec = ACTIONS[name]
        parts = []
        if spec.required:
            parts.append("required: " + ", ".join(sorted(spec.required)))
        if spec.one_of:
            parts.append("one of: " + ", ".join(sorted(spec.one_of)))
        if spec.token is not TokenPolicy.NEVER:
            parts.append(f"token: {spec.token.value}")
        optional = sorted(spec.fields - spec.required - spec.one_of - {"token"})
        if optional:
            parts.append("optional: " + ", ".join(optional))
        print(f"{name:12} {spec.description}")
        for part in parts:
            print(f"{'':12}   {part}")
    return EXIT_OK


def cmd_doctor(args: argparse.Namespace, config: BridgeConfig) -> int:
    info = get_platform_info()
    db_path = config.resolved_database_path()
    info.update({
        "version": __version__,
        "token_configured": bool(config.bear.token),
        "bear_database": str(db_path),
        "bear_database_exists": db_path.exists(),
        "callback_timeout_seconds": config.callback.timeout_seconds,
    })
    print(json.dumps(info, indent=2))
    healthy = bool(info["open_command"]) and info["bear_database_exists"]
    return EXIT_OK if healthy else EXIT_INVALID


# ─────────────────────────────────────────────────────────────────────────────
# Argument parser
# ─────────────────────────────────────────────────────────────────────────────

def _add_common_options(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--token", default=None, help="Bear API token (default: BEAR_BRIDGE_TOKEN).")
    sub.add_argument("--timeout", type=float, default=None, metavar="SECONDS", help="Callback deadline (default 10).")
    sub.add_argument("--db-path", default=None, metavar="PATH", help="Bear database path.")
    sub.add_argument("--log-level", default=None, help="debug, info, warning, error or critical.")
    sub.add_argument("--log-file", default=None, metavar="PATH", help="Also append logs to this file.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bearbridge",
        description="Bridge Bear's x-callback-url API to request/response callers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  bearbridge serve --token $BEAR_TOKEN\n"
               "  bearbridge call create --param title='Meeting Notes' --param tags=work,urgent\n"
               "  bearbridge call search --param term=roadmap --timeout 5\n"
               "  bearbridge actions\n",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, metavar="PATH", help="YAML config file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the MCP stdio server.")
    _add_common_options(serve)

    call = subparsers.add_parser("call", help="Run one Bear action and print the reply.")
    call.add_argument("action", help="Bear action name, e.g. create, search, open-note.")
    call.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Action parameter; repeat for several.",
    )
    _add_common_options(call)

    subparsers.add_parser("actions", help="List supported Bear actions.")
    doctor = subparsers.add_parser("doctor", help="Show diagnostics.")
    _add_common_options(doctor)
    return parser


_COMMANDS = {
    "serve": cmd_serve,
    "call": cmd_call,
    "actions": cmd_actions,
    "doctor": cmd_doctor,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config).with_overrides(
        token=getattr(args, "token", None),
        timeout_seconds=getattr(args, "timeout", None),
        database_path=getattr(args, "db_path", None),
        log_level=getattr(args, "log_level", None),
        log_file=getattr(args, "log_file", None),
    )
    configure_logging(config.logging.level, config.logging.log_file)
    return _COMMANDS[args.command](args, config)


if __name__ == "__main__":
    raise SystemExit(main())
