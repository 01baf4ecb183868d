import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from bearbridge.bear.api import BearAPI
from bearbridge.callback.codec import validate_non_empty_string
from bearbridge.core.errors import BearBridgeError, ValidationError
from bearbridge.store.bear_db import BearDatabase
from bearbridge.version import __version__

from .definitions import (
    CALLBACK_TOOLS,
    DEFAULT_MAX_NOTES,
    DESTRUCTIVE_TOOLS,
    IDEMPOTENT_TOOLS,
    READ_ONLY_TOOLS,
    TOOLS_SCHEMAS,
)
from .protocol import (
    INVALID_PARAMS,
    INTERNAL_ERROR,
    JSON_SCHEMA_2020_12,
    METHOD_NOT_FOUND,
    SERVER_NAME,
    negotiate_protocol_version,
)
from .runtime import AsyncRuntime
from .utils import (
    describe_tool_error,
    format_note_list_text,
    format_note_text,
    format_payload_text,
    format_tag_list_text,
    tool_result,
)

logger = logging.getLogger("BearBridge.mcp.handlers")


@dataclass
class ToolContext:
    """What tool calls need: the Bear facade, the loop to run it on, and the database."""

    api: BearAPI
    runtime: AsyncRuntime
    db_factory: Callable[[], BearDatabase] = BearDatabase
    _db: Optional[BearDatabase] = field(default=None, init=False, repr=False)
    _db_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def database(self) -> BearDatabase:
        with self._db_lock:
            if self._db is None:
                self._db = self.db_factory()
            return self._db

    def close(self) -> None:
        with self._db_lock:
            if self._db is not None:
                self._db.close()
                self._db = None
        self.runtime.stop()


def new_session_state() -> Dict[str, Any]:
    return {
        "negotiated": False,
        "initialized": False,
        "protocol_version": None,
        "client_capabilities": {},
        "client_info": {},
    }


def build_initialize_instructions(startup_warnings: Optional[List[str]] = None) -> str:
    """Build a set of instructions for the client during initialization."""
    base_instructions = (
        "BearBridge MCP server. Callback tools drive the Bear app and return Bear's reply; "
        "db_* tools read notes and tags directly from Bear's database."
    )
    if not startup_warnings:
        return base_instructions
    bullet_list = "\n".join(f"- {warning}" for warning in startup_warnings)
    return f"{base_instructions}\n\nStartup checks:\n{bullet_list}"


def handle_initialize(
    msg_id: Any,
    params: Dict[str, Any],
    session: Dict[str, Any],
    send_error_fn,
    send_result_fn,
    startup_warnings: Optional[List[str]] = None,
):
    """Handle protocol negotiation and server initialization."""
    if not isinstance(params, dict):
        send_error_fn(msg_id, INVALID_PARAMS, "initialize params must be an object")
        return

    requested_version = params.get("protocolVersion")
    negotiated_version = negotiate_protocol_version(requested_version)
    if not negotiated_version:
        send_error_fn(msg_id, INVALID_PARAMS, f"Unsupported protocol version {requested_version}")
        return

    session["negotiated"] = True
    session["protocol_version"] = negotiated_version
    session["client_capabilities"] = params.get("capabilities", {})
    session["client_info"] = params.get("clientInfo", {})

    send_result_fn(msg_id, {
        "protocolVersion": negotiated_version,
        "capabilities": {"tools": {"listChanged": False}},
        "serverInfo": {"name": SERVER_NAME, "version": __version__},
        "instructions": build_initialize_instructions(startup_warnings),
    })


def handle_list_tools(msg_id: Any, send_result_fn):
    """List available tools with schemas and hints."""
    tools_list = []
    for schema_def in TOOLS_SCHEMAS:
        name = schema_def["name"]
        input_schema = dict(schema_def["inputSchema"])
        input_schema.setdefault("$schema", JSON_SCHEMA_2020_12)
        read_only = name in READ_ONLY_TOOLS
        tools_list.append({
            "name": name,
            "description": schema_def["description"],
            "inputSchema": input_schema,
            "annotations": {
                "readOnlyHint": read_only,
                "destructiveHint": name in DESTRUCTIVE_TOOLS,
                "idempotentHint": name in IDEMPOTENT_TOOLS or read_only,
                "openWorldHint": False,
            },
        })
    send_result_fn(msg_id, {"tools": tools_list})


def handle_call_tool(msg_id: Any, params: Dict[str, Any], ctx: ToolContext, send_error_fn, send_result_fn):
    """Execute a single tool call."""
    name = params.get("name")
    if not isinstance(name, str) or not name:
        send_error_fn(msg_id, INVALID_PARAMS, "Invalid params: tools/call requires non-empty string name")
        return
    arguments = params.get("arguments")
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        send_error_fn(msg_id, INVALID_PARAMS, "Invalid params: arguments must be an object")
        return

    started = time.monotonic()
    outcome = "success"
    try:
        res = call_tool(name, arguments, ctx)
        if res is None:
            outcome = "unknown_tool"
            send_error_fn(msg_id, METHOD_NOT_FOUND, f"Unknown tool: {name}")
            return
        if res.get("isError"):
            outcome = "tool_error"
        send_result_fn(msg_id, res)
    except Exception as e:
        outcome = "error"
        logger.exception("Tool execution failed: %s", name)
        send_error_fn(msg_id, INTERNAL_ERROR, str(e))
    finally:
        logger.info(
            "Tool call telemetry: name=%s id=%r outcome=%s elapsed_ms=%.1f",
            name, msg_id, outcome, (time.monotonic() - started) * 1000.0,
        )


def call_tool(name: str, arguments: Dict[str, Any], ctx: ToolContext) -> Optional[Dict[str, Any]]:
    """Run a tool and return its MCP result, or None if no such tool exists."""
    if name in CALLBACK_TOOLS:
        handler = _do_bear_action
    else:
        handler = _DB_DISPATCH.get(name)
        if handler is None:
            return None
    try:
        return handler(name, arguments, ctx)
    except BearBridgeError as exc:
        logger.info("Tool %s failed: %s", name, exc)
        return tool_result(describe_tool_error(exc), name, is_error=True)


def _timeout_arg(args: Dict[str, Any]) -> Optional[float]:
    timeout = args.pop("timeout", None)
    if timeout is None:
        return None
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValidationError("timeout must be a positive number of seconds", field="timeout")
    return float(timeout)


def _max_notes_arg(args: Dict[str, Any]) -> int:
    value = args.get("max_notes", DEFAULT_MAX_NOTES)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("max_notes must be a positive integer", field="max_notes")
    return value


def _do_bear_action(name: str, arguments: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    action, fixed, extra_required, _ = CALLBACK_TOOLS[name]
    args = dict(arguments)
    timeout = _timeout_arg(args)
    token = args.pop("token", None)
    keep_title = args.pop("keep_title", True) if name == "replace_text" else True
    if not isinstance(keep_title, bool):
        raise ValidationError("keep_title must be a boolean", field="keep_title")
    for required in extra_required:
        validate_non_empty_string(args.get(required), required)
    for key in fixed:
        if key in args:
            raise ValidationError(f"{name} does not accept '{key}'", field=key)
    args.update(fixed)
    if not keep_title:
        args["mode"] = "replace_all"

    payload = ctx.runtime.run(ctx.api.call(action, args, token=token, timeout=timeout))
    return tool_result(format_payload_text(payload), name)


def _do_db_open_note(name: str, args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    note = ctx.database().get_note(
        id=args.get("id"),
        title=args.get("title"),
        header=args.get("header"),
        exclude_trashed=bool(args.get("exclude_trashed", False)),
    )
    if note is None:
        return tool_result("Note not found.", name, is_error=True)
    return tool_result(format_note_text(note), name)


def _do_db_search_notes(name: str, args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    max_notes = _max_notes_arg(args)
    db = ctx.database()
    notes = db.search_notes(term=args.get("term"), tag=args.get("tag"))
    contents = {note.identifier: db.get_note(id=note.identifier) for note in notes[:max_notes]}
    return tool_result(
        format_note_list_text(notes, contents, max_notes, "No notes found matching the search criteria."),
        name,
    )


def _do_db_get_tags(name: str, args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    return tool_result(format_tag_list_text(ctx.database().get_tags()), name)


def _do_db_open_tag(name: str, args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    tag = validate_non_empty_string(args.get("name"), "name")
    max_notes = _max_notes_arg(args)
    db = ctx.database()
    notes = db.get_notes_by_tag(tag)
    contents = {note.identifier: db.get_note(id=note.identifier) for note in notes[:max_notes]}
    return tool_result(
        format_note_list_text(notes, contents, max_notes, f"No notes found with tag '{tag}'."),
        name,
    )


_DB_DISPATCH: Dict[str, Callable[[str, Dict[str, Any], ToolContext], Dict[str, Any]]] = {
    "db_open_note": _do_db_open_note,
    "db_search_notes": _do_db_search_notes,
    "db_get_tags": _do_db_get_tags,
    "db_open_tag": _do_db_open_tag,
}
