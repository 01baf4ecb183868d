import sys
import json
import logging
import threading
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any, List, BinaryIO, TextIO

from .handlers import (
    ToolContext,
    handle_call_tool,
    handle_initialize,
    handle_list_tools,
    new_session_state,
)
from .protocol import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, SERVER_BUSY

logger = logging.getLogger("BearBridge.mcp.server")


class McpServer:
    """
    Handles JSON-RPC communication over stdio with thread-pooled dispatching.

    tools/call blocks for up to the callback deadline, so it always runs on
    the dispatch pool; everything else is answered inline on the read loop.
    """

    def __init__(
        self,
        ctx: ToolContext,
        max_workers: Optional[int] = None,
        queue_limit: Optional[int] = None,
        output: Optional[TextIO] = None,
        startup_warnings: Optional[List[str]] = None,
    ):
        self.ctx = ctx
        self.max_workers = max_workers or max(1, int(os.environ.get("BEAR_BRIDGE_MCP_DISPATCH_MAX_WORKERS", "8")))
        self.queue_limit = queue_limit or max(
            self.max_workers,
            int(os.environ.get("BEAR_BRIDGE_MCP_DISPATCH_QUEUE_LIMIT", str(self.max_workers * 8))),
        )
        self.output = output
        self.startup_warnings = list(startup_warnings or [])
        self.session = new_session_state()

        self.transport_closed = threading.Event()
        self.write_lock = threading.Lock()

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._queue_semaphore = threading.BoundedSemaphore(self.queue_limit)

    def get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="bearbridge-mcp-dispatch",
                )
            return self._executor

    def stop(self, wait: bool = False):
        """
        Shut down the dispatcher and close transport.

        With ``wait`` in-flight calls finish and send their replies first;
        otherwise queued calls are cancelled and nothing more is written.
        """
        if not wait:
            self.transport_closed.set()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
        self.transport_closed.set()

    # --- output ---

    def send_rpc(self, message: Dict[str, Any]) -> None:
        """Serialize and send a JSON-RPC message to stdout."""
        if self.transport_closed.is_set():
            return

        try:
            serialized = json.dumps(message)
            with self.write_lock:
                if self.transport_closed.is_set():
                    return
                out = self.output or sys.stdout
                out.write(serialized + "\n")
                out.flush()
        except (BrokenPipeError, OSError) as exc:
            self.transport_closed.set()
            logger.warning("MCP stdio transport closed while sending: %s", exc)

    def send_result(self, msg_id: Any, result: Dict[str, Any]) -> None:
        self.send_rpc({"jsonrpc": "2.0", "id": msg_id, "result": result})

    def send_error(self, msg_id: Any, code: int, message: str) -> None:
        """Convenience method for sending JSON-RPC errors."""
        self.send_rpc({
            "jsonrpc": "2.0",
            "id": msg_id,
            "error": {
                "code": code,
                "message": message,
            },
        })

    # --- input ---

    def read_message(self, stream: BinaryIO) -> Optional[Dict[str, Any]]:
        """
        Read one inbound JSON-RPC message from a binary stream.
        Supports Content-Length framing and newline-delimited JSON.
        """
        while True:
            line = stream.readline()
            if not line:
                return None
            if not line.strip():
                continue

            lowered = line.lower()
            if lowered.startswith(b"content-length:"):
                try:
                    content_length = int(line.split(b":", 1)[1].strip())
                    if content_length <= 0:
                        raise ValueError("content length must be positive")
                except ValueError:
                    logger.warning("Invalid Content-Length header: %r", line)
                    if not self._consume_framing_headers(stream):
                        return None
                    continue

                if not self._consume_framing_headers(stream):
                    return None

                payload = stream.read(content_length)
                if not payload or len(payload) != content_length:
                    return None

                try:
                    msg = json.loads(payload.decode("utf-8"))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning("Dropping undecodable framed message")
                    continue

                if isinstance(msg, dict):
                    return msg
                continue

            try:
                msg = json.loads(line.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("Dropping undecodable line: %r", line[:200])
                continue

            if isinstance(msg, dict):
                return msg
            continue

    def _consume_framing_headers(self, stream: BinaryIO) -> bool:
        while True:
            header_line = stream.readline()
            if not header_line:
                return False
            if header_line in (b"\r\n", b"\n"):
                return True

    # --- dispatch ---

    def dispatch(self, msg: Dict[str, Any]) -> None:
        """
        Handle a single parsed JSON-RPC message.

        - Unknown request methods (with id) return -32601.
        - Unknown notifications (no id) are ignored.
        - notifications/initialized is only accepted after successful initialize.
        """
        msg_id = msg.get("id")
        method = msg.get("method")
        params = msg.get("params", {})

        if not isinstance(method, str):
            if msg_id is not None:
                self.send_error(msg_id, INVALID_REQUEST, "Invalid Request: missing method")
            return

        if method == "initialize":
            handle_initialize(
                msg_id,
                {} if params is None else params,
                self.session,
                self.send_error,
                self.send_result,
                self.startup_warnings,
            )
            return

        if method == "notifications/initialized":
            if self.session["negotiated"]:
                self.session["initialized"] = True
                logger.info("Client initialized connection")
            else:
                logger.warning("Ignored notifications/initialized before successful initialize")
            return

        if method == "ping":
            if msg_id is not None:
                self.send_result(msg_id, {})
            return

        if method in ("tools/list", "tools/call"):
            validated = self._validate_initialized_params(msg_id, method, params)
            if validated is None:
                return
            if method == "tools/list":
                handle_list_tools(msg_id, self.send_result)
            else:
                handle_call_tool(msg_id, validated, self.ctx, self.send_error, self.send_result)
            return

        if msg_id is not None:
            self.send_error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")
        else:
            logger.debug("Ignoring unknown notification method: %s", method)

    def _validate_initialized_params(self, msg_id: Any, method: str, params: Any) -> Optional[Dict[str, Any]]:
        """Validate initialized lifecycle and dict params for request methods."""
        if not self.session["initialized"]:
            if msg_id is not None:
                self.send_error(
                    msg_id,
                    INVALID_REQUEST,
                    "Server not initialized. Send initialize then notifications/initialized.",
                )
            return None
        if msg_id is None:
            logger.debug("Ignoring %s notification without id", method)
            return None
        validated = {} if params is None else params
        if not isinstance(validated, dict):
            self.send_error(msg_id, INVALID_PARAMS, f"Invalid params: {method} params must be an object")
            return None
        return validated

    def submit_dispatch(self, msg: Dict[str, Any]) -> bool:
        """Submit a message for background dispatch if a slot is available."""
        if not self._queue_semaphore.acquire(blocking=False):
            msg_id = msg.get("id")
            if msg_id is not None:
                self.send_error(msg_id, SERVER_BUSY, "Server busy: dispatch queue is saturated.")
            else:
                logger.warning("Dropping notification while dispatch queue is saturated: %s", msg.get("method"))
            return False

        try:
            future = self.get_executor().submit(self._dispatch_guarded, msg)
        except Exception:
            self._queue_semaphore.release()
            raise

        future.add_done_callback(lambda f: self._queue_semaphore.release())
        return True

    def _dispatch_guarded(self, msg: Dict[str, Any]) -> None:
        try:
            self.dispatch(msg)
        except Exception:
            logger.exception("Unexpected error during RPC dispatch")
            msg_id = msg.get("id")
            if msg_id is not None and not self.transport_closed.is_set():
                self.send_error(msg_id, INTERNAL_ERROR, "Internal error during request dispatch.")

    def serve(self, stream: Optional[BinaryIO] = None) -> None:
        """Read and dispatch messages until EOF or the transport closes."""
        stream = stream or sys.stdin.buffer
        logger.info("BearBridge MCP server started")
        try:
            while not self.transport_closed.is_set():
                msg = self.read_message(stream)
                if msg is None:
                    break
                if msg.get("method") == "tools/call":
                    self.submit_dispatch(msg)
                else:
                    self._dispatch_guarded(msg)
        finally:
            self.stop(wait=True)
            self.ctx.close()
            logger.info("BearBridge MCP server stopped")
