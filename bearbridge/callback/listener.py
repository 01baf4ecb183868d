"""
BearBridge Callback Listener
----------------------------
A single-use local HTTP endpoint that receives Bear's x-success / x-error
callback for exactly one command.

The socket is bound to an OS-assigned port and put into listening state
before ``listen()`` returns, so the endpoint can be embedded in the outbound
URL with no window in which a fast callback would be refused. The first
inbound request settles the listener's future and shuts the server down;
anything after that is answered with 410 and never reaches the future.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
from typing import Any, Optional, Tuple
from urllib.parse import parse_qsl

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from bearbridge.core.config import DEFAULT_PAYLOAD_WARN_BYTES
from bearbridge.core.errors import ListenerError
from bearbridge.core.types import CallbackMessage, CallbackPayload

logger = logging.getLogger("BearBridge.Listener")

ERROR_KEYS = ("errorCode", "errorMessage")

_ACK_PAGE = (
    "<!doctype html><html><head><title>Bear callback received</title></head>"
    "<body><p>Callback received. You can close this window.</p></body></html>"
)


def _decode_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def decode_callback_query(query: str) -> CallbackPayload:
    """Decode a callback query string, JSON-decoding each value where possible."""
    return {key: _decode_value(value) for key, value in parse_qsl(query, keep_blank_values=True)}


def classify_channel(path: str, payload: CallbackPayload) -> str:
    if path.strip("/") == "error" or any(key in payload for key in ERROR_KEYS):
        return "error"
    return "success"


class _CallbackServer(uvicorn.Server):
    """uvicorn server that leaves process signal handlers to the host application
    and signals ``ready`` once it accepts connections."""

    def __init__(self, config: uvicorn.Config):
        super().__init__(config)
        self.ready = asyncio.Event()

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self.ready.set()

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """
    One ephemeral callback endpoint.

    Usage:
        listener = CallbackListener()
        endpoint, first_callback = await listener.listen()
        ...  # embed endpoint in x-success / x-error, dispatch
        message = await first_callback
        await listener.close()
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        *,
        payload_warn_bytes: int = DEFAULT_PAYLOAD_WARN_BYTES,
        shutdown_grace_seconds: float = 1.0,
    ):
        self.host = host
        self.payload_warn_bytes = payload_warn_bytes
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.endpoint: Optional[str] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[_CallbackServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._future: Optional[asyncio.Future] = None
        self._closing: Optional[asyncio.Future] = None

    @property
    def port(self) -> Optional[int]:
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def closed(self) -> bool:
        return self._closing is not None and self._closing.done()

    def _bind(self) -> str:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, 0))
            sock.listen(8)
        except OSError as exc:
            sock.close()
            raise ListenerError(f"Could not allocate a callback port on {self.host}: {exc}") from exc
        sock.setblocking(False)
        self._socket = sock
        self.endpoint = f"http://{self.host}:{sock.getsockname()[1]}"
        return self.endpoint

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/{path:path}", methods=["GET", "POST"])
        async def receive_callback(request: Request, path: str) -> Response:
            return self._accept(f"/{path}", request.url.query)

        return app

    async def listen(self) -> Tuple[str, asyncio.Future]:
        """Bind, start serving, and return ``(endpoint, first_callback_future)``."""
        if self._future is not None:
            raise RuntimeError("CallbackListener is single-use")

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        endpoint = self._bind()

        config = uvicorn.Config(
            self._build_app(),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self.shutdown_grace_seconds,
        )
        self._server = _CallbackServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        self._serve_task.add_done_callback(self._on_serve_done)

        ready = asyncio.ensure_future(self._server.ready.wait())
        await asyncio.wait({ready, self._serve_task}, return_when=asyncio.FIRST_COMPLETED)
        if not ready.done():
            ready.cancel()

        if not self._server.started:
            failure = self._future.exception() if self._future.done() else None
            await self.close()
            raise failure or ListenerError(f"Callback listener on {endpoint} failed to start")

        logger.debug("Callback listener ready on %s", endpoint)
        return endpoint, self._future

    def _accept(self, path: str, query: str) -> Response:
        if self._future is None or self._future.done():
            logger.warning(
                "Ignoring extra callback on %s%s; exchange already settled",
                self.endpoint,
                path,
            )
            return PlainTextResponse("Callback already received", status_code=410)

        size = len(query.encode("utf-8"))
        if size > self.payload_warn_bytes:
            logger.warning(
                "Large callback payload on %s (%d bytes, warn threshold %d)",
                self.endpoint,
                size,
                self.payload_warn_bytes,
            )

        payload = decode_callback_query(query)
        message = CallbackMessage(channel=classify_channel(path, payload), payload=payload, path=path)
        self._future.set_result(message)
        logger.debug("Callback on %s%s (%s, %d keys)", self.endpoint, path, message.channel, len(payload))

        # The response is still flushed: uvicorn finishes in-flight requests on shutdown.
        if self._server is not None:
            self._server.should_exit = True
        return HTMLResponse(_ACK_PAGE)

    def _on_serve_done(self, task: asyncio.Task) -> None:
        if self._future is None or self._future.done():
            return
        if task.cancelled():
            self._future.cancel()
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Callback listener on %s crashed: %s", self.endpoint, exc)
            failure = ListenerError(f"Callback listener on {self.endpoint} failed: {exc}")
            failure.__cause__ = exc
            self._future.set_exception(failure)
        elif not self._closing:
            self._future.set_exception(
                ListenerError(f"Callback listener on {self.endpoint} stopped before a callback arrived")
            )

    async def close(self) -> None:
        """Stop serving and release the port. Safe to call repeatedly."""
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._closing)

    async def _shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        task = self._serve_task
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=self.shutdown_grace_seconds + 1.0)
            if not task.done():
                logger.warning("Callback listener on %s did not stop in time; cancelling", self.endpoint)
                task.cancel()
                await asyncio.wait({task})
        if self._socket is not None:
            self._socket.close()
        if self._future is not None and not self._future.done():
            self._future.cancel()
        logger.debug("Callback listener on %s closed", self.endpoint)
