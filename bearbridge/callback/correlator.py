"""
BearBridge Command Correlator
-----------------------------
Runs one request/response cycle against Bear:

    IDLE -> AWAITING_CALLBACK -> RESOLVED
                              -> REJECTED_TIMEOUT
                              -> REJECTED_ERROR
                              -> REJECTED_TRANSPORT

Each command gets its own CallbackListener, so concurrent commands are
correlated by the port their callback arrives on and need no request ID or
locking. The listener is bound before the URL is dispatched and is always
closed before ``execute`` returns or raises.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Mapping, Optional
from urllib.parse import quote, urlencode

from bearbridge.callback.codec import encode
from bearbridge.callback.invoker import ExternalInvoker, OpenURLInvoker
from bearbridge.callback.listener import CallbackListener
from bearbridge.core.config import DEFAULT_TIMEOUT_SECONDS, BridgeConfig
from bearbridge.core.errors import (
    CallbackError,
    CommandCancelledError,
    CommandTimeoutError,
    TransportFailure,
)
from bearbridge.core.types import (
    TERMINAL_STATES,
    ActionSpec,
    CallbackPayload,
    CommandRequest,
    ExchangeState,
)

logger = logging.getLogger("BearBridge.Correlator")

SUCCESS_PARAM = "x-success"
ERROR_PARAM = "x-error"


def build_invocation_url(
    action: str,
    params: Mapping[str, str],
    endpoint: str,
    scheme: str = "bear",
) -> str:
    """
    Build ``<scheme>://x-callback-url/<action>?<params>&x-success=..&x-error=..``.

    Both delivery destinations point at the same endpoint; the path tells the
    listener which channel fired. Spaces are encoded as ``%20``.
    """
    query = {k: v for k, v in params.items() if k not in (SUCCESS_PARAM, ERROR_PARAM)}
    query[SUCCESS_PARAM] = f"{endpoint}/success"
    query[ERROR_PARAM] = f"{endpoint}/error"
    encoded = urlencode(query, quote_via=quote, safe="")
    return f"{scheme}://x-callback-url/{quote(action, safe='')}?{encoded}"


@dataclass
class PendingExchange:
    """Bookkeeping for one in-flight command."""

    action: str
    timeout: float
    endpoint: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    state: ExchangeState = ExchangeState.IDLE
    settled_at: Optional[float] = None
    cancel_requested: bool = False
    _waiter: Optional[asyncio.Future] = field(default=None, repr=False)

    def begin(self, endpoint: str, waiter: asyncio.Future) -> None:
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError(f"Exchange for '{self.action}' already started")
        self.endpoint = endpoint
        self._waiter = waiter
        self.state = ExchangeState.AWAITING_CALLBACK

    def settle(self, state: ExchangeState) -> None:
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Exchange on {self.endpoint} already {self.state.value}")
        self.state = state
        self.settled_at = time.time()

    @property
    def elapsed(self) -> float:
        end = self.settled_at if self.settled_at is not None else time.time()
        return end - self.created_at


class CommandCorrelator:
    """
    Dispatches commands to Bear and awaits their callbacks.

    ``invoker`` performs the OS-level hand-off; tests substitute one that
    calls the endpoint back directly. ``listener_factory`` builds a fresh
    CallbackListener per command.
    """

    def __init__(
        self,
        invoker: Optional[ExternalInvoker] = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        scheme: str = "bear",
        listener_factory: Callable[[], CallbackListener] = CallbackListener,
        history_size: int = 32,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.invoker = invoker if invoker is not None else OpenURLInvoker()
        self.timeout_seconds = timeout_seconds
        self.scheme = scheme
        self._listener_factory = listener_factory
        self._pending: Dict[str, PendingExchange] = {}
        self._recent: Deque[PendingExchange] = deque(maxlen=history_size)

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        invoker: Optional[ExternalInvoker] = None,
    ) -> "CommandCorrelator":
        factory = functools.partial(
            CallbackListener,
            config.callback.host,
            payload_warn_bytes=config.callback.payload_warn_bytes,
            shutdown_grace_seconds=config.callback.shutdown_grace_seconds,
        )
        return cls(
            invoker if invoker is not None else OpenURLInvoker(config.bear.open_command),
            timeout_seconds=config.callback.timeout_seconds,
            scheme=config.bear.scheme,
            listener_factory=factory,
        )

    @property
    def pending(self) -> List[PendingExchange]:
        """In-flight exchanges, oldest first."""
        return list(self._pending.values())

    @property
    def recent(self) -> List[PendingExchange]:
        """Recently settled exchanges, oldest first."""
        return list(self._recent)

    def cancel_all(self) -> int:
        """Reject every in-flight exchange with CommandCancelledError. Returns the count."""
        cancelled = 0
        for exchange in list(self._pending.values()):
            waiter = exchange._waiter
            if exchange.state is ExchangeState.AWAITING_CALLBACK and waiter is not None and not waiter.done():
                exchange.cancel_requested = True
                waiter.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d in-flight Bear command(s)", cancelled)
        return cancelled

    async def execute(
        self,
        request: CommandRequest,
        spec: ActionSpec,
        *,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        """Encode ``request`` and run it. Encoding errors are raised before any socket is opened."""
        params = encode(request, spec)
        return await self.dispatch(request.action, params, timeout=timeout)

    async def dispatch(
        self,
        action: str,
        params: Mapping[str, str],
        *,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        """Run one exchange for already-encoded parameters and return the success payload."""
        deadline = timeout if timeout is not None else self.timeout_seconds
        exchange = PendingExchange(action=action, timeout=deadline)
        listener = self._listener_factory()

        try:
            endpoint, first_callback = await listener.listen()
        except TransportFailure:
            exchange.settle(ExchangeState.REJECTED_TRANSPORT)
            self._recent.append(exchange)
            raise
        except asyncio.CancelledError:
            await listener.close()
            raise

        loop = asyncio.get_running_loop()
        started = loop.time()
        exchange.begin(endpoint, first_callback)
        self._pending[endpoint] = exchange

        invocation: Optional[asyncio.Future] = None
        try:
            url = build_invocation_url(action, params, endpoint, self.scheme)
            logger.debug("Bear %s awaiting callback on %s (timeout %.1fs)", action, endpoint, deadline)
            # One deadline covers the hand-off and the wait; the first of the two to finish decides.
            invocation = asyncio.ensure_future(self.invoker.invoke(url))
            done, _ = await asyncio.wait(
                {invocation, first_callback}, timeout=deadline, return_when=asyncio.FIRST_COMPLETED
            )
            if first_callback not in done and invocation in done:
                failure = invocation.exception()
                if failure is not None:
                    if isinstance(failure, TransportFailure) and failure.action is None:
                        failure.action = action
                    exchange.settle(ExchangeState.REJECTED_TRANSPORT)
                    logger.warning("Bear %s dispatch failed: %s", action, failure)
                    raise failure
                remaining = max(deadline - (loop.time() - started), 0.0)
                done, _ = await asyncio.wait({first_callback}, timeout=remaining)

            if first_callback not in done:
                exchange.settle(ExchangeState.REJECTED_TIMEOUT)
                logger.warning("Bear %s timed out after %.1fs on %s", action, deadline, endpoint)
                raise CommandTimeoutError(action, deadline)

            try:
                message = first_callback.result()
            except asyncio.CancelledError:
                exchange.settle(ExchangeState.REJECTED_TIMEOUT)
                if not exchange.cancel_requested:
                    raise
                raise CommandCancelledError(action, deadline) from None
            except TransportFailure:
                exchange.settle(ExchangeState.REJECTED_TRANSPORT)
                raise

            if message.is_error:
                exchange.settle(ExchangeState.REJECTED_ERROR)
                logger.info("Bear %s answered on x-error: %s", action, message.payload)
                raise CallbackError(action, message.payload)

            exchange.settle(ExchangeState.RESOLVED)
            logger.info("Bear %s resolved in %.2fs", action, exchange.elapsed)
            return message.payload
        finally:
            if invocation is not None:
                await self._finish_invocation(action, invocation)
            await listener.close()
            self._pending.pop(endpoint, None)
            self._recent.append(exchange)

    @staticmethod
    async def _finish_invocation(action: str, invocation: asyncio.Future) -> None:
        if not invocation.done():
            invocation.cancel()
            await asyncio.wait({invocation})
        if not invocation.cancelled() and invocation.exception() is not None:
            logger.debug("Bear %s opener reported: %s", action, invocation.exception())
