"""Tests for bearbridge.callback.correlator: request/callback correlation."""

import asyncio

import pytest

from bearbridge.bear.actions import ACTIONS
from bearbridge.callback.correlator import CommandCorrelator, PendingExchange, build_invocation_url
from bearbridge.callback.listener import CallbackListener
from bearbridge.core.errors import (
    CallbackError,
    CommandCancelledError,
    CommandTimeoutError,
    ListenerError,
    TransportFailure,
    ValidationError,
)
from bearbridge.core.types import CommandRequest, ExchangeState
from conftest import CallbackInvoker, assert_port_closed, url_query


class FailingInvoker:
    def __init__(self):
        self.urls = []

    async def invoke(self, url):
        self.urls.append(url)
        raise TransportFailure("open refused the URL", returncode=1)


def _correlator(invoker, listener_factory, timeout=2.0):
    return CommandCorrelator(invoker, timeout_seconds=timeout, listener_factory=listener_factory)


class TestInvocationUrl:
    def test_layout_and_percent_encoding(self):
        url = build_invocation_url("create", {"title": "Meeting Notes"}, "http://127.0.0.1:5000")
        assert url == (
            "bear://x-callback-url/create?title=Meeting%20Notes"
            "&x-success=http%3A%2F%2F127.0.0.1%3A5000%2Fsuccess"
            "&x-error=http%3A%2F%2F127.0.0.1%3A5000%2Ferror"
        )

    def test_caller_cannot_redirect_callbacks(self):
        url = build_invocation_url("create", {"x-success": "http://evil"}, "http://127.0.0.1:1")
        assert url_query(url)["x-success"] == "http://127.0.0.1:1/success"


class TestPendingExchange:
    def test_exactly_one_terminal_state(self):
        exchange = PendingExchange(action="create", timeout=1.0)
        exchange.settle(ExchangeState.RESOLVED)
        with pytest.raises(RuntimeError):
            exchange.settle(ExchangeState.REJECTED_TIMEOUT)
        assert exchange.state is ExchangeState.RESOLVED

    def test_non_terminal_state_rejected(self):
        exchange = PendingExchange(action="create", timeout=1.0)
        with pytest.raises(ValueError):
            exchange.settle(ExchangeState.AWAITING_CALLBACK)


class TestCommandCorrelator:
    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            CommandCorrelator(CallbackInvoker(), timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_resolves_with_success_payload(self, listener_factory):
        invoker = CallbackInvoker({"identifier": "7E4B", "title": "Meeting Notes"})
        correlator = _correlator(invoker, listener_factory)

        payload = await correlator.dispatch("create", {"title": "Meeting Notes"})

        assert payload == {"identifier": "7E4B", "title": "Meeting Notes"}
        assert correlator.pending == []
        assert correlator.recent[-1].state is ExchangeState.RESOLVED
        assert listener_factory.listeners[0].closed
        assert url_query(invoker.urls[0])["title"] == "Meeting Notes"

    @pytest.mark.asyncio
    async def test_concurrent_commands_get_their_own_payload(self, listener_factory):
        # Later requests are answered first.
        count = 5

        def echo_title(url):
            return {"title": url_query(url)["title"]}

        class StaggeredInvoker(CallbackInvoker):
            async def invoke(self, url):
                self.delay = 0.05 * (count - int(url_query(url)["title"].split("-")[1]))
                await super().invoke(url)

        invoker = StaggeredInvoker(echo_title)
        correlator = _correlator(invoker, listener_factory)

        results = await asyncio.gather(
            *(correlator.dispatch("create", {"title": f"note-{i}"}) for i in range(count))
        )

        assert [result["title"] for result in results] == [f"note-{i}" for i in range(count)]
        ports = {listener.port for listener in listener_factory.listeners}
        assert len(ports) == count

    @pytest.mark.asyncio
    async def test_timeout_releases_port(self, listener_factory):
        invoker = CallbackInvoker(respond=False)
        correlator = _correlator(invoker, listener_factory, timeout=0.2)

        with pytest.raises(CommandTimeoutError) as excinfo:
            await correlator.dispatch("create", {"title": "x"})

        assert excinfo.value.action == "create"
        assert excinfo.value.retryable
        assert correlator.recent[-1].state is ExchangeState.REJECTED_TIMEOUT
        assert_port_closed(listener_factory.listeners[0].endpoint)

    @pytest.mark.asyncio
    async def test_callback_just_inside_deadline_resolves(self, listener_factory):
        invoker = CallbackInvoker({"identifier": "A"}, delay=0.25)
        correlator = _correlator(invoker, listener_factory, timeout=0.6)

        assert await correlator.dispatch("create", {"title": "x"}) == {"identifier": "A"}

    @pytest.mark.asyncio
    async def test_late_callback_is_refused(self, listener_factory):
        invoker = CallbackInvoker({"identifier": "A"}, delay=0.5)
        correlator = _correlator(invoker, listener_factory, timeout=0.2)

        with pytest.raises(CommandTimeoutError):
            await correlator.dispatch("create", {"title": "x"})
        await asyncio.gather(*invoker.tasks)

        assert len(invoker.delivery_errors) == 1

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_default(self, listener_factory):
        correlator = _correlator(CallbackInvoker(respond=False), listener_factory, timeout=30.0)

        with pytest.raises(CommandTimeoutError) as excinfo:
            await correlator.dispatch("create", {"title": "x"}, timeout=0.1)
        assert excinfo.value.timeout == 0.1

    @pytest.mark.asyncio
    async def test_error_channel_raises_callback_error(self, listener_factory):
        invoker = CallbackInvoker({"errorCode": "4", "errorMessage": "Note not found"}, channel="error")
        correlator = _correlator(invoker, listener_factory)

        with pytest.raises(CallbackError) as excinfo:
            await correlator.dispatch("open-note", {"id": "missing"})

        assert excinfo.value.error_code == 4
        assert excinfo.value.error_message == "Note not found"
        assert correlator.recent[-1].state is ExchangeState.REJECTED_ERROR

    @pytest.mark.asyncio
    async def test_transport_failure_closes_listener(self, listener_factory):
        correlator = _correlator(FailingInvoker(), listener_factory)

        with pytest.raises(TransportFailure) as excinfo:
            await correlator.dispatch("create", {"title": "x"})

        assert excinfo.value.action == "create"
        assert excinfo.value.returncode == 1
        assert correlator.recent[-1].state is ExchangeState.REJECTED_TRANSPORT
        assert correlator.pending == []
        assert_port_closed(listener_factory.listeners[0].endpoint)

    @pytest.mark.asyncio
    async def test_deadline_covers_a_hung_opener(self, listener_factory):
        class HungInvoker:
            async def invoke(self, url):
                await asyncio.sleep(1.5)

        correlator = _correlator(HungInvoker(), listener_factory, timeout=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(CommandTimeoutError):
            await correlator.dispatch("create", {"title": "x"})

        assert loop.time() - started < 1.0
        assert correlator.recent[-1].state is ExchangeState.REJECTED_TIMEOUT
        assert_port_closed(listener_factory.listeners[0].endpoint)

    @pytest.mark.asyncio
    async def test_callback_wins_over_opener_failure(self, listener_factory):
        class AnswerThenFail(CallbackInvoker):
            async def invoke(self, url):
                await super().invoke(url)
                raise TransportFailure("open exited non-zero", returncode=1)

        correlator = _correlator(AnswerThenFail({"identifier": "abc"}), listener_factory)

        assert await correlator.dispatch("create", {"title": "x"}) == {"identifier": "abc"}
        assert correlator.recent[-1].state is ExchangeState.RESOLVED

    @pytest.mark.asyncio
    async def test_callback_settles_while_opener_still_running(self, listener_factory):
        class AnswerThenHang(CallbackInvoker):
            async def invoke(self, url):
                await super().invoke(url)
                await asyncio.sleep(5.0)

        correlator = _correlator(AnswerThenHang({"identifier": "abc"}), listener_factory, timeout=3.0)
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await correlator.dispatch("create", {"title": "x"}) == {"identifier": "abc"}
        assert loop.time() - started < 2.0
        assert listener_factory.listeners[0].closed

    @pytest.mark.asyncio
    async def test_port_allocation_failure_never_dispatches(self):
        invoker = CallbackInvoker()
        correlator = CommandCorrelator(
            invoker,
            timeout_seconds=1.0,
            listener_factory=lambda: CallbackListener("203.0.113.7"),
        )

        with pytest.raises(ListenerError):
            await correlator.dispatch("create", {"title": "x"})

        assert invoker.urls == []
        assert correlator.pending == []
        assert correlator.recent[-1].state is ExchangeState.REJECTED_TRANSPORT

    @pytest.mark.asyncio
    async def test_cancel_all_rejects_in_flight(self, listener_factory):
        correlator = _correlator(CallbackInvoker(respond=False), listener_factory, timeout=10.0)
        task = asyncio.create_task(correlator.dispatch("create", {"title": "x"}))

        for _ in range(200):
            if correlator.pending and correlator.pending[0].state is ExchangeState.AWAITING_CALLBACK:
                break
            await asyncio.sleep(0.01)

        assert correlator.cancel_all() == 1
        with pytest.raises(CommandCancelledError):
            await task
        assert correlator.pending == []
        assert listener_factory.listeners[0].closed

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, listener_factory):
        correlator = _correlator(CallbackInvoker(respond=False), listener_factory, timeout=10.0)
        task = asyncio.create_task(correlator.dispatch("create", {"title": "x"}))
        await asyncio.sleep(0.2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert listener_factory.listeners[0].closed

    @pytest.mark.asyncio
    async def test_execute_validates_before_opening_a_port(self, listener_factory):
        invoker = CallbackInvoker()
        correlator = _correlator(invoker, listener_factory)
        request = CommandRequest(action="grab-url", parameters={"url": ""})

        with pytest.raises(ValidationError):
            await correlator.execute(request, ACTIONS["grab-url"])

        assert listener_factory.listeners == []
        assert invoker.urls == []
