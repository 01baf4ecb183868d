"""Tests for bearbridge.callback.invoker and bearbridge.mcp.runtime."""

import asyncio
import shutil
import sys

import pytest

from bearbridge.callback.invoker import ExternalInvoker, OpenURLInvoker
from bearbridge.core.errors import TransportFailure
from bearbridge.mcp.runtime import AsyncRuntime
from conftest import CallbackInvoker

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX true/false")


class TestOpenURLInvoker:
    def test_satisfies_protocol(self):
        assert isinstance(OpenURLInvoker("true"), ExternalInvoker)
        assert isinstance(CallbackInvoker(), ExternalInvoker)

    @posix_only
    @pytest.mark.asyncio
    async def test_zero_exit_is_dispatched(self):
        await OpenURLInvoker(shutil.which("true")).invoke("bear://x-callback-url/create?title=x")

    @posix_only
    @pytest.mark.asyncio
    async def test_non_zero_exit_is_transport_failure(self):
        with pytest.raises(TransportFailure) as excinfo:
            await OpenURLInvoker(shutil.which("false")).invoke("bear://x-callback-url/create")
        assert excinfo.value.returncode == 1
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        invoker = OpenURLInvoker(str(tmp_path / "no-such-opener"))
        with pytest.raises(TransportFailure, match="Failed to launch"):
            await invoker.invoke("bear://x-callback-url/create")

    @pytest.mark.asyncio
    async def test_no_open_command(self):
        invoker = OpenURLInvoker("true")
        invoker.open_command = None
        with pytest.raises(TransportFailure, match="No URL open command"):
            await invoker.invoke("bear://x-callback-url/create")


class TestAsyncRuntime:
    def test_runs_coroutines_from_other_threads(self):
        async def add(a, b):
            await asyncio.sleep(0)
            return a + b

        with AsyncRuntime() as runtime:
            assert runtime.running
            assert runtime.run(add(2, 3)) == 5
        assert not runtime.running

    def test_exceptions_propagate(self):
        async def boom():
            raise TransportFailure("nope")

        runtime = AsyncRuntime()
        try:
            with pytest.raises(TransportFailure):
                runtime.run(boom())
        finally:
            runtime.stop()

    def test_stop_without_start(self):
        AsyncRuntime().stop()
