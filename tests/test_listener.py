"""Tests for bearbridge.callback.listener: ephemeral callback endpoints."""

import asyncio

import httpx
import pytest

from bearbridge.callback.listener import CallbackListener, classify_channel, decode_callback_query
from bearbridge.core.errors import ListenerError
from conftest import assert_port_closed


class TestDecoding:
    def test_values_are_json_decoded_where_possible(self):
        payload = decode_callback_query("tags=%5B%22work%22%2C%22home%22%5D&title=Meeting%20Notes&count=2")
        assert payload == {"tags": ["work", "home"], "title": "Meeting Notes", "count": 2}

    def test_blank_values_kept(self):
        assert decode_callback_query("note=") == {"note": ""}

    def test_channel_from_path(self):
        assert classify_channel("/error", {}) == "error"
        assert classify_channel("/success", {"identifier": "A"}) == "success"

    def test_channel_from_error_keys(self):
        assert classify_channel("/success", {"errorCode": 1}) == "error"


class TestCallbackListener:
    @pytest.mark.asyncio
    async def test_endpoint_is_loopback_with_os_port(self):
        listener = CallbackListener()
        try:
            endpoint, _ = await listener.listen()
            assert endpoint.startswith("http://127.0.0.1:")
            assert listener.port and listener.port > 0
            assert endpoint.endswith(str(listener.port))
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_first_callback_resolves_future(self):
        listener = CallbackListener()
        endpoint, first_callback = await listener.listen()
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"{endpoint}/success",
                    params={"identifier": "7E4B", "title": "Meeting Notes"},
                )
            assert response.status_code == 200
            message = await asyncio.wait_for(first_callback, timeout=2.0)
            assert message.channel == "success"
            assert message.payload == {"identifier": "7E4B", "title": "Meeting Notes"}
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_error_path_marks_error_channel(self):
        listener = CallbackListener()
        endpoint, first_callback = await listener.listen()
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                await client.get(f"{endpoint}/error", params={"errorCode": "3", "errorMessage": "Note not found"})
            message = await asyncio.wait_for(first_callback, timeout=2.0)
            assert message.is_error
            assert message.payload["errorCode"] == 3
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_only_first_request_counts(self):
        listener = CallbackListener()
        _, first_callback = await listener.listen()
        try:
            first = listener._accept("/success", "n=1")
            second = listener._accept("/success", "n=2")
            assert first.status_code == 200
            assert second.status_code == 410
            assert first_callback.result().payload == {"n": 1}
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_port_released_after_close(self):
        listener = CallbackListener(shutdown_grace_seconds=0.2)
        endpoint, first_callback = await listener.listen()
        await listener.close()
        assert listener.closed
        assert first_callback.cancelled()
        assert_port_closed(endpoint)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        listener = CallbackListener(shutdown_grace_seconds=0.2)
        await listener.listen()
        await listener.close()
        await listener.close()
        assert listener.closed

    @pytest.mark.asyncio
    async def test_single_use(self):
        listener = CallbackListener(shutdown_grace_seconds=0.2)
        await listener.listen()
        try:
            with pytest.raises(RuntimeError):
                await listener.listen()
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_large_payload_only_warns(self, caplog):
        listener = CallbackListener(payload_warn_bytes=16)
        endpoint, first_callback = await listener.listen()
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                await client.get(f"{endpoint}/success", params={"note": "x" * 200})
            message = await asyncio.wait_for(first_callback, timeout=2.0)
            assert message.payload["note"] == "x" * 200
            assert any("Large callback payload" in record.message for record in caplog.records)
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_unbindable_host_raises_listener_error(self):
        listener = CallbackListener("203.0.113.7")
        with pytest.raises(ListenerError, match="Could not allocate a callback port"):
            await listener.listen()
        assert listener.port is None
        await listener.close()
        assert listener.closed

    @pytest.mark.asyncio
    async def test_server_stopping_early_fails_the_future(self):
        listener = CallbackListener(shutdown_grace_seconds=0.2)
        _, first_callback = await listener.listen()
        try:
            listener._server.should_exit = True
            with pytest.raises(ListenerError, match="stopped before a callback arrived"):
                await asyncio.wait_for(first_callback, timeout=2.0)
        finally:
            await listener.close()
