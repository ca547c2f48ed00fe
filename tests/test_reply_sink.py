"""Tests for the relay HTTP reply sink."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import aiohttp
import pytest

from chatsafe.datatypes.moderation_datatypes import Ack, DeliveryError
from chatsafe.transport.reply_sink import RelayReplySink


class FakeResponse:
    def __init__(self, status, body=None, content_type="application/json", text=""):
        self.status = status
        self.content_type = content_type
        self._body = body
        self._text = text

    async def json(self):
        return self._body

    async def text(self):
        return self._text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.closed = False
        self.posts = []
        self.close = AsyncMock()

    @asynccontextmanager
    async def _post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        yield self.response

    def post(self, url, **kwargs):
        return self._post(url, **kwargs)


class TestRelayReplySink:
    @pytest.mark.asyncio
    async def test_success_returns_ack_with_message_id(self):
        session = FakeSession(FakeResponse(201, body={"id": "msg-9"}))
        sink = RelayReplySink("https://relay.test/", api_token="secret", session=session)

        result = await sink.reply("conv-1", "🚨 warning")

        assert result == Ack(message_ref="msg-9")
        url, kwargs = session.posts[0]
        assert url == "https://relay.test/conversations/conv-1/messages"
        assert kwargs["json"] == {"text": "🚨 warning"}
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}

    @pytest.mark.asyncio
    async def test_non_json_success_is_still_ack(self):
        session = FakeSession(FakeResponse(204, content_type="text/plain"))
        sink = RelayReplySink("https://relay.test", session=session)

        assert await sink.reply("conv-1", "warning") == Ack()

    @pytest.mark.asyncio
    async def test_conversation_ref_is_path_escaped(self):
        session = FakeSession(FakeResponse(200, body={}))
        sink = RelayReplySink("https://relay.test", session=session)

        await sink.reply("group/42 a", "warning")

        assert session.posts[0][0] == "https://relay.test/conversations/group%2F42%20a/messages"

    @pytest.mark.asyncio
    async def test_http_error_is_delivery_error(self):
        session = FakeSession(FakeResponse(403, content_type="text/plain", text="not a member"))
        sink = RelayReplySink("https://relay.test", session=session)

        result = await sink.reply("conv-1", "warning")

        assert result == DeliveryError(message="relay returned HTTP 403: not a member")

    @pytest.mark.asyncio
    async def test_transport_error_is_delivery_error(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("connection refused"))
        sink = RelayReplySink("https://relay.test", session=session)

        result = await sink.reply("conv-1", "warning")

        assert isinstance(result, DeliveryError)
        assert "connection refused" in result.message

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_session_open(self):
        session = FakeSession(FakeResponse(200))
        sink = RelayReplySink("https://relay.test", session=session)

        await sink.close()

        session.close.assert_not_awaited()
