"""Send text back into the conversation a message came from."""

from __future__ import annotations

from typing import Dict, Protocol
from urllib.parse import quote

import aiohttp
from aiohttp import ClientTimeout

from chatsafe.datatypes.moderation_datatypes import Ack, DeliveryError, ReplyResult
from chatsafe.util.logger import get_logger

logger = get_logger("reply_sink")


class ReplySink(Protocol):
    async def reply(self, conversation_ref: str, text: str) -> ReplyResult: ...


class RelayReplySink:
    """
    Reply sink that posts to the relay's HTTP API.

    ``POST {api_url}/conversations/{conversation_ref}/messages`` with
    ``{"text": ...}``. Any 2xx response is an :class:`Ack`; everything else,
    including transport errors, becomes a :class:`DeliveryError`.

    Args:
        api_url: Base URL of the relay API.
        api_token: Optional bearer token.
        timeout: Total request timeout in seconds.
        session: Optional aiohttp session (the sink owns one otherwise).
    """

    def __init__(
        self,
        api_url: str,
        *,
        api_token: str | None = None,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_token = api_token
        self._timeout = ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}"} if self._api_token else {}

    def _url_for(self, conversation_ref: str) -> str:
        return f"{self._api_url}/conversations/{quote(conversation_ref, safe='')}/messages"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def reply(self, conversation_ref: str, text: str) -> ReplyResult:
        session = await self._get_session()
        try:
            async with session.post(
                self._url_for(conversation_ref),
                json={"text": text},
                headers=self._headers(),
                timeout=self._timeout,
            ) as response:
                if 200 <= response.status < 300:
                    message_ref = None
                    if response.content_type == "application/json":
                        body = await response.json()
                        if isinstance(body, dict) and body.get("id") is not None:
                            message_ref = str(body["id"])
                    return Ack(message_ref=message_ref)
                detail = (await response.text())[:200]
                return DeliveryError(message=f"relay returned HTTP {response.status}: {detail}")
        except Exception as exc:
            return DeliveryError(message=str(exc) or type(exc).__name__)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
