"""
Inbound message streams.

A stream source yields :class:`InboundMessage` objects in ``arrival_seq``
order. It ends in one of two distinct ways: :class:`StreamEnded` when the
remote side says there is nothing more, or :class:`StreamFatalError` when the
connection is lost beyond recovery.

Two implementations live here:

- :class:`RelayStreamSource` subscribes to the messaging relay over a
  websocket and reconnects with bounded exponential backoff.
- :class:`QueueStreamSource` is fed in-process through an asyncio.Queue
  (tests, local replay tools).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Protocol

import aiohttp

from chatsafe.datatypes.moderation_datatypes import InboundMessage
from chatsafe.util.logger import get_logger

logger = get_logger("stream_source")


class StreamEnded(Exception):
    """The stream source signalled end-of-stream."""


class StreamFatalError(Exception):
    """The stream was lost and could not be recovered."""


class StreamSource(Protocol):
    """An ordered, at-least-once source of inbound messages."""

    def messages(self, resume_after: int | None = None) -> AsyncIterator[InboundMessage]:
        """Yield messages with ``arrival_seq`` greater than ``resume_after``.

        Raises StreamEnded or StreamFatalError when the stream stops.
        """
        ...


def decode_frame(raw: str | bytes) -> Dict[str, Any] | None:
    """Parse one relay frame, returning None for anything that is not a JSON object."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return frame if isinstance(frame, dict) else None


def message_from_frame(frame: Dict[str, Any]) -> InboundMessage | None:
    """Build an InboundMessage from a ``message`` frame, or None if it is malformed.

    Non-text content (``null`` or a non-string payload) is treated as empty.
    """
    if isinstance(frame.get("seq"), bool):
        return None
    try:
        seq = int(frame["seq"])
        sender = str(frame["sender"])
        conversation = str(frame["conversation"])
    except (KeyError, TypeError, ValueError):
        return None
    if not sender or not conversation:
        return None

    content = frame.get("content")
    return InboundMessage(
        sender_id=sender,
        content=content if isinstance(content, str) else "",
        conversation_ref=conversation,
        arrival_seq=seq,
    )


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: ``base * 2**(attempt-1)`` capped at ``max_delay``."""
    if attempt <= 0:
        return 0.0
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


class RelayStreamSource:
    """
    Websocket subscription to the messaging relay.

    After connecting, the source sends a ``subscribe`` frame carrying the
    agent address and the last processed sequence, then yields every
    ``message`` frame. Connection drops are retried up to
    ``reconnect_attempts`` consecutive times; a successfully received frame
    resets the counter. Resubscription always asks for messages after the
    last one yielded, so a reconnect does not replay what was already handed
    to the consumer.

    Args:
        endpoint: ``ws://`` or ``wss://`` URL of the relay stream.
        agent_address: Identity the relay should stream messages for.
        api_token: Optional bearer token.
        reconnect_attempts: Consecutive failed connections tolerated.
        base_delay: First backoff delay in seconds.
        max_delay: Backoff ceiling in seconds.
        session: Optional aiohttp session (the source owns one otherwise).
    """

    def __init__(
        self,
        endpoint: str,
        agent_address: str,
        *,
        api_token: str | None = None,
        reconnect_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._agent_address = agent_address
        self._api_token = api_token
        self._reconnect_attempts = reconnect_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._session = session
        self._owns_session = session is None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}"} if self._api_token else {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def messages(self, resume_after: int | None = None) -> AsyncIterator[InboundMessage]:
        last_seq = resume_after
        failures = 0

        while True:
            try:
                async for message in self._stream_once(last_seq):
                    failures = 0
                    last_seq = message.arrival_seq
                    yield message
                # Socket closed without an explicit end frame; treat as a drop
                raise ConnectionError("relay closed the stream")
            except StreamEnded:
                raise
            except StreamFatalError:
                raise
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError, OSError) as exc:
                self._connected = False
                failures += 1
                if failures > self._reconnect_attempts:
                    logger.critical("[STREAM] Giving up after %d failed attempts: %s", failures, exc)
                    raise StreamFatalError(f"relay stream lost: {exc}") from exc
                delay = backoff_delay(failures, self._base_delay, self._max_delay)
                logger.warning(
                    "[STREAM] Connection lost (%s); reconnect %d/%d in %.1fs",
                    exc,
                    failures,
                    self._reconnect_attempts,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _stream_once(self, after: int | None) -> AsyncIterator[InboundMessage]:
        """Open one websocket connection and yield messages until it closes."""
        session = await self._get_session()
        async with session.ws_connect(self._endpoint, headers=self._headers(), heartbeat=30.0) as ws:
            self._connected = True
            await ws.send_json({"op": "subscribe", "address": self._agent_address, "after": after})
            logger.info("[STREAM] Subscribed to %s as %s (after=%s)", self._endpoint, self._agent_address, after)

            async for ws_message in ws:
                if ws_message.type == aiohttp.WSMsgType.ERROR:
                    raise ConnectionError(f"websocket error: {ws.exception()}")
                if ws_message.type != aiohttp.WSMsgType.TEXT:
                    continue

                frame = decode_frame(ws_message.data)
                if frame is None:
                    logger.warning("[STREAM] Skipping malformed frame: %.200r", ws_message.data)
                    continue

                op = frame.get("op")
                if op == "message":
                    message = message_from_frame(frame)
                    if message is None:
                        logger.warning("[STREAM] Skipping malformed message frame: %.200r", frame)
                        continue
                    yield message
                elif op == "end":
                    self._connected = False
                    logger.info("[STREAM] Relay signalled end-of-stream")
                    raise StreamEnded("relay signalled end-of-stream")
                elif op == "error":
                    detail = str(frame.get("detail") or "unspecified relay error")
                    if frame.get("fatal"):
                        self._connected = False
                        raise StreamFatalError(detail)
                    raise ConnectionError(detail)
                else:
                    logger.debug("[STREAM] Ignoring frame with op=%r", op)

    async def close(self) -> None:
        self._connected = False
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


_END = object()


class QueueStreamSource:
    """
    In-process stream fed through :meth:`publish`.

    Sequence numbers are assigned on publish. :meth:`end` makes the iterator
    raise StreamEnded once the queued messages are drained; :meth:`fail`
    makes it raise StreamFatalError.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._next_seq = 1

    def publish(self, sender_id: str, content: str, conversation_ref: str = "conversation") -> InboundMessage:
        message = InboundMessage(
            sender_id=sender_id,
            content=content,
            conversation_ref=conversation_ref,
            arrival_seq=self._next_seq,
        )
        self._next_seq += 1
        self._queue.put_nowait(message)
        return message

    def redeliver(self, message: InboundMessage) -> None:
        """Queue an already published message again (at-least-once delivery)."""
        self._queue.put_nowait(message)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    def fail(self, detail: str = "stream failed") -> None:
        self._queue.put_nowait(StreamFatalError(detail))

    async def messages(self, resume_after: int | None = None) -> AsyncIterator[InboundMessage]:
        while True:
            item = await self._queue.get()
            if item is _END:
                raise StreamEnded("queue stream ended")
            if isinstance(item, StreamFatalError):
                raise item
            if resume_after is not None and item.arrival_seq <= resume_after:
                continue
            yield item
