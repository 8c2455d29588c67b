"""Supabase realtime client (Phoenix channels over a websocket).

One websocket is shared by every subscription of a client. Each subscription
joins its own channel, so leaving one channel never disturbs the others. The
socket is closed once the last channel has left.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any
from urllib.parse import urlencode

import aiohttp

from ...exceptions import NetworkError, PySmartParkingError, StoreError, ValidationError
from ...models import ChangeEvent
from ..base import ChangeCallback, Subscription
from .const import (
    EVENT_ACCESS_TOKEN,
    EVENT_CLOSE,
    EVENT_ERROR,
    EVENT_HEARTBEAT,
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_POSTGRES_CHANGES,
    EVENT_REPLY,
    HEARTBEAT_INTERVAL,
    PHOENIX_TOPIC,
    REALTIME_SCHEMA,
    REALTIME_URI,
    REALTIME_VSN,
    RECONNECT_DELAYS,
)
from .http import normalize_base_url

_LOGGER = logging.getLogger(__name__)
_JOIN_TIMEOUT = 10.0


def build_socket_url(base_url: str, api_key: str) -> str:
    normalized = normalize_base_url(base_url)
    if normalized.startswith("https://"):
        normalized = f"wss://{normalized[len('https://'):]}"
    elif normalized.startswith("http://"):
        normalized = f"ws://{normalized[len('http://'):]}"
    query = urlencode({"apikey": api_key, "vsn": REALTIME_VSN})
    return f"{normalized}{REALTIME_URI}?{query}"


def build_join_payload(table: str, access_token: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": [
                {"event": "*", "schema": REALTIME_SCHEMA, "table": table},
            ],
            "private": False,
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return payload


class RealtimeChannel(Subscription):
    def __init__(
        self,
        client: RealtimeClient,
        topic: str,
        table: str,
        callback: ChangeCallback,
    ) -> None:
        super().__init__(table)
        self._client = client
        self.topic = topic
        self.callback = callback

    async def _close(self) -> None:
        await self._client._leave(self)



class RealtimeClient:
    """Delivers ``postgres_changes`` notifications to subscription callbacks.

    When the server drops the socket while channels are joined, the client
    reconnects with backoff, rejoins every channel and then sends each
    callback one synthetic change so missed notifications are re-fetched.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: str,
        *,
        access_token: Callable[[], Awaitable[str | None]] | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        join_timeout: float = _JOIN_TIMEOUT,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
    ) -> None:
        if not reconnect_delays:
            raise ValidationError("reconnect_delays must not be empty.")
        self._session = session
        self._url = build_socket_url(base_url, api_key)
        self._access_token = access_token
        self._heartbeat_interval = heartbeat_interval
        self._join_timeout = join_timeout
        self._reconnect_delays = tuple(reconnect_delays)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._reconnecting: asyncio.Task[None] | None = None
        self._channels: dict[str, RealtimeChannel] = {}
        self._replies: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._deliveries: set[asyncio.Task[None]] = set()
        self._token: str | None = None
        self._ref = 0
        self._channel_counter = 0
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def reconnecting(self) -> bool:
        return self._reconnecting is not None and not self._reconnecting.done()

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def subscribe(self, table: str, callback: ChangeCallback) -> RealtimeChannel:
        await self._ensure_connected()
        self._channel_counter += 1
        topic = f"realtime:{table}-changes-{self._channel_counter}"
        channel = RealtimeChannel(self, topic, table, callback)
        self._channels[topic] = channel
        try:
            token = await self._fetch_token()
            reply = await self._call(topic, EVENT_JOIN, build_join_payload(table, token))
        except BaseException:
            self._channels.pop(topic, None)
            raise
        if reply.get("status") != "ok":
            self._channels.pop(topic, None)
            raise StoreError(_reject_reason(reply) or f"Subscription to {table} was rejected.")
        _LOGGER.debug("Realtime channel %s joined", topic)
        return channel

    async def aclose(self) -> None:
        reconnecting, self._reconnecting = self._reconnecting, None
        if reconnecting is not None and reconnecting is not asyncio.current_task():
            reconnecting.cancel()
            await asyncio.gather(reconnecting, return_exceptions=True)
        await self._drop_socket()
        self._fail_replies(NetworkError("Realtime connection closed."))
        for channel in self._channels.values():
            channel._active = False
        self._channels.clear()

    async def _leave(self, channel: RealtimeChannel) -> None:
        if self._channels.pop(channel.topic, None) is None:
            return
        if self.connected:
            await self._send(channel.topic, EVENT_LEAVE, {})
        _LOGGER.debug("Realtime channel %s left", channel.topic)
        if not self._channels:
            await self.aclose()

    async def _ensure_connected(self) -> None:
        async with self._lock:
            if not self.connected:
                await self._connect()

    async def _connect(self) -> None:
        try:
            ws = await self._session.ws_connect(self._url, autoping=True)
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise NetworkError("Realtime connection failed.", detail=str(exc)) from exc
        self._ws = ws
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(self._read_loop(ws))
        self._heartbeat = loop.create_task(self._heartbeat_loop(ws))
        _LOGGER.debug("Realtime socket connected")

    async def _drop_socket(self) -> None:
        tasks = [
            task
            for task in (self._heartbeat, self._reader)
            if task is not None and not task.done() and task is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat = None
        self._reader = None
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    async def _reconnect(self) -> None:
        attempt = 0
        while self._channels:
            delay = self._reconnect_delays[min(attempt, len(self._reconnect_delays) - 1)]
            attempt += 1
            await asyncio.sleep(delay)
            try:
                async with self._lock:
                    await self._drop_socket()
                    await self._connect()
                await self._rejoin()
            except PySmartParkingError as exc:
                _LOGGER.warning("Realtime reconnect attempt %d failed: %s", attempt, exc)
                continue
            _LOGGER.info("Realtime socket reconnected after %d attempt(s)", attempt)
            return

    async def _rejoin(self) -> None:
        token = await self._fetch_token()
        for channel in list(self._channels.values()):
            if channel.topic not in self._channels:
                continue
            payload = build_join_payload(channel.table, token)
            reply = await self._call(channel.topic, EVENT_JOIN, payload)
            if reply.get("status") != "ok":
                _LOGGER.error(
                    "Realtime channel %s could not be rejoined: %s",
                    channel.topic,
                    _reject_reason(reply),
                )
                self._channels.pop(channel.topic, None)
                channel._active = False
                continue
            # Changes made while disconnected were never delivered.
            self._dispatch(channel, ChangeEvent(table=channel.table))
        if not self._channels:
            await self._drop_socket()

    async def _fetch_token(self) -> str | None:
        if self._access_token is None:
            return None
        self._token = await self._access_token()
        return self._token

    async def _push_access_token(self) -> None:
        if self._access_token is None:
            return
        try:
            token = await self._access_token()
        except PySmartParkingError as exc:
            _LOGGER.warning("Access token unavailable for realtime: %s", exc)
            return
        if not token or token == self._token:
            return
        self._token = token
        for channel in list(self._channels.values()):
            await self._send(channel.topic, EVENT_ACCESS_TOKEN, {"access_token": token})
        _LOGGER.debug("Sent refreshed access token to %d channels", len(self._channels))

    async def _call(self, topic: str, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        ref = self._next_ref()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._replies[ref] = future
        try:
            await self._send(topic, event, payload, ref=ref)
            return await asyncio.wait_for(future, self._join_timeout)
        except TimeoutError as exc:
            raise NetworkError(f"No reply to {event} on {topic}.") from exc
        finally:
            self._replies.pop(ref, None)

    async def _send(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        *,
        ref: str | None = None,
    ) -> None:
        if self._ws is None or self._ws.closed:
            raise NetworkError("Realtime connection is not open.")
        message = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref or self._next_ref(),
        }
        try:
            await self._ws.send_str(json.dumps(message))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise NetworkError("Realtime send failed.", detail=str(exc)) from exc

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = json.loads(msg.data)
                except ValueError:
                    _LOGGER.warning("Realtime frame was not valid JSON")
                    continue
                self._handle_message(message)
            elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                break
        if self._ws is not ws:
            return
        _LOGGER.warning("Realtime socket closed with %d open channels", len(self._channels))
        self._fail_replies(NetworkError("Realtime connection closed."))
        if self._channels and not self.reconnecting:
            self._reconnecting = asyncio.get_running_loop().create_task(self._reconnect())

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while self._ws is ws:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._push_access_token()
                await self._send(PHOENIX_TOPIC, EVENT_HEARTBEAT, {})
            except NetworkError:
                _LOGGER.warning("Realtime heartbeat failed")
                return

    def _handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        event = message.get("event")
        topic = message.get("topic")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        if event == EVENT_REPLY:
            future = self._replies.get(str(message.get("ref")))
            if future is not None and not future.done():
                future.set_result(payload)
            return
        if event == EVENT_POSTGRES_CHANGES:
            channel = self._channels.get(topic)
            if channel is None or not channel.active:
                return
            data = payload.get("data")
            if not isinstance(data, dict):
                data = {}
            change = ChangeEvent(
                table=data.get("table") or channel.table,
                event_type=data.get("type") or "*",
                schema=data.get("schema") or REALTIME_SCHEMA,
                commit_timestamp=data.get("commit_timestamp"),
            )
            self._dispatch(channel, change)
            return
        if event in (EVENT_ERROR, EVENT_CLOSE) and topic in self._channels:
            _LOGGER.warning("Realtime channel %s reported %s", topic, event)

    def _dispatch(self, channel: RealtimeChannel, change: ChangeEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(channel, change))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, channel: RealtimeChannel, change: ChangeEvent) -> None:
        try:
            await channel.callback(change)
        except Exception:
            _LOGGER.exception("Change callback for %s failed", channel.topic)

    def _fail_replies(self, error: Exception) -> None:
        for future in self._replies.values():
            if not future.done():
                future.set_exception(error)
        self._replies.clear()

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)


def _reject_reason(reply: dict[str, Any]) -> str | None:
    response = reply.get("response")
    return response.get("reason") if isinstance(response, dict) else None
