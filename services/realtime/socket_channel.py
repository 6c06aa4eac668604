"""Logical always-on websocket channel with reconnect, backoff and heartbeat.

The channel owns exactly one transport connection at a time. Its lifecycle
is the tagged union from `models.session_models` driven by `transition`,
and every timer it arms goes through an injected scheduler.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

import websockets

from models.frame_models import PING_FRAME, PONG_FRAME, FrameKind, ParsedFrame, RejectedFrame, parse_frame
from models.session_models import ChannelState, ClosedExhausted, ClosedPending, Connecting, Idle, Open
from services.realtime.scheduler import TimerHandle

LOGGER = logging.getLogger(__name__)

RECONNECT_BASE_DELAY = 3.0
RECONNECT_MAX_DELAY = 15.0
MAX_RECONNECT_ATTEMPTS = 10
HEARTBEAT_INTERVAL = 30.0

CONNECT_ERRORS = (OSError, asyncio.TimeoutError, websockets.WebSocketException)

Callback = Callable[..., Union[None, Awaitable[None]]]


class ChannelEvent(str, Enum):
	OPEN_REQUESTED = "open_requested"
	TRANSPORT_OPENED = "transport_opened"
	TRANSPORT_CLOSED = "transport_closed"
	RETRY_DUE = "retry_due"
	CLOSE_REQUESTED = "close_requested"


def reconnect_delay(
	attempt: int,
	base: float = RECONNECT_BASE_DELAY,
	cap: float = RECONNECT_MAX_DELAY,
) -> float:
	"""Delay in seconds before reconnect `attempt` (1-based)."""
	return min(base * attempt, cap)


def transition(
	state: ChannelState,
	event: ChannelEvent,
	*,
	should_reconnect: bool = True,
	max_attempts: int = MAX_RECONNECT_ATTEMPTS,
	base_delay: float = RECONNECT_BASE_DELAY,
	max_delay: float = RECONNECT_MAX_DELAY,
) -> ChannelState:
	"""Return the state that follows `state` on `event`.

	Events that do not apply to the current state leave it unchanged.
	"""
	if event is ChannelEvent.CLOSE_REQUESTED:
		return Idle()
	if event is ChannelEvent.OPEN_REQUESTED:
		if isinstance(state, (Idle, ClosedExhausted)):
			return Connecting(attempts=0)
		return state
	if event is ChannelEvent.TRANSPORT_OPENED:
		return Open() if isinstance(state, Connecting) else state
	if event is ChannelEvent.RETRY_DUE:
		if isinstance(state, ClosedPending):
			return Connecting(attempts=state.attempts)
		return state
	if event is ChannelEvent.TRANSPORT_CLOSED:
		if isinstance(state, Open):
			attempts = 0
		elif isinstance(state, Connecting):
			attempts = state.attempts
		else:
			return state
		if should_reconnect and attempts < max_attempts:
			next_attempt = attempts + 1
			return ClosedPending(attempts=next_attempt, delay=reconnect_delay(next_attempt, base_delay, max_delay))
		return ClosedExhausted(attempts=attempts)
	raise ValueError(f"Unknown channel event {event!r}")


def state_name(state: ChannelState) -> str:
	return {
		Idle: "idle",
		Connecting: "connecting",
		Open: "open",
		ClosedPending: "closed_pending",
		ClosedExhausted: "closed_exhausted",
	}[type(state)]


class WebsocketsTransport:
	"""Open client connections with the `websockets` library.

	Library keepalive pings are disabled; the channel sends its own
	`{"type": "ping"}` frames the backend expects.
	"""

	def __init__(self, open_timeout: float = 10.0, headers: Optional[Dict[str, str]] = None) -> None:
		self.open_timeout = open_timeout
		self.headers = headers

	async def connect(self, url: str):
		return await websockets.connect(
			url,
			ping_interval=None,
			open_timeout=self.open_timeout,
			additional_headers=self.headers,
		)


class ReconnectingSocketChannel:
	"""Keep one logical duplex channel to `url` alive while its owner is open."""

	def __init__(
		self,
		url: str,
		transport,
		scheduler,
		*,
		name: str = "chat",
		on_open: Optional[Callback] = None,
		on_frame: Optional[Callback] = None,
		on_binary: Optional[Callback] = None,
		on_state_change: Optional[Callback] = None,
		heartbeat_interval: float = HEARTBEAT_INTERVAL,
		max_attempts: int = MAX_RECONNECT_ATTEMPTS,
		base_delay: float = RECONNECT_BASE_DELAY,
		max_delay: float = RECONNECT_MAX_DELAY,
	) -> None:
		self.url = url
		self.transport = transport
		self.scheduler = scheduler
		self.name = name
		self.on_open = on_open
		self.on_frame = on_frame
		self.on_binary = on_binary
		self.on_state_change = on_state_change
		self.heartbeat_interval = heartbeat_interval
		self.max_attempts = max_attempts
		self.base_delay = base_delay
		self.max_delay = max_delay

		self.state: ChannelState = Idle()
		self.should_reconnect = False
		self.open_count = 0
		self._generation = 0
		self._connection = None
		self._reader: Optional[asyncio.Task] = None
		self._retry_timer: Optional[TimerHandle] = None
		self._heartbeat_timer: Optional[TimerHandle] = None
		self._tasks: Set[asyncio.Task] = set()

	@property
	def is_open(self) -> bool:
		return isinstance(self.state, Open)

	@property
	def status(self) -> str:
		return state_name(self.state)

	@property
	def reconnect_attempts(self) -> int:
		return getattr(self.state, "attempts", 0)

	@property
	def has_pending_timers(self) -> bool:
		return self._retry_timer is not None or self._heartbeat_timer is not None

	async def open(self) -> bool:
		"""Start connecting. Returns True if the first attempt opened the channel."""
		if not isinstance(self.state, (Idle, ClosedExhausted)):
			return self.is_open
		self.should_reconnect = True
		self._apply(ChannelEvent.OPEN_REQUESTED)
		await self._connect()
		return self.is_open

	async def reconnect(self) -> bool:
		"""Drop the current connection and start over with a fresh attempt budget."""
		self._generation += 1
		self._apply(ChannelEvent.CLOSE_REQUESTED)
		await self._discard_connection()
		self.should_reconnect = True
		self._apply(ChannelEvent.OPEN_REQUESTED)
		await self._connect()
		return self.is_open

	async def close(self) -> None:
		"""Caller-initiated close; never schedules a reconnect. Safe to repeat."""
		self.should_reconnect = False
		self._generation += 1
		self._apply(ChannelEvent.CLOSE_REQUESTED)
		await self._discard_connection()
		current = asyncio.current_task()
		tasks = [task for task in self._tasks if task is not current]
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)

	async def send_json(self, payload: Dict[str, Any]) -> bool:
		return await self._send(json.dumps(payload))

	async def send_bytes(self, data: bytes) -> bool:
		return await self._send(data)

	async def _send(self, data: Union[str, bytes]) -> bool:
		if not self.is_open or self._connection is None:
			LOGGER.error("[%s] Cannot send message - not connected", self.name)
			return False
		try:
			await self._connection.send(data)
		except (websockets.ConnectionClosed, OSError) as exc:
			LOGGER.error("[%s] Send failed: %s", self.name, exc)
			return False
		return True

	# State machine

	def _apply(self, event: ChannelEvent) -> None:
		previous = self.state
		current = transition(
			previous,
			event,
			should_reconnect=self.should_reconnect,
			max_attempts=self.max_attempts,
			base_delay=self.base_delay,
			max_delay=self.max_delay,
		)
		if current == previous:
			return
		self.state = current
		self._enter(current)
		self._run_callback(self.on_state_change, current)

	def _enter(self, state: ChannelState) -> None:
		if not isinstance(state, Open):
			self._stop_heartbeat()
		if not isinstance(state, ClosedPending) and self._retry_timer is not None:
			self._retry_timer.cancel()
			self._retry_timer = None

		if isinstance(state, Open):
			self.open_count += 1
			LOGGER.info("[%s] Connected to %s", self.name, self.url)
			self._start_heartbeat()
			self._run_callback(self.on_open)
		elif isinstance(state, ClosedPending):
			LOGGER.info(
				"[%s] Reconnecting in %.1fs (attempt %d/%d)",
				self.name, state.delay, state.attempts, self.max_attempts,
			)
			self._retry_timer = self.scheduler.call_later(state.delay, self._on_retry_due)
		elif isinstance(state, ClosedExhausted):
			LOGGER.error("[%s] Max reconnection attempts reached", self.name)

	def _on_retry_due(self) -> None:
		self._retry_timer = None
		self._apply(ChannelEvent.RETRY_DUE)
		if isinstance(self.state, Connecting):
			self._spawn(self._connect())

	# Transport

	async def _connect(self) -> None:
		self._generation += 1
		generation = self._generation
		await self._discard_connection()
		LOGGER.info("[%s] Connecting to %s", self.name, self.url)
		try:
			connection = await self.transport.connect(self.url)
		except CONNECT_ERRORS as exc:
			LOGGER.warning("[%s] Connection error: %s", self.name, exc)
			if generation == self._generation:
				self._apply(ChannelEvent.TRANSPORT_CLOSED)
			return

		if generation != self._generation or not isinstance(self.state, Connecting):
			await connection.close()
			return
		self._connection = connection
		self._reader = asyncio.create_task(self._read(connection, generation))
		self._apply(ChannelEvent.TRANSPORT_OPENED)

	async def _read(self, connection, generation: int) -> None:
		try:
			async for raw in connection:
				if generation != self._generation:
					return
				await self._dispatch(raw)
		except websockets.ConnectionClosed as exc:
			LOGGER.info("[%s] Connection closed: %s", self.name, exc)
		except OSError as exc:
			LOGGER.warning("[%s] Connection lost: %s", self.name, exc)

		if generation == self._generation:
			self._connection = None
			self._reader = None
			self._apply(ChannelEvent.TRANSPORT_CLOSED)

	async def _dispatch(self, raw: Union[str, bytes]) -> None:
		if isinstance(raw, (bytes, bytearray)):
			if self.on_binary is not None:
				await self._invoke(self.on_binary, bytes(raw))
			return

		result = parse_frame(raw)
		if isinstance(result, RejectedFrame):
			LOGGER.warning("[%s] Dropping frame (%s): %.200s", self.name, result.reason, result.raw)
			return
		if result.kind is FrameKind.PING:
			await self.send_json(PONG_FRAME)
			return
		if result.kind is FrameKind.PONG:
			return
		if self.on_frame is not None:
			await self._invoke(self.on_frame, result)

	async def _invoke(self, handler: Callback, arg: Union[ParsedFrame, bytes]) -> None:
		try:
			outcome = handler(arg)
			if inspect.isawaitable(outcome):
				await outcome
		except Exception:
			LOGGER.exception("[%s] Inbound handler failed", self.name)

	async def _discard_connection(self) -> None:
		reader, self._reader = self._reader, None
		connection, self._connection = self._connection, None
		if reader is not None and reader is not asyncio.current_task():
			reader.cancel()
			await asyncio.gather(reader, return_exceptions=True)
		if connection is not None:
			try:
				await connection.close()
			except (websockets.WebSocketException, OSError) as exc:
				LOGGER.debug("[%s] Ignoring close error: %s", self.name, exc)

	# Heartbeat

	def _start_heartbeat(self) -> None:
		if self._heartbeat_timer is not None:
			return
		self._heartbeat_timer = self.scheduler.call_later(self.heartbeat_interval, self._heartbeat_tick)

	def _heartbeat_tick(self) -> None:
		self._heartbeat_timer = None
		if not self.is_open:
			return
		self._spawn(self.send_json(PING_FRAME))
		self._start_heartbeat()

	def _stop_heartbeat(self) -> None:
		if self._heartbeat_timer is not None:
			self._heartbeat_timer.cancel()
			self._heartbeat_timer = None

	# Helpers

	def _spawn(self, coro: Awaitable[Any]) -> None:
		task = asyncio.ensure_future(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	def _run_callback(self, callback: Optional[Callback], *args: Any) -> None:
		if callback is None:
			return
		outcome = callback(*args)
		if inspect.isawaitable(outcome):
			self._spawn(outcome)
