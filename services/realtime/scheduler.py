"""Cancellable timers for reconnects, heartbeats, VAD ticks and debounces.

Components never call `asyncio` timers directly; they receive a scheduler.
`LoopScheduler` runs on the event loop, `ManualScheduler` is a virtual
clock that tests advance explicitly.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Any, Callable, List, Optional, Tuple


class TimerHandle:
	"""Handle returned by `call_later`; cancelling twice is harmless."""

	def __init__(self, cancel: Optional[Callable[[], None]] = None) -> None:
		self._cancel = cancel
		self._cancelled = False

	@property
	def cancelled(self) -> bool:
		return self._cancelled

	def cancel(self) -> None:
		if self._cancelled:
			return
		self._cancelled = True
		if self._cancel is not None:
			self._cancel()


class LoopScheduler:
	"""Schedule callbacks on the running asyncio loop."""

	def now(self) -> float:
		return time.monotonic()

	def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
		loop = asyncio.get_running_loop()
		handle = loop.call_later(max(delay, 0.0), callback, *args)
		return TimerHandle(handle.cancel)


class ManualScheduler:
	"""Virtual clock: timers fire only inside `advance()`, in due order."""

	def __init__(self, start: float = 0.0) -> None:
		self._now = start
		self._counter = itertools.count()
		self._queue: List[Tuple[float, int, TimerHandle, Callable[..., Any], Tuple[Any, ...]]] = []

	def now(self) -> float:
		return self._now

	def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
		due = round(self._now + max(delay, 0.0), 9)
		handle = TimerHandle()
		heapq.heappush(self._queue, (due, next(self._counter), handle, callback, args))
		return handle

	@property
	def pending(self) -> int:
		return sum(1 for _, _, handle, _, _ in self._queue if not handle.cancelled)

	def advance(self, seconds: float) -> None:
		"""Move the clock forward, firing every timer that falls due.

		Timers scheduled by callbacks fire in the same call if they are due
		before the target time.
		"""
		target = round(self._now + seconds, 9)
		while self._queue and self._queue[0][0] <= target:
			due, _, handle, callback, args = heapq.heappop(self._queue)
			if handle.cancelled:
				continue
			self._now = due
			handle._cancelled = True
			callback(*args)
		self._now = target
