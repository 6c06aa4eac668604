"""Coalesce and play audio the voice channel sends back."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Callable, List, Optional, Set

import soundfile as sf

from services.realtime.scheduler import TimerHandle

LOGGER = logging.getLogger(__name__)

COALESCE_DELAY = 0.3


class AudioPlayer:
	"""Decode a clip with soundfile and play it on the default output device."""

	async def play(self, clip: bytes) -> None:
		try:
			data, samplerate = sf.read(io.BytesIO(clip), dtype="float32")
		except (sf.LibsndfileError, RuntimeError) as exc:
			LOGGER.warning("Could not decode %d byte audio clip: %s", len(clip), exc)
			return
		await asyncio.to_thread(self._play_blocking, data, samplerate)

	@staticmethod
	def _play_blocking(data, samplerate: int) -> None:
		try:
			import sounddevice as sd
		except OSError as exc:
			LOGGER.warning("Audio output unavailable: %s", exc)
			return
		try:
			sd.play(data, samplerate)
			sd.wait()
		except sd.PortAudioError as exc:
			LOGGER.warning("Audio playback failed: %s", exc)


class IncomingAudioBuffer:
	"""Buffer binary chunks; after `delay` seconds without a new chunk, play them as one clip.

	Clips play one after another. `on_playback_start` / `on_playback_end`
	bracket each clip so the voice pipeline can pause around it.
	"""

	def __init__(
		self,
		scheduler,
		player,
		*,
		delay: float = COALESCE_DELAY,
		on_playback_start: Optional[Callable[[], None]] = None,
		on_playback_end: Optional[Callable[[], None]] = None,
	) -> None:
		self.scheduler = scheduler
		self.player = player
		self.delay = delay
		self.on_playback_start = on_playback_start
		self.on_playback_end = on_playback_end
		self.clips_played = 0
		self._chunks: List[bytes] = []
		self._timer: Optional[TimerHandle] = None
		self._lock = asyncio.Lock()
		self._tasks: Set[asyncio.Task] = set()

	@property
	def pending_bytes(self) -> int:
		return sum(len(chunk) for chunk in self._chunks)

	@property
	def has_pending_timers(self) -> bool:
		return self._timer is not None

	def push(self, chunk: bytes) -> None:
		if not chunk:
			return
		self._chunks.append(bytes(chunk))
		if self._timer is not None:
			self._timer.cancel()
		self._timer = self.scheduler.call_later(self.delay, self._flush)

	def _flush(self) -> None:
		self._timer = None
		if not self._chunks:
			return
		clip = b"".join(self._chunks)
		self._chunks = []
		task = asyncio.ensure_future(self._play(clip))
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	async def _play(self, clip: bytes) -> None:
		async with self._lock:
			if self.on_playback_start is not None:
				self.on_playback_start()
			try:
				await self.player.play(clip)
				self.clips_played += 1
			finally:
				if self.on_playback_end is not None:
					self.on_playback_end()

	async def close(self) -> None:
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None
		self._chunks = []
		tasks = list(self._tasks)
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
