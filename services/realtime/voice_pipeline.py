"""Energy-based voice activity detection over the shared microphone stream.

The pipeline samples the analyser every tick, segments continuous capture
into utterances and hands each finished utterance to `send_segment` (the
voice channel). It pauses itself while remote audio plays so the agent's
own voice is never recorded back.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Set

from models.session_models import VoiceActivityState
from services.realtime.audio_capture import FrequencyAnalyser, MicrophoneSource, MicrophoneUnavailableError, SegmentRecorder
from services.realtime.scheduler import TimerHandle

LOGGER = logging.getLogger(__name__)

TICK_INTERVAL = 0.1
SILENCE_DURATION = 1.5
SPEECH_THRESHOLD = 30


class VoiceActivityPipeline:
	def __init__(
		self,
		source: MicrophoneSource,
		scheduler,
		send_segment: Callable[[bytes], Any],
		analyser: Optional[FrequencyAnalyser] = None,
		recorder: Optional[SegmentRecorder] = None,
		*,
		tick_interval: float = TICK_INTERVAL,
		silence_duration: float = SILENCE_DURATION,
		threshold: float = SPEECH_THRESHOLD,
		on_change: Optional[Callable[[], None]] = None,
	) -> None:
		self.source = source
		self.scheduler = scheduler
		self.send_segment = send_segment
		self.analyser = analyser or FrequencyAnalyser()
		self.recorder = recorder or SegmentRecorder(getattr(source, "samplerate", 16000))
		self.tick_interval = tick_interval
		self.silence_duration = silence_duration
		self.threshold = threshold
		self.on_change = on_change

		self.state = VoiceActivityState()
		self.released = False
		self._tick_timer: Optional[TimerHandle] = None
		self._tasks: Set[asyncio.Task] = set()

	@property
	def has_pending_timers(self) -> bool:
		return self._tick_timer is not None

	def start(self) -> None:
		"""Enable the mic and begin monitoring.

		Raises:
			MicrophoneUnavailableError: If the device could not be acquired.
		"""
		if self.state.monitoring:
			return
		try:
			self.source.open()
		except MicrophoneUnavailableError as exc:
			LOGGER.warning("Microphone unavailable: %s", exc)
			self.state.mic_enabled = False
			self._changed()
			raise
		self.released = False
		self.source.add_listener(self.recorder.append)
		self.state.mic_enabled = True
		self.state.monitoring = True
		self.state.is_speaking = False
		self.state.silence_start = None
		self.recorder.start()
		if not self.state.playback_paused:
			self._schedule_tick()
		LOGGER.info("Voice monitoring started")
		self._changed()

	def stop(self) -> None:
		"""Mic toggled off: halt monitoring and end the recording.

		An utterance in progress is flushed; no new segment is armed. The
		microphone stays acquired for the next toggle.
		"""
		was_speaking = self.state.is_speaking
		self.state.mic_enabled = False
		self.state.monitoring = False
		self.state.is_speaking = False
		self.state.silence_start = None
		self._cancel_tick()
		clip = self.recorder.stop()
		if was_speaking and clip:
			self._flush(clip)
		self._changed()

	def pause_for_playback(self) -> None:
		self.state.playback_paused = True
		self._cancel_tick()
		self.recorder.pause()

	def resume_after_playback(self) -> None:
		self.state.playback_paused = False
		if not (self.state.mic_enabled and self.state.monitoring):
			return
		self.recorder.resume()
		self._schedule_tick()

	def release(self) -> None:
		"""Full cleanup: stop and release the OS microphone. Safe to repeat."""
		if self.released:
			return
		self.released = True
		if self.state.monitoring:
			self.stop()
		self._cancel_tick()
		self.source.remove_listener(self.recorder.append)
		self.source.close()
		self.state = VoiceActivityState()

	def cancel_pending(self) -> None:
		for task in list(self._tasks):
			task.cancel()
		self._tasks.clear()

	# Tick loop

	def _schedule_tick(self) -> None:
		if self._tick_timer is not None:
			return
		self._tick_timer = self.scheduler.call_later(self.tick_interval, self._tick)

	def _cancel_tick(self) -> None:
		if self._tick_timer is not None:
			self._tick_timer.cancel()
			self._tick_timer = None

	def _tick(self) -> None:
		self._tick_timer = None
		if not self.state.monitoring or self.state.playback_paused:
			return
		level = self.analyser.level(self.source.latest_frame(self.analyser.fft_size))
		now = self.scheduler.now()

		if level > self.threshold:
			if not self.state.is_speaking:
				LOGGER.debug("Speech started (level %.1f)", level)
				self.state.is_speaking = True
				self._changed()
			self.state.silence_start = None
		elif self.state.is_speaking:
			if self.state.silence_start is None:
				self.state.silence_start = now
			elif now - self.state.silence_start >= self.silence_duration:
				self._end_utterance()

		self._schedule_tick()

	def _end_utterance(self) -> None:
		self.state.is_speaking = False
		self.state.silence_start = None
		clip = self.recorder.stop()
		self.recorder.start()
		if clip:
			self._flush(clip)
		self._changed()

	def _flush(self, clip: bytes) -> None:
		self.state.segments_sent += 1
		LOGGER.info("Sending speech segment %d (%d bytes)", self.state.segments_sent, len(clip))
		outcome = self.send_segment(clip)
		if inspect.isawaitable(outcome):
			task = asyncio.ensure_future(outcome)
			self._tasks.add(task)
			task.add_done_callback(self._tasks.discard)

	def _changed(self) -> None:
		if self.on_change is not None:
			self.on_change()
