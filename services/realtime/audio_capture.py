"""Microphone capture, spectrum level analysis and utterance recording."""

from __future__ import annotations

import io
import logging
import threading
from typing import Callable, List, Optional

import numpy as np
import soundfile as sf

LOGGER = logging.getLogger(__name__)

SAMPLE_RATE = 16000
FFT_SIZE = 2048
MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


class MicrophoneUnavailableError(RuntimeError):
	"""Raised when the microphone cannot be opened (no device, no permission)."""


class MicrophoneSource:
	"""One shared input stream per widget.

	`open()` acquires the device the first time and is a no-op afterwards, so
	toggling the mic never re-acquires it. Only `close()` releases it.
	"""

	def __init__(self, samplerate: int = SAMPLE_RATE, blocksize: int = 1600, frame_size: int = FFT_SIZE) -> None:
		self.samplerate = samplerate
		self.blocksize = blocksize
		self.frame_size = frame_size
		self.acquire_count = 0
		self.release_count = 0
		self._stream = None
		self._lock = threading.Lock()
		self._recent = np.zeros(frame_size, dtype=np.float32)
		self._listeners: List[Callable[[np.ndarray], None]] = []

	@property
	def is_open(self) -> bool:
		return self._stream is not None

	def open(self) -> None:
		if self._stream is not None:
			return
		try:
			# PortAudio is loaded on import; a missing library is a missing device.
			import sounddevice as sd
		except OSError as exc:
			raise MicrophoneUnavailableError(f"Audio backend unavailable: {exc}") from exc

		try:
			stream = sd.InputStream(
				samplerate=self.samplerate,
				channels=1,
				dtype="float32",
				blocksize=self.blocksize,
				callback=self._callback,
			)
			stream.start()
		except sd.PortAudioError as exc:
			raise MicrophoneUnavailableError(f"Microphone access failed: {exc}") from exc
		self._stream = stream
		self.acquire_count += 1
		LOGGER.info("Microphone opened at %d Hz", self.samplerate)

	def close(self) -> None:
		stream, self._stream = self._stream, None
		if stream is None:
			return
		stream.stop()
		stream.close()
		self.release_count += 1
		with self._lock:
			self._recent = np.zeros(self.frame_size, dtype=np.float32)
		LOGGER.info("Microphone released")

	def add_listener(self, listener: Callable[[np.ndarray], None]) -> None:
		if listener not in self._listeners:
			self._listeners.append(listener)

	def remove_listener(self, listener: Callable[[np.ndarray], None]) -> None:
		if listener in self._listeners:
			self._listeners.remove(listener)

	def latest_frame(self, size: Optional[int] = None) -> np.ndarray:
		"""Return the most recent `size` samples (zero padded at the start)."""
		size = size or self.frame_size
		with self._lock:
			recent = self._recent.copy()
		if len(recent) >= size:
			return recent[-size:]
		return np.concatenate([np.zeros(size - len(recent), dtype=np.float32), recent])

	def feed(self, samples: np.ndarray) -> None:
		"""Push captured mono samples to the rolling frame and listeners."""
		with self._lock:
			self._recent = np.concatenate([self._recent, samples])[-self.frame_size:]
		for listener in list(self._listeners):
			listener(samples)

	def _callback(self, indata, frames, _time, status) -> None:
		if status:
			LOGGER.warning("Microphone status: %s", status)
		self.feed(indata[:, 0].copy())


class FrequencyAnalyser:
	"""Average byte-scaled spectrum magnitude of one frame.

	Mirrors a browser analyser node: Blackman window, magnitude normalised
	by the FFT size, converted to dB and mapped from
	[`min_decibels`, `max_decibels`] onto 0..255.
	"""

	def __init__(self, fft_size: int = FFT_SIZE, min_decibels: float = MIN_DECIBELS, max_decibels: float = MAX_DECIBELS) -> None:
		self.fft_size = fft_size
		self.min_decibels = min_decibels
		self.max_decibels = max_decibels
		self._window = np.blackman(fft_size).astype(np.float32)

	def spectrum(self, samples: np.ndarray) -> np.ndarray:
		frame = np.asarray(samples, dtype=np.float32)[-self.fft_size:]
		if len(frame) < self.fft_size:
			frame = np.concatenate([np.zeros(self.fft_size - len(frame), dtype=np.float32), frame])
		magnitudes = np.abs(np.fft.rfft(frame * self._window))[: self.fft_size // 2] / self.fft_size
		with np.errstate(divide="ignore"):
			decibels = 20.0 * np.log10(magnitudes)
		scaled = 255.0 * (decibels - self.min_decibels) / (self.max_decibels - self.min_decibels)
		return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0.0, 255.0).astype(np.uint8)

	def level(self, samples: np.ndarray) -> float:
		return float(np.mean(self.spectrum(samples)))


class SegmentRecorder:
	"""Accumulate captured samples into one utterance and encode it as WAV.

	Samples are only kept while recording; a paused recorder ignores input
	without discarding what it already holds.
	"""

	def __init__(self, samplerate: int = SAMPLE_RATE) -> None:
		self.samplerate = samplerate
		self.state = "inactive"
		self._chunks: List[np.ndarray] = []
		self._lock = threading.Lock()

	@property
	def is_recording(self) -> bool:
		return self.state == "recording"

	def start(self) -> None:
		with self._lock:
			self._chunks = []
			self.state = "recording"

	def pause(self) -> None:
		if self.state == "recording":
			self.state = "paused"

	def resume(self) -> None:
		if self.state == "paused":
			self.state = "recording"

	def append(self, samples: np.ndarray) -> None:
		if self.state != "recording":
			return
		with self._lock:
			self._chunks.append(np.asarray(samples, dtype=np.float32))

	def stop(self) -> Optional[bytes]:
		"""End the segment. Returns WAV bytes, or None if nothing was captured."""
		with self._lock:
			chunks, self._chunks = self._chunks, []
			was_active = self.state != "inactive"
			self.state = "inactive"
		if not was_active or not chunks:
			return None
		buffer = io.BytesIO()
		sf.write(buffer, np.concatenate(chunks), self.samplerate, format="WAV", subtype="PCM_16")
		return buffer.getvalue()
