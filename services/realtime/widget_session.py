"""One embeddable widget instance: sockets, voice, drafts and UI state.

`WidgetSession` owns every resource of a widget and is the only place that
opens or tears them down. UI-facing flags live in an explicit
`WidgetState`; listeners are notified after each change.
"""

from __future__ import annotations

import asyncio
import logging
import time
import webbrowser
from dataclasses import asdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urlencode

from models.frame_models import outbound_message
from models.message_models import MessageType, Sender
from models.session_models import WidgetState
from models.widget_settings import WidgetSettings
from services.backend_client import BackendError
from services.realtime.audio_capture import MicrophoneSource, MicrophoneUnavailableError
from services.realtime.audio_playback import AudioPlayer, IncomingAudioBuffer
from services.realtime.call_events import CallEventHandler
from services.realtime.draft_store import DraftPersistence
from services.realtime.frame_router import ChatFrameHandler
from services.realtime.reconciliation import MessageHistory
from services.realtime.scheduler import TimerHandle
from services.realtime.socket_channel import ReconnectingSocketChannel, state_name
from services.realtime.voice_pipeline import VoiceActivityPipeline
from utils.media_validation import read_attachment
from utils.runtime_config import RuntimeConfig

LOGGER = logging.getLogger(__name__)

GREETING_ID = "welcome"
DEFAULT_VOICE_ID = "default"
DEFAULT_STT_PROVIDER = "groq"


class WidgetSession:
	def __init__(
		self,
		company_id: str,
		agent_id: str,
		*,
		config: RuntimeConfig,
		backend,
		session_store,
		kv,
		transport,
		scheduler,
		microphone: Optional[MicrophoneSource] = None,
		player=None,
		opener: Callable[[str], bool] = webbrowser.open_new_tab,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.company_id = company_id
		self.agent_id = agent_id
		self.config = config
		self.backend = backend
		self.session_store = session_store
		self.transport = transport
		self.scheduler = scheduler
		self.microphone = microphone or MicrophoneSource()
		self.player = player or AudioPlayer()
		self.opener = opener
		self.clock = clock

		self.state = WidgetState()
		self.settings = WidgetSettings()
		self.history = MessageHistory(clock)
		self.drafts = DraftPersistence(kv, scheduler, "message")
		self.chat: Optional[ReconnectingSocketChannel] = None
		self.voice: Optional[ReconnectingSocketChannel] = None
		self.pipeline: Optional[VoiceActivityPipeline] = None
		self.audio_buffer: Optional[IncomingAudioBuffer] = None
		self.call_events: Optional[CallEventHandler] = None

		self._settings_loaded = False
		self._proactive_session = False
		self._proactive_timer: Optional[TimerHandle] = None
		self._listeners: List[Callable[["WidgetSession"], None]] = []
		self._tasks: Set[asyncio.Task] = set()

	# Settings and URLs

	async def load_settings(self) -> WidgetSettings:
		if self._settings_loaded:
			return self.settings
		try:
			self.settings = await self.backend.fetch_widget_settings(self.agent_id)
		except BackendError as exc:
			LOGGER.warning("Widget settings unavailable for agent %s, using defaults: %s", self.agent_id, exc)
			self.settings = WidgetSettings()
		self._settings_loaded = True
		return self.settings

	@property
	def frontend_url(self) -> str:
		return self.settings.frontend_url or self.config.frontend_url or self.config.backend_url

	@property
	def livekit_url(self) -> str:
		return self.settings.livekit_url or self.config.livekit_url

	def chat_url(self, session_id: str) -> str:
		return f"{self.config.ws_base}/ws/public/{self.company_id}/{self.agent_id}/{session_id}?user_type=user"

	def voice_url(self, session_id: str) -> str:
		query = urlencode({
			"user_type": "user",
			"voice_id": self.settings.voice_id or DEFAULT_VOICE_ID,
			"stt_provider": self.settings.stt_provider or DEFAULT_STT_PROVIDER,
		})
		return f"{self.config.ws_base}/ws/public/voice/{self.company_id}/{self.agent_id}/{session_id}?{query}"

	# Open

	async def schedule_proactive_open(self) -> bool:
		"""Arm the automatic open configured in the widget settings."""
		await self.load_settings()
		if not self.settings.proactive_message_enabled or self.state.is_open:
			return False
		self._cancel_proactive()
		self._proactive_timer = self.scheduler.call_later(
			max(float(self.settings.proactive_message_delay), 0.0), self._on_proactive_due
		)
		LOGGER.info("Proactive open for agent %s in %ss", self.agent_id, self.settings.proactive_message_delay)
		return True

	def _on_proactive_due(self) -> None:
		self._proactive_timer = None
		if not self.state.is_open:
			self._spawn(self.open(proactive=True))

	async def open(self, proactive: bool = False) -> Dict[str, Any]:
		if self.state.is_open:
			return self.snapshot()
		self._cancel_proactive()
		self._proactive_session = proactive
		await self.load_settings()

		session_id = await self.session_store.resolve_session(self.agent_id, self.company_id)
		self.state.session_id = session_id
		self.state.is_open = True
		self.state.composer_text = await self.drafts.on_session_change(session_id)
		if self.config.share_location and self.state.visitor_location is None:
			self.state.visitor_location = await self.backend.resolve_location()

		self.call_events = CallEventHandler(
			self.history,
			self.backend,
			self.agent_id,
			session_id,
			frontend_url=self.frontend_url,
			livekit_url=self.livekit_url,
			opener=self.opener,
			clock=self.clock,
		)
		mode = self.settings.communication_mode
		if mode == "voice":
			await self._fetch_voice_token(session_id)
			self._changed()
			return self.snapshot()

		frame_handler = ChatFrameHandler(
			self.state, self.history, self.settings, self.call_events, on_change=self._changed, clock=self.clock,
		)
		self.chat = ReconnectingSocketChannel(
			self.chat_url(session_id),
			self.transport,
			self.scheduler,
			name="chat",
			on_open=self._on_chat_open,
			on_frame=frame_handler.handle,
			on_state_change=self._on_connection_change,
		)
		await self.chat.open()
		if mode == "chat_and_voice":
			await self._open_voice(session_id)
		self._changed()
		return self.snapshot()

	def _on_chat_open(self) -> None:
		if self.history.is_empty:
			if self._proactive_session:
				greeting = self.settings.proactive_message
			else:
				greeting = self.settings.welcome_message
			if greeting:
				self.history.add_local(Sender.AGENT.value, greeting, message_id=GREETING_ID)
		self._proactive_session = False
		self._changed()

	def _on_connection_change(self, channel_state) -> None:
		self.state.connection = state_name(channel_state)
		self._changed()

	async def _fetch_voice_token(self, session_id: str) -> None:
		try:
			self.state.livekit_token = await self.backend.issue_video_token(
				room_name=session_id, participant_name=f"User-{session_id}", agent_id=self.agent_id,
			)
		except BackendError as exc:
			LOGGER.error("Could not fetch voice token for session %s: %s", session_id, exc)
			self.state.livekit_token = None

	async def _open_voice(self, session_id: str) -> None:
		self.pipeline = VoiceActivityPipeline(
			self.microphone, self.scheduler, self._send_segment, on_change=self._sync_voice_state,
		)
		self.audio_buffer = IncomingAudioBuffer(
			self.scheduler,
			self.player,
			on_playback_start=self._on_playback_start,
			on_playback_end=self._on_playback_end,
		)
		self.voice = ReconnectingSocketChannel(
			self.voice_url(session_id),
			self.transport,
			self.scheduler,
			name="voice",
			on_binary=self.audio_buffer.push,
		)
		await self.voice.open()

	# User actions

	async def send_message(self, text: str, attachments: Optional[Iterable[str]] = None) -> bool:
		"""Send the composer text (and attachments) on the chat channel.

		Returns False when the channel is not open or the frame could not be
		written; the history is then left as it was.

		Raises:
			ValueError: If there is neither text nor an attachment.
			AttachmentError: If an attachment cannot be read.
		"""
		text = (text or "").strip()
		paths = list(attachments or [])
		if not text and not paths:
			raise ValueError("Message text or an attachment is required.")
		if self.chat is None or not self.chat.is_open:
			LOGGER.error("Cannot send message - not connected")
			return False

		payloads = [await read_attachment(path) for path in paths]
		message_type = MessageType.MESSAGE.value if text else MessageType.ATTACHMENT.value
		self.history.clear_options()
		optimistic = self.history.add_optimistic(text, message_type, payloads)
		sent = await self.chat.send_json(outbound_message(text, message_type, payloads))
		if sent:
			await self.drafts.clear()
			self.state.composer_text = ""
		else:
			# the frame never left; no echo will ever confirm the placeholder
			self.history.discard(optimistic.id)
		self._changed()
		return sent

	async def submit_form(self, data: Dict[str, Any]) -> bool:
		if self.chat is None or not self.chat.is_open:
			LOGGER.error("Cannot submit form - not connected")
			return False
		self.history.clear_options()
		sent = await self.chat.send_json(outbound_message(data))
		if sent:
			self.history.active_form = None
			self.state.active_form = None
		self._changed()
		return sent

	def on_composer_change(self, text: str) -> None:
		self.state.composer_text = text
		self.drafts.on_composer_change(text)
		self._changed()

	async def toggle_mic(self) -> bool:
		"""Flip the microphone. Returns whether it is now enabled.

		Raises:
			ValueError: If this widget has no voice channel.
		"""
		if self.pipeline is None:
			raise ValueError("Voice input is not enabled for this widget.")
		if self.state.mic_enabled:
			self.pipeline.stop()
		else:
			try:
				self.pipeline.start()
			except MicrophoneUnavailableError as exc:
				self.state.mic_available = False
				self.state.errors.append(str(exc))
		self._sync_voice_state()
		return self.state.mic_enabled

	async def reconnect(self) -> bool:
		if self.chat is None:
			raise ValueError("Widget is not open.")
		opened = await self.chat.reconnect()
		if self.voice is not None:
			await self.voice.reconnect()
		return opened

	# Voice plumbing

	async def _send_segment(self, clip: bytes) -> None:
		if self.voice is None:
			return
		await self.voice.send_bytes(clip)

	def _on_playback_start(self) -> None:
		self.state.is_playing = True
		if self.pipeline is not None:
			self.pipeline.pause_for_playback()
		self._changed()

	def _on_playback_end(self) -> None:
		self.state.is_playing = False
		if self.pipeline is not None:
			self.pipeline.resume_after_playback()
		self._changed()

	def _sync_voice_state(self) -> None:
		if self.pipeline is not None:
			self.state.mic_enabled = self.pipeline.state.mic_enabled
		self._changed()

	# Teardown

	async def close(self) -> None:
		"""Stop reconnects, close both sockets, release the mic, reset flags. Safe to repeat."""
		self._cancel_proactive()
		self.state.is_open = False

		chat, self.chat = self.chat, None
		if chat is not None:
			await chat.close()
		voice, self.voice = self.voice, None
		if voice is not None:
			await voice.close()
		buffer, self.audio_buffer = self.audio_buffer, None
		if buffer is not None:
			await buffer.close()
		if self.pipeline is not None:
			self.pipeline.release()
			self.pipeline.cancel_pending()
		else:
			self.microphone.close()

		await self.drafts.save_now()
		self.drafts.close()
		await self._cancel_tasks()

		self.state.connection = "idle"
		self.state.mic_enabled = False
		self.state.is_playing = False
		self.state.is_typing = False
		self.state.is_using_tool = False
		self.state.livekit_token = None
		self._changed()

	@property
	def has_pending_timers(self) -> bool:
		parts = [self.chat, self.voice, self.pipeline, self.audio_buffer, self.drafts]
		if self._proactive_timer is not None:
			return True
		return any(part is not None and part.has_pending_timers for part in parts)

	# State

	def add_listener(self, listener: Callable[["WidgetSession"], None]) -> None:
		self._listeners.append(listener)

	def remove_listener(self, listener: Callable[["WidgetSession"], None]) -> None:
		if listener in self._listeners:
			self._listeners.remove(listener)

	def snapshot(self) -> Dict[str, Any]:
		data = asdict(self.state)
		data.update({
			"company_id": self.company_id,
			"agent_id": self.agent_id,
			"communication_mode": self.settings.communication_mode,
			"header_title": self.settings.header_title,
			"messages": self.history.to_list(),
			"reconnect_attempts": self.chat.reconnect_attempts if self.chat is not None else 0,
		})
		return data

	def _changed(self) -> None:
		for listener in list(self._listeners):
			try:
				listener(self)
			except Exception:
				LOGGER.exception("Widget state listener failed")

	def _cancel_proactive(self) -> None:
		if self._proactive_timer is not None:
			self._proactive_timer.cancel()
			self._proactive_timer = None

	def _spawn(self, coro) -> None:
		task = asyncio.ensure_future(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	async def _cancel_tasks(self) -> None:
		current = asyncio.current_task()
		tasks = [task for task in self._tasks if task is not current]
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
