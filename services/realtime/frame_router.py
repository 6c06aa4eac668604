"""Route classified chat-channel frames to indicators, call events and history."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from models.frame_models import FrameKind, ParsedFrame, message_from_frame
from models.message_models import MessageType
from models.session_models import WidgetState
from models.widget_settings import WidgetSettings
from services.realtime.call_events import CallEventHandler, build_call_url
from services.realtime.reconciliation import MessageHistory

LOGGER = logging.getLogger(__name__)


class ChatFrameHandler:
	"""Apply one inbound chat frame to the widget's state.

	Frames arrive already classified; this handler is called in delivery
	order by the channel reader, so it never reorders anything.
	"""

	def __init__(
		self,
		state: WidgetState,
		history: MessageHistory,
		settings: WidgetSettings,
		call_events: CallEventHandler,
		on_change: Optional[Callable[[], None]] = None,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.state = state
		self.history = history
		self.settings = settings
		self.call_events = call_events
		self.on_change = on_change
		self.clock = clock

	async def handle(self, parsed: ParsedFrame) -> None:
		frame = parsed.frame
		if parsed.kind is FrameKind.TYPING:
			if self.settings.typing_indicator_enabled:
				self.state.is_typing = bool(frame.is_typing)
				self._changed()
			return
		if parsed.kind is FrameKind.TOOL_USE:
			self.state.is_using_tool = True
			self._changed()
			return
		if parsed.kind is FrameKind.CALL_ACCEPTED:
			await self.call_events.accepted(frame)
			self._changed()
			return
		if parsed.kind is FrameKind.CALL_REJECTED:
			self.call_events.rejected(frame)
			self._changed()
			return

		self.state.is_typing = False
		self.state.is_using_tool = False
		message = message_from_frame(frame, self.clock)
		if message.type == MessageType.VIDEO_CALL_INVITATION.value:
			message.video_call_url = build_call_url(
				self.call_events.frontend_url,
				frame.token or "",
				self.call_events.livekit_url,
				self.call_events.session_id,
			)
		self.history.apply_incoming(message)
		self.state.active_form = self.history.active_form
		self._changed()

	def _changed(self) -> None:
		if self.on_change is not None:
			self.on_change()
