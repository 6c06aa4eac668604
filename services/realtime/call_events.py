"""Handle call lifecycle frames arriving on the chat channel."""

from __future__ import annotations

import logging
import time
import webbrowser
from typing import Callable, Optional
from urllib.parse import urlencode

from models.frame_models import InboundFrame
from models.message_models import Sender, message_text
from services.backend_client import BackendError
from services.realtime.reconciliation import MessageHistory

LOGGER = logging.getLogger(__name__)

DEFAULT_REJECTION = "The agent is not available for a call right now."
TOKEN_FAILURE = "We could not connect you to the call. Please try again."


def build_call_url(frontend_url: str, token: str, livekit_url: str, session_id: str) -> str:
	"""Return the join link the call window opens."""
	query = urlencode({"token": token, "livekitUrl": livekit_url, "sessionId": session_id})
	return f"{frontend_url.rstrip('/')}/video-call?{query}"


class CallEventHandler:
	"""Open the call window on accept, surface a notice on reject."""

	def __init__(
		self,
		history: MessageHistory,
		backend,
		agent_id: str,
		session_id: str,
		frontend_url: str,
		livekit_url: str,
		opener: Callable[[str], bool] = webbrowser.open_new_tab,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.history = history
		self.backend = backend
		self.agent_id = agent_id
		self.session_id = session_id
		self.frontend_url = frontend_url
		self.livekit_url = livekit_url
		self.opener = opener
		self.clock = clock

	def _notice(self, text: str) -> None:
		self.history.add_local(Sender.SYSTEM.value, text, message_id=f"call-{int(self.clock() * 1000)}")

	async def accepted(self, frame: InboundFrame) -> Optional[str]:
		"""Return the call URL that was opened or offered as a link."""
		token = frame.user_token or frame.token
		if not token:
			try:
				token = await self.backend.issue_video_token(
					room_name=frame.room_name or self.session_id,
					participant_name=f"User-{self.session_id}",
					agent_id=self.agent_id,
				)
			except BackendError as exc:
				LOGGER.error("Could not fetch a call token for session %s: %s", self.session_id, exc)
				self._notice(TOKEN_FAILURE)
				return None

		url = build_call_url(self.frontend_url, token, frame.livekit_url or self.livekit_url, self.session_id)
		if self._open_window(url):
			LOGGER.info("Opened call window for session %s", self.session_id)
		else:
			LOGGER.warning("Call window was blocked; offering a link instead")
			agent = frame.agent_name or "The agent"
			self._notice(f"{agent} accepted your call. [Join the video call]({url})")
		return url

	def rejected(self, frame: InboundFrame) -> None:
		reason = frame.reason or message_text(frame.message) or DEFAULT_REJECTION
		self._notice(reason)

	def _open_window(self, url: str) -> bool:
		try:
			return bool(self.opener(url))
		except webbrowser.Error as exc:
			LOGGER.warning("Could not open a browser window: %s", exc)
			return False
