"""Agent dashboard view of one conversation, kept current over a socket."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from models.frame_models import FrameKind, InboundFrame, ParsedFrame, message_from_frame
from models.message_models import Message
from services.backend_client import BackendError
from services.realtime.socket_channel import ReconnectingSocketChannel

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


class PaginatedMessageCache:
	"""History pages ordered oldest first; live messages go on the newest page."""

	def __init__(self) -> None:
		self.pages: List[List[Message]] = []
		self.loaded_pages = 0
		self.has_more = False

	def __len__(self) -> int:
		return sum(len(page) for page in self.pages)

	def contains(self, message_id: Any) -> bool:
		return any(message.id == message_id for page in self.pages for message in page)

	def prepend_page(self, messages: Iterable[Message], has_more: bool) -> None:
		"""Add an older page in front of what is loaded."""
		page = [message for message in messages if not self.contains(message.id)]
		self.pages.insert(0, page)
		self.loaded_pages += 1
		self.has_more = has_more

	def append_to_newest(self, message: Message) -> bool:
		"""Append a live message. Returns False if its id is already cached."""
		if self.contains(message.id):
			return False
		if not self.pages:
			self.pages.append([])
		self.pages[-1] = self.pages[-1] + [message]
		return True

	def messages(self) -> List[Message]:
		return [message for page in self.pages for message in page]

	def to_list(self) -> List[Dict[str, Any]]:
		return [message.to_dict() for message in self.messages()]


def history_message(item: Dict[str, Any], clock: Callable[[], float] = time.time) -> Optional[Message]:
	try:
		frame = InboundFrame.model_validate(item)
	except ValidationError as exc:
		LOGGER.warning("Skipping unreadable history entry: %s", exc)
		return None
	return message_from_frame(frame, clock)


class ConversationLiveFeed:
	"""Load a conversation's history and patch it with live messages.

	Uses the same reconnecting channel as the widget, without a greeting.
	Control, typing and tool frames never reach the cache.
	"""

	def __init__(
		self,
		ws_base: str,
		agent_id: str,
		session_id: str,
		company_id: str,
		token: Optional[str],
		transport,
		scheduler,
		backend=None,
		page_size: int = DEFAULT_PAGE_SIZE,
		on_change: Optional[Callable[[], None]] = None,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.ws_base = ws_base.rstrip("/")
		self.agent_id = agent_id
		self.session_id = session_id
		self.company_id = company_id
		self.token = token
		self.transport = transport
		self.scheduler = scheduler
		self.backend = backend
		self.page_size = page_size
		self.on_change = on_change
		self.clock = clock
		self.cache = PaginatedMessageCache()
		self.channel: Optional[ReconnectingSocketChannel] = None

	@property
	def url(self) -> str:
		query = urlencode({"user_type": "agent", "token": self.token or ""})
		return f"{self.ws_base}/ws/{self.agent_id}/{self.session_id}?{query}"

	@property
	def is_ready(self) -> bool:
		return bool(self.agent_id and self.session_id and self.token)

	async def start(self) -> bool:
		"""Load the newest page and open the socket. Returns True once open."""
		if not self.is_ready:
			LOGGER.warning("Live feed needs agent id, session id and token; not starting")
			return False
		if self.channel is not None:
			return self.channel.is_open
		if self.backend is not None and self.cache.loaded_pages == 0:
			await self.load_older()
		self.channel = ReconnectingSocketChannel(
			self.url,
			self.transport,
			self.scheduler,
			name=f"feed:{self.session_id}",
			on_frame=self._on_frame,
		)
		return await self.channel.open()

	async def load_older(self) -> int:
		"""Fetch the next older page. Returns how many messages it added."""
		if self.backend is None:
			return 0
		page = self.cache.loaded_pages + 1
		try:
			data = await self.backend.fetch_conversation_page(
				self.agent_id, self.session_id, self.company_id, self.token, page=page, page_size=self.page_size,
			)
		except BackendError as exc:
			LOGGER.error("Could not load history page %d for %s: %s", page, self.session_id, exc)
			return 0
		messages = [m for m in (history_message(item, self.clock) for item in data["messages"]) if m is not None]
		before = len(self.cache)
		self.cache.prepend_page(messages, data["has_more"])
		self._changed()
		return len(self.cache) - before

	async def close(self) -> None:
		if self.channel is not None:
			await self.channel.close()

	def _on_frame(self, parsed: ParsedFrame) -> None:
		if parsed.kind is not FrameKind.CONVERSATION:
			return
		message = message_from_frame(parsed.frame, self.clock)
		if self.cache.append_to_newest(message):
			self._changed()

	def _changed(self) -> None:
		if self.on_change is not None:
			self.on_change()
