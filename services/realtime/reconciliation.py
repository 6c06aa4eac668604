"""Merge optimistic and server-confirmed messages into one ordered history."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from models.message_models import Message, MessageType, Sender, is_temp_id, temp_message_id, utc_timestamp

LOGGER = logging.getLogger(__name__)


def reconcile(existing: List[Message], incoming: Message) -> List[Message]:
	"""Return the history after `incoming` arrives.

	1. A message whose id is already present is dropped (redelivery).
	2. Otherwise a confirmed user message replaces, in place, the first
	   optimistic user message with identical text.
	3. Otherwise it is appended.

	Only user messages are matched by content; agent and system messages may
	legitimately repeat text and are matched by id alone.
	"""
	if any(current.id == incoming.id for current in existing):
		return existing

	if incoming.sender == Sender.USER.value and not is_temp_id(incoming.id):
		for index, current in enumerate(existing):
			if current.is_temporary and current.sender == Sender.USER.value and current.text == incoming.text:
				merged = list(existing)
				merged[index] = incoming
				return merged

	return existing + [incoming]


class MessageHistory:
	"""Ordered message list of one conversation plus its form side channel."""

	def __init__(self, clock: Callable[[], float] = time.time) -> None:
		self.clock = clock
		self.messages: List[Message] = []
		self.active_form: Optional[List[Dict[str, Any]]] = None

	def __len__(self) -> int:
		return len(self.messages)

	@property
	def is_empty(self) -> bool:
		return not self.messages

	def apply_incoming(self, message: Message) -> bool:
		"""Merge a message received from the server. Returns True if the list changed."""
		merged = reconcile(self.messages, message)
		if merged is self.messages:
			LOGGER.debug("Ignoring duplicate message %s", message.id)
			return False
		self.messages = merged
		if message.type == MessageType.FORM.value:
			self.active_form = message.fields
		return True

	def add_optimistic(
		self,
		text: str,
		message_type: str = MessageType.MESSAGE.value,
		attachments: Optional[List[Dict[str, Any]]] = None,
	) -> Message:
		"""Append the local copy of a user send under a temporary id."""
		message = Message(
			id=temp_message_id(self.clock),
			sender=Sender.USER.value,
			text=text,
			type=message_type,
			timestamp=utc_timestamp(self.clock),
			attachments=list(attachments or []),
		)
		self.messages = self.messages + [message]
		return message

	def add_local(self, sender: str, text: str, message_id: str, message_type: str = MessageType.MESSAGE.value) -> Message:
		"""Append a client-generated message (greetings, system notices)."""
		message = Message(
			id=message_id,
			sender=sender,
			text=text,
			type=message_type,
			timestamp=utc_timestamp(self.clock),
		)
		self.apply_incoming(message)
		return message

	def discard(self, message_id: Any) -> bool:
		"""Remove a local entry, e.g. an optimistic send that never left the client."""
		kept = [message for message in self.messages if message.id != message_id]
		if len(kept) == len(self.messages):
			return False
		self.messages = kept
		return True

	def clear_options(self) -> None:
		"""Quick replies are single use: drop them from every message."""
		if any(message.options for message in self.messages):
			self.messages = [replace(message, options=None) if message.options else message for message in self.messages]

	def to_list(self) -> List[Dict[str, Any]]:
		return [message.to_dict() for message in self.messages]
