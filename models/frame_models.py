"""Wire frames exchanged with the backend over the chat and voice sockets.

Inbound text frames go through `parse_frame`, which either returns a
classified `ParsedFrame` or a `RejectedFrame` describing why the payload
was dropped. Nothing downstream ever sees raw JSON.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models.message_models import SENDERS, Message, MessageType, message_text, utc_timestamp

PING_FRAME = {"type": "ping"}
PONG_FRAME = {"type": "pong"}


class FrameKind(str, Enum):
	PING = "ping"
	PONG = "pong"
	TYPING = "typing"
	TOOL_USE = "tool_use"
	CALL_ACCEPTED = "call_accepted"
	CALL_REJECTED = "call_rejected"
	CONVERSATION = "conversation"


CALL_EVENTS = {FrameKind.CALL_ACCEPTED.value, FrameKind.CALL_REJECTED.value}


class InboundFrame(BaseModel):
	"""Superset of every JSON frame the backend sends."""

	model_config = ConfigDict(extra="allow", populate_by_name=True)

	type: Optional[str] = None
	id: Optional[Union[int, str]] = None
	sender: Optional[str] = None
	message: Any = None
	message_type: Optional[str] = None
	timestamp: Optional[Union[str, int, float]] = None
	options: Optional[List[str]] = None
	form_fields: Optional[List[Dict[str, Any]]] = Field(default=None, alias="fields")
	assignee_name: Optional[str] = None
	attachments: Optional[List[Dict[str, Any]]] = None
	call_initiated: Optional[bool] = None
	is_typing: Optional[bool] = None
	token: Optional[str] = None
	user_token: Optional[str] = None
	agent_name: Optional[str] = None
	room_name: Optional[str] = None
	livekit_url: Optional[str] = None
	reason: Optional[str] = None


@dataclass(frozen=True)
class ParsedFrame:
	kind: FrameKind
	frame: InboundFrame


@dataclass(frozen=True)
class RejectedFrame:
	reason: str
	raw: str


ParseResult = Union[ParsedFrame, RejectedFrame]


def classify(frame: InboundFrame) -> FrameKind:
	"""Classify by `type` first (control and call events), then by `message_type`."""
	if frame.type == FrameKind.PING.value:
		return FrameKind.PING
	if frame.type == FrameKind.PONG.value:
		return FrameKind.PONG
	for marker in (frame.type, frame.message_type):
		if marker in CALL_EVENTS:
			return FrameKind(marker)
	if frame.message_type == FrameKind.TYPING.value:
		return FrameKind.TYPING
	if frame.message_type == FrameKind.TOOL_USE.value:
		return FrameKind.TOOL_USE
	return FrameKind.CONVERSATION


def parse_frame(raw: Union[str, bytes]) -> ParseResult:
	"""Parse one inbound text frame without ever raising."""
	raw_text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
	try:
		data = json.loads(raw_text)
	except ValueError as exc:
		return RejectedFrame(reason=f"invalid JSON: {exc}", raw=raw_text)
	if not isinstance(data, dict):
		return RejectedFrame(reason="frame must be a JSON object", raw=raw_text)
	try:
		frame = InboundFrame.model_validate(data)
	except ValidationError as exc:
		return RejectedFrame(reason=f"invalid frame: {exc.error_count()} field error(s)", raw=raw_text)

	kind = classify(frame)
	if kind is FrameKind.CONVERSATION and frame.sender not in SENDERS:
		return RejectedFrame(reason=f"unknown sender {frame.sender!r}", raw=raw_text)
	return ParsedFrame(kind=kind, frame=frame)


def message_from_frame(frame: InboundFrame, clock: Callable[[], float] = time.time) -> Message:
	"""Build a history entry from a conversation frame."""
	message_id = frame.id if frame.id is not None else f"msg-{int(clock() * 1000)}"
	if frame.timestamp is None:
		timestamp = utc_timestamp(clock)
	else:
		timestamp = str(frame.timestamp)
	return Message(
		id=message_id,
		sender=frame.sender or "",
		text=message_text(frame.message),
		type=frame.message_type or MessageType.MESSAGE.value,
		timestamp=timestamp,
		attachments=list(frame.attachments or []),
		options=list(frame.options) if frame.options else None,
		fields=frame.form_fields,
		assignee_name=frame.assignee_name,
	)


def outbound_message(
	message: Any,
	message_type: str = MessageType.MESSAGE.value,
	attachments: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
	"""Return the JSON payload for a user send."""
	payload: Dict[str, Any] = {"message": message, "message_type": message_type, "sender": "user"}
	if attachments:
		payload["attachments"] = attachments
	return payload
