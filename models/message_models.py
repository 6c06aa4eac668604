"""Chat message domain models shared by the widget and the agent feed."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

TEMP_ID_PREFIX = "temp_"

MessageId = Union[int, str]


class Sender(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MessageType(str, Enum):
    MESSAGE = "message"
    PROMPT = "prompt"
    FORM = "form"
    VIDEO_CALL_INVITATION = "video_call_invitation"
    ATTACHMENT = "attachment"


SENDERS = {sender.value for sender in Sender}


def utc_timestamp(clock: Callable[[], float] = time.time) -> str:
    """Return an ISO-8601 UTC timestamp for `clock()`."""
    return datetime.fromtimestamp(clock(), tz=timezone.utc).isoformat()


def temp_message_id(clock: Callable[[], float] = time.time) -> str:
    """Return a client-side id for a message the server has not confirmed yet."""
    return f"{TEMP_ID_PREFIX}{int(clock() * 1000)}"


def is_temp_id(message_id: MessageId) -> bool:
    return isinstance(message_id, str) and message_id.startswith(TEMP_ID_PREFIX)


def message_text(value: Any) -> str:
    """Coerce a frame's `message` field into display text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


@dataclass
class Message:
    """A single chat turn as held in the ordered message history.

    Attributes:
        id: Server id once confirmed, `temp_<ms>` while optimistic.
        sender: One of `user`, `agent`, `system`.
        text: Display text (structured payloads are JSON-encoded).
        type: One of the `MessageType` values.
        timestamp: ISO-8601 string.
        options: Single-use quick replies offered with this message.
        fields: Form definition when `type == "form"`.
        video_call_url: Join link for video call invitations.
    """

    id: MessageId
    sender: str
    text: str
    type: str = MessageType.MESSAGE.value
    timestamp: str = field(default_factory=utc_timestamp)
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    options: Optional[List[str]] = None
    fields: Optional[List[Dict[str, Any]]] = None
    video_call_url: Optional[str] = None
    assignee_name: Optional[str] = None

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
