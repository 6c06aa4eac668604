"""Session domain models for realtime workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class SessionRecord:
	"""Persisted identity of one widget conversation.

	`timestamp` is the creation time in epoch milliseconds and drives
	passive expiry.
	"""

	session_id: str
	timestamp: int

	def to_storage(self) -> Dict[str, Any]:
		return {"sessionId": self.session_id, "timestamp": self.timestamp}

	@classmethod
	def from_storage(cls, data: Dict[str, Any]) -> "SessionRecord":
		if "sessionId" not in data or "timestamp" not in data:
			raise ValueError("Stored session record is missing sessionId or timestamp.")
		return cls(session_id=str(data["sessionId"]), timestamp=int(data["timestamp"]))


# Channel states. Exactly one of these describes a channel at any time.


@dataclass(frozen=True)
class Idle:
	pass


@dataclass(frozen=True)
class Connecting:
	attempts: int = 0


@dataclass(frozen=True)
class Open:
	pass


@dataclass(frozen=True)
class ClosedPending:
	attempts: int
	delay: float


@dataclass(frozen=True)
class ClosedExhausted:
	attempts: int


ChannelState = Union[Idle, Connecting, Open, ClosedPending, ClosedExhausted]


@dataclass
class VoiceActivityState:
	"""Per-microphone-session VAD bookkeeping."""

	mic_enabled: bool = False
	monitoring: bool = False
	is_speaking: bool = False
	silence_start: Optional[float] = None
	playback_paused: bool = False
	segments_sent: int = 0


@dataclass
class WidgetState:
	"""UI-facing flags of one widget instance."""

	is_open: bool = False
	session_id: Optional[str] = None
	connection: str = "idle"
	is_typing: bool = False
	is_using_tool: bool = False
	mic_enabled: bool = False
	mic_available: bool = True
	is_playing: bool = False
	livekit_token: Optional[str] = None
	visitor_location: Optional[Dict[str, Any]] = None
	composer_text: str = ""
	active_form: Optional[List[Dict[str, Any]]] = None
	errors: List[str] = field(default_factory=list)
