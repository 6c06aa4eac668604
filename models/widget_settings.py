"""Widget settings returned by the backend for one agent."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

CommunicationMode = Literal["chat", "voice", "chat_and_voice"]


class WidgetSettings(BaseModel):
	"""Subset of the settings payload the realtime session depends on.

	Presentation-only keys (colours, fonts, sizes) are accepted and kept as
	extras so they can be handed to a UI unchanged.
	"""

	model_config = ConfigDict(extra="allow")

	header_title: str = "Chat"
	welcome_message: str = ""
	proactive_message: str = ""
	proactive_message_enabled: bool = False
	proactive_message_delay: float = 0
	typing_indicator_enabled: bool = True
	communication_mode: CommunicationMode = "chat"
	voice_id: Optional[str] = None
	stt_provider: Optional[str] = None
	livekit_url: str = ""
	frontend_url: str = ""
