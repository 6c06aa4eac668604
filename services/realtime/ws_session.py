"""Dispatch local UI websocket commands to a widget session."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from services.realtime.widget_session import WidgetSession

LOGGER = logging.getLogger(__name__)


class WidgetCommandHandler:
	"""Route websocket commands for a single widget instance."""

	def __init__(self, widget: WidgetSession) -> None:
		self.widget = widget

	async def handle(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		request_id = payload.get("request_id")
		command = payload.get("type")
		try:
			if command == "composer.change":
				result = self._composer_change(payload)
			elif command == "message.send":
				sent = await self.widget.send_message(payload.get("text") or "", payload.get("attachments"))
				result = {"type": "message.ack", "sent": sent}
			elif command == "form.submit":
				result = await self._submit_form(payload)
			elif command == "mic.toggle":
				enabled = await self.widget.toggle_mic()
				result = {"type": "mic.state", "enabled": enabled, "available": self.widget.state.mic_available}
			elif command == "state.get":
				result = {"type": "widget.state", "state": self.widget.snapshot()}
			else:
				raise ValueError("Unsupported message type.")
			if result is not None:
				result["request_id"] = request_id
				await self._send(websocket, result)
		except Exception as exc:
			LOGGER.warning("Widget command %r failed: %s", command, exc)
			await self._send_error(websocket, request_id, str(exc))

	def _composer_change(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
		text = payload.get("text")
		if not isinstance(text, str):
			raise ValueError("Composer text must be a string.")
		self.widget.on_composer_change(text)
		return None

	async def _submit_form(self, payload: Dict[str, Any]) -> Dict[str, Any]:
		data = payload.get("data")
		if not isinstance(data, dict):
			raise ValueError("Form data must be an object.")
		sent = await self.widget.submit_form(data)
		return {"type": "form.ack", "sent": sent}

	async def _send_error(self, websocket: WebSocket, request_id: Any, detail: str) -> None:
		await self._send(websocket, {"type": "error", "request_id": request_id, "detail": detail})

	async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		await websocket.send_text(json.dumps(payload))
