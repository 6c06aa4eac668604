"""WebSocket endpoint driving one widget from a local UI."""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from services.realtime.registry import WidgetRegistry
from services.realtime.ws_session import WidgetCommandHandler

router = APIRouter()


def _require_widgets(websocket: WebSocket) -> WidgetRegistry:
	widgets = getattr(websocket.app.state, "widgets", None)
	if widgets is None:
		raise HTTPException(status_code=500, detail="Widget registry unavailable")
	return widgets


async def _push_state(websocket: WebSocket, widget, changed: asyncio.Event) -> None:
	"""Send a `widget.state` snapshot after each burst of changes."""
	while True:
		await changed.wait()
		changed.clear()
		await websocket.send_text(json.dumps({"type": "widget.state", "state": widget.snapshot()}))


@router.websocket("/ws/widgets/{company_id}/{agent_id}")
async def widget_socket(
	websocket: WebSocket,
	company_id: str,
	agent_id: str,
	widgets: WidgetRegistry = Depends(_require_widgets),
):
	"""Accept widget commands and stream state snapshots back."""
	await websocket.accept()
	widget = widgets.get_or_create(company_id, agent_id)
	handler = WidgetCommandHandler(widget)

	changed = asyncio.Event()

	def listener(_widget) -> None:
		changed.set()

	widget.add_listener(listener)
	pusher = asyncio.create_task(_push_state(websocket, widget, changed))
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except WebSocketDisconnect:
				break
			except (RuntimeError, KeyError):
				await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid websocket frame"}))
				continue
			try:
				payload = json.loads(raw)
			except ValueError:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be JSON"}))
				continue
			if not isinstance(payload, dict):
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be a JSON object"}))
				continue
			await handler.handle(websocket, payload)
	finally:
		widget.remove_listener(listener)
		pusher.cancel()
		await asyncio.gather(pusher, return_exceptions=True)
