"""Widget lifecycle helpers for the local control surface."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request

from services.realtime.registry import WidgetRegistry
from services.realtime.widget_session import WidgetSession


def _widgets(request: Request) -> WidgetRegistry:
	return request.app.state.widgets


def _existing(request: Request, company_id: str, agent_id: str) -> WidgetSession:
	try:
		return _widgets(request).get(company_id, agent_id)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc


async def open_widget(request: Request, company_id: str, agent_id: str, proactive: bool = False) -> Dict[str, Any]:
	"""Open (or return) the widget for the pair and report its state."""
	widget = _widgets(request).get_or_create(company_id, agent_id)
	return await widget.open(proactive=proactive)


async def schedule_proactive(request: Request, company_id: str, agent_id: str) -> Dict[str, Any]:
	widget = _widgets(request).get_or_create(company_id, agent_id)
	scheduled = await widget.schedule_proactive_open()
	return {"scheduled": scheduled, "delay": widget.settings.proactive_message_delay}


async def get_widget_state(request: Request, company_id: str, agent_id: str) -> Dict[str, Any]:
	return _existing(request, company_id, agent_id).snapshot()


async def send_widget_message(
	request: Request,
	company_id: str,
	agent_id: str,
	text: str,
	attachments: Optional[List[str]] = None,
) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	try:
		sent = await widget.send_message(text, attachments)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return {"sent": sent, "state": widget.snapshot()}


async def submit_widget_form(request: Request, company_id: str, agent_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	sent = await widget.submit_form(data)
	return {"sent": sent, "state": widget.snapshot()}


async def toggle_widget_mic(request: Request, company_id: str, agent_id: str) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	try:
		enabled = await widget.toggle_mic()
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return {"mic_enabled": enabled, "mic_available": widget.state.mic_available}


async def update_widget_draft(request: Request, company_id: str, agent_id: str, text: str) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	widget.on_composer_change(text)
	return {"session_id": widget.state.session_id, "text": widget.state.composer_text}


async def reconnect_widget(request: Request, company_id: str, agent_id: str) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	try:
		opened = await widget.reconnect()
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return {"connected": opened, "state": widget.snapshot()}


async def close_widget(request: Request, company_id: str, agent_id: str) -> Dict[str, Any]:
	widget = _existing(request, company_id, agent_id)
	await widget.close()
	return {"closed": True, "state": widget.snapshot()}
