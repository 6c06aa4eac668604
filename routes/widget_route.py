"""FastAPI routes driving embeddable widget sessions."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from controllers.widget_controller import (
	close_widget,
	get_widget_state,
	open_widget,
	reconnect_widget,
	schedule_proactive,
	send_widget_message,
	submit_widget_form,
	toggle_widget_mic,
	update_widget_draft,
)

router = APIRouter(prefix="/widgets")


class OpenPayload(BaseModel):
	proactive: bool = False


class MessagePayload(BaseModel):
	text: str = ""
	attachments: Optional[List[str]] = None


class FormPayload(BaseModel):
	data: Dict[str, Any] = Field(default_factory=dict)


class DraftPayload(BaseModel):
	text: str = ""


@router.post("/{company_id}/{agent_id}/open")
async def open_widget_route(request: Request, company_id: str, agent_id: str, payload: Optional[OpenPayload] = None):
	try:
		return await open_widget(request, company_id, agent_id, payload.proactive if payload else False)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/proactive")
async def proactive_route(request: Request, company_id: str, agent_id: str):
	try:
		return await schedule_proactive(request, company_id, agent_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{company_id}/{agent_id}")
async def widget_state_route(request: Request, company_id: str, agent_id: str):
	try:
		return await get_widget_state(request, company_id, agent_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/messages")
async def post_message_route(request: Request, company_id: str, agent_id: str, payload: MessagePayload):
	try:
		return await send_widget_message(request, company_id, agent_id, payload.text, payload.attachments)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/form")
async def submit_form_route(request: Request, company_id: str, agent_id: str, payload: FormPayload):
	try:
		return await submit_widget_form(request, company_id, agent_id, payload.data)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/mic")
async def toggle_mic_route(request: Request, company_id: str, agent_id: str):
	try:
		return await toggle_widget_mic(request, company_id, agent_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.put("/{company_id}/{agent_id}/draft")
async def update_draft_route(request: Request, company_id: str, agent_id: str, payload: DraftPayload):
	try:
		return await update_widget_draft(request, company_id, agent_id, payload.text)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/reconnect")
async def reconnect_route(request: Request, company_id: str, agent_id: str):
	try:
		return await reconnect_widget(request, company_id, agent_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{company_id}/{agent_id}/close")
async def close_widget_route(request: Request, company_id: str, agent_id: str):
	try:
		return await close_widget(request, company_id, agent_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
