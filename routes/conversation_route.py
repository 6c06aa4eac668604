"""FastAPI routes for the agent dashboard's live conversation view."""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from controllers.conversation_controller import (
	get_feed_messages,
	load_older_messages,
	select_draft,
	start_live_feed,
	stop_live_feed,
	update_draft,
)

router = APIRouter(prefix="/conversations")


class DraftPayload(BaseModel):
	text: str = ""


@router.post("/{agent_id}/{session_id}/live")
async def start_feed_route(
	request: Request,
	agent_id: str,
	session_id: str,
	authorization: Optional[str] = Header(default=None),
	x_company_id: Optional[str] = Header(default=None),
):
	try:
		return await start_live_feed(request, agent_id, session_id, x_company_id, authorization)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/{agent_id}/{session_id}/live")
async def stop_feed_route(request: Request, agent_id: str, session_id: str):
	try:
		return await stop_live_feed(request, agent_id, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{agent_id}/{session_id}/messages")
async def feed_messages_route(request: Request, agent_id: str, session_id: str):
	try:
		return await get_feed_messages(request, agent_id, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{agent_id}/{session_id}/messages/older")
async def older_messages_route(request: Request, agent_id: str, session_id: str):
	try:
		return await load_older_messages(request, agent_id, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{agent_id}/{session_id}/drafts/{kind}")
async def get_draft_route(request: Request, agent_id: str, session_id: str, kind: str):
	try:
		return await select_draft(request, agent_id, session_id, kind)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.put("/{agent_id}/{session_id}/drafts/{kind}")
async def put_draft_route(request: Request, agent_id: str, session_id: str, kind: str, payload: DraftPayload):
	try:
		return await update_draft(request, agent_id, session_id, kind, payload.text)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
