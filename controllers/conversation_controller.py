"""Agent dashboard helpers: live conversation feeds and note drafts."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException, Request

from services.realtime.draft_store import DRAFT_KINDS, DraftPersistence
from services.realtime.live_feed import ConversationLiveFeed


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
	if not authorization:
		return None
	scheme, _, token = authorization.partition(" ")
	if scheme.lower() != "bearer" or not token.strip():
		return None
	return token.strip()


async def start_live_feed(
	request: Request,
	agent_id: str,
	session_id: str,
	company_id: Optional[str],
	authorization: Optional[str],
) -> Dict[str, Any]:
	"""Load the conversation's newest page and subscribe to live messages."""
	state = request.app.state
	token = _bearer_token(authorization)
	if not token:
		raise HTTPException(status_code=401, detail="A bearer token is required.")
	if not company_id:
		raise HTTPException(status_code=400, detail="X-Company-ID header is required.")

	try:
		feed = state.feeds.get(agent_id, session_id)
	except KeyError:
		feed = ConversationLiveFeed(
			state.config.ws_base,
			agent_id,
			session_id,
			company_id,
			token,
			state.transport,
			state.scheduler,
			backend=state.backend,
		)
		state.feeds.add(feed)
	connected = await feed.start()
	return {"connected": connected, "message_count": len(feed.cache), "has_more": feed.cache.has_more}


async def get_feed_messages(request: Request, agent_id: str, session_id: str) -> Dict[str, Any]:
	try:
		feed = request.app.state.feeds.get(agent_id, session_id)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	return {
		"session_id": session_id,
		"messages": feed.cache.to_list(),
		"pages": feed.cache.loaded_pages,
		"has_more": feed.cache.has_more,
	}


async def load_older_messages(request: Request, agent_id: str, session_id: str) -> Dict[str, Any]:
	try:
		feed = request.app.state.feeds.get(agent_id, session_id)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	added = await feed.load_older()
	return {"added": added, "has_more": feed.cache.has_more}


async def stop_live_feed(request: Request, agent_id: str, session_id: str) -> Dict[str, Any]:
	try:
		feed = request.app.state.feeds.remove(agent_id, session_id)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	await feed.close()
	return {"closed": True}


def _drafts(request: Request, agent_id: str, kind: str) -> DraftPersistence:
	if kind not in DRAFT_KINDS:
		raise HTTPException(status_code=400, detail=f"Unknown draft kind {kind!r}.")
	state = request.app.state
	drafts = state.agent_drafts.get((agent_id, kind))
	if drafts is None:
		drafts = DraftPersistence(state.kv, state.scheduler, kind, scope=agent_id)
		state.agent_drafts[(agent_id, kind)] = drafts
	return drafts


async def select_draft(request: Request, agent_id: str, session_id: str, kind: str) -> Dict[str, Any]:
	"""Switch the agent's composer to `session_id` and return its stored draft."""
	drafts = _drafts(request, agent_id, kind)
	if drafts.session_id != session_id:
		await drafts.on_session_change(session_id)
	return {"session_id": session_id, "kind": kind, "text": drafts.text}


async def update_draft(request: Request, agent_id: str, session_id: str, kind: str, text: str) -> Dict[str, Any]:
	"""Record composer text for the conversation currently open in the agent composer."""
	drafts = _drafts(request, agent_id, kind)
	if drafts.session_id != session_id:
		raise HTTPException(status_code=409, detail=f"Conversation {session_id} is not open in the {kind} composer.")
	drafts.on_composer_change(text)
	return {"session_id": session_id, "kind": kind, "queued": not drafts.loading}
