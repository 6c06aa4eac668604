"""Session-scoped composer drafts with a debounced autosave."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

import aiosqlite

from dal.kv_dal import KeyValueDAL
from services.realtime.scheduler import TimerHandle

LOGGER = logging.getLogger(__name__)

DEBOUNCE_DELAY = 0.5
LOADING_GUARD = 0.1
DRAFT_KINDS = ("message", "note")


def draft_key(session_id: str, kind: str, scope: Optional[str] = None) -> str:
	if scope:
		return f"draft_{scope}_{session_id}_{kind}"
	return f"draft_{session_id}_{kind}"


class DraftPersistence:
	"""Keep one composer's text saved per (session, kind).

	`scope` separates composers that share session ids, such as the
	dashboard views of different agents.

	`text` always holds the latest composer value, so a session switch
	saves what the user actually typed even if a debounced save is still
	pending. While the loading guard is up, composer changes are not
	written: they are the freshly loaded draft echoing back.
	"""

	def __init__(
		self,
		kv: KeyValueDAL,
		scheduler,
		kind: str = "message",
		scope: Optional[str] = None,
		*,
		debounce: float = DEBOUNCE_DELAY,
		loading_guard: float = LOADING_GUARD,
	) -> None:
		if kind not in DRAFT_KINDS:
			raise ValueError(f"Unknown draft kind {kind!r}; expected one of {DRAFT_KINDS}.")
		self.kv = kv
		self.scheduler = scheduler
		self.kind = kind
		self.scope = scope
		self.debounce = debounce
		self.loading_guard = loading_guard

		self.session_id: Optional[str] = None
		self.text = ""
		self.loading = False
		self._mounted = False
		self._debounce_timer: Optional[TimerHandle] = None
		self._guard_timer: Optional[TimerHandle] = None
		self._writes: Set[asyncio.Task] = set()

	@property
	def has_pending_timers(self) -> bool:
		return self._debounce_timer is not None or self._guard_timer is not None

	async def on_session_change(self, session_id: str) -> str:
		"""Save the previous session's text, then load and return the new session's draft."""
		session_id = str(session_id)
		self._cancel_debounce()
		if self._mounted and self.session_id is not None and session_id != self.session_id:
			await self._write(self.session_id, self.text)
		self._mounted = True

		self.session_id = session_id
		self._raise_guard()
		self.text = await self.load(session_id)
		return self.text

	def on_composer_change(self, text: str) -> None:
		self.text = text
		if self.loading or self.session_id is None:
			return
		self._cancel_debounce()
		self._debounce_timer = self.scheduler.call_later(self.debounce, self._debounced_save, self.session_id, text)

	async def clear(self) -> None:
		"""Drop the current session's draft immediately (after a successful send)."""
		self._cancel_debounce()
		self.text = ""
		if self.session_id is not None:
			await self._write(self.session_id, "")

	async def save_now(self) -> None:
		"""Write the latest text for the current session without waiting for the debounce."""
		self._cancel_debounce()
		if self.session_id is not None and not self.loading:
			await self._write(self.session_id, self.text)

	async def load(self, session_id: str) -> str:
		try:
			stored = await self.kv.get(draft_key(session_id, self.kind, self.scope))
		except (aiosqlite.Error, OSError) as exc:
			LOGGER.warning("Could not load %s draft for session %s: %s", self.kind, session_id, exc)
			return ""
		return stored or ""

	async def flush(self) -> None:
		"""Wait for debounced writes that already fired."""
		if self._writes:
			await asyncio.gather(*list(self._writes), return_exceptions=True)

	def close(self) -> None:
		self._cancel_debounce()
		if self._guard_timer is not None:
			self._guard_timer.cancel()
			self._guard_timer = None
		self.loading = False

	def _debounced_save(self, session_id: str, text: str) -> None:
		self._debounce_timer = None
		if session_id != self.session_id or self.loading:
			LOGGER.debug("Skipping stale %s draft save for session %s", self.kind, session_id)
			return
		task = asyncio.ensure_future(self._write(session_id, text))
		self._writes.add(task)
		task.add_done_callback(self._writes.discard)

	async def _write(self, session_id: str, text: str) -> None:
		key = draft_key(session_id, self.kind, self.scope)
		try:
			if text:
				await self.kv.set(key, text)
			else:
				await self.kv.delete(key)
		except (aiosqlite.Error, OSError) as exc:
			LOGGER.warning("Could not save %s draft for session %s: %s", self.kind, session_id, exc)

	def _raise_guard(self) -> None:
		self.loading = True
		if self._guard_timer is not None:
			self._guard_timer.cancel()
		self._guard_timer = self.scheduler.call_later(self.loading_guard, self._drop_guard)

	def _drop_guard(self) -> None:
		self._guard_timer = None
		self.loading = False

	def _cancel_debounce(self) -> None:
		if self._debounce_timer is not None:
			self._debounce_timer.cancel()
			self._debounce_timer = None
