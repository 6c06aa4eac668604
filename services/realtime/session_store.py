"""Durable conversation identity per (agent, company) pair."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Dict

import aiosqlite

from dal.kv_dal import KeyValueDAL
from models.session_models import SessionRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRATION_DAYS = 30
_MS_PER_DAY = 24 * 60 * 60 * 1000


def session_key(agent_id: str, company_id: str) -> str:
	return f"agentconnect_session_{company_id}_{agent_id}"


class SessionIdentityStore:
	"""Resolve, create and persist the session id a widget reconnects with.

	A stored record younger than the expiration window is reused; anything
	older (or missing, or unreadable) is replaced by a fresh id. Storage
	failures never propagate: the store falls back to an id kept in memory
	for the life of the process.
	"""

	def __init__(
		self,
		kv: KeyValueDAL,
		expiration_days: int = DEFAULT_EXPIRATION_DAYS,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.kv = kv
		self.expiration_ms = expiration_days * _MS_PER_DAY
		self.clock = clock
		self._fallback: Dict[str, str] = {}
		self._last_generated = 0

	def _now_ms(self) -> int:
		return int(self.clock() * 1000)

	def generate_session_id(self) -> str:
		"""Return a millisecond timestamp id, bumped if the clock has not moved."""
		candidate = max(self._now_ms(), self._last_generated + 1)
		self._last_generated = candidate
		return str(candidate)

	async def resolve_session(self, agent_id: str, company_id: str) -> str:
		"""Return the live session id for the pair, creating one if needed."""
		key = session_key(agent_id, company_id)
		if key in self._fallback:
			return self._fallback[key]

		now = self._now_ms()
		try:
			raw = await self.kv.get(key)
		except (aiosqlite.Error, OSError) as exc:
			LOGGER.warning("Session storage read failed for %s: %s", key, exc)
			return self._remember_fallback(key)

		if raw is not None:
			try:
				record = SessionRecord.from_storage(json.loads(raw))
			except (TypeError, ValueError) as exc:
				LOGGER.warning("Discarding unreadable session record for %s: %s", key, exc)
			else:
				if now - record.timestamp < self.expiration_ms:
					LOGGER.info("Resuming session %s for %s", record.session_id, key)
					return record.session_id
				LOGGER.info("Session %s for %s expired", record.session_id, key)

		record = SessionRecord(session_id=self.generate_session_id(), timestamp=now)
		try:
			await self.kv.set(key, json.dumps(record.to_storage()))
		except (aiosqlite.Error, OSError) as exc:
			LOGGER.warning("Session storage write failed for %s: %s", key, exc)
			self._fallback[key] = record.session_id
		LOGGER.info("Created session %s for %s", record.session_id, key)
		return record.session_id

	async def persist(self, agent_id: str, company_id: str, session_id: str) -> None:
		"""Overwrite the stored record for the pair with `session_id`."""
		key = session_key(agent_id, company_id)
		record = SessionRecord(session_id=str(session_id), timestamp=self._now_ms())
		try:
			await self.kv.set(key, json.dumps(record.to_storage()))
		except (aiosqlite.Error, OSError) as exc:
			LOGGER.warning("Session storage write failed for %s: %s", key, exc)
			self._fallback[key] = record.session_id
			return
		self._fallback.pop(key, None)

	def _remember_fallback(self, key: str) -> str:
		session_id = self.generate_session_id()
		self._fallback[key] = session_id
		return session_id
