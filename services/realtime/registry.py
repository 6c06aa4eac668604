"""In-memory registries of live widgets and agent conversation feeds."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Tuple

from services.realtime.live_feed import ConversationLiveFeed
from services.realtime.widget_session import WidgetSession

LOGGER = logging.getLogger(__name__)


class WidgetRegistry:
	"""One `WidgetSession` per (company, agent) pair."""

	def __init__(self, factory: Callable[[str, str], WidgetSession]) -> None:
		self.factory = factory
		self._widgets: Dict[Tuple[str, str], WidgetSession] = {}

	def __len__(self) -> int:
		return len(self._widgets)

	def get_or_create(self, company_id: str, agent_id: str) -> WidgetSession:
		key = (company_id, agent_id)
		widget = self._widgets.get(key)
		if widget is None:
			widget = self.factory(company_id, agent_id)
			self._widgets[key] = widget
		return widget

	def get(self, company_id: str, agent_id: str) -> WidgetSession:
		"""Return a widget or raise KeyError if it was never opened."""
		widget = self._widgets.get((company_id, agent_id))
		if widget is None:
			raise KeyError(f"Widget {company_id}/{agent_id} not found")
		return widget

	async def close_all(self) -> None:
		for key, widget in list(self._widgets.items()):
			try:
				await widget.close()
			except Exception:
				LOGGER.exception("Failed to close widget %s/%s", *key)


class FeedRegistry:
	"""Live agent feeds keyed by (agent, session)."""

	def __init__(self) -> None:
		self._feeds: Dict[Tuple[str, str], ConversationLiveFeed] = {}

	def __len__(self) -> int:
		return len(self._feeds)

	def add(self, feed: ConversationLiveFeed) -> None:
		self._feeds[(feed.agent_id, feed.session_id)] = feed

	def get(self, agent_id: str, session_id: str) -> ConversationLiveFeed:
		feed = self._feeds.get((agent_id, session_id))
		if feed is None:
			raise KeyError(f"Live feed {agent_id}/{session_id} not found")
		return feed

	def remove(self, agent_id: str, session_id: str) -> ConversationLiveFeed:
		feed = self.get(agent_id, session_id)
		del self._feeds[(agent_id, session_id)]
		return feed

	async def close_all(self) -> None:
		for key in list(self._feeds):
			feed = self._feeds.pop(key)
			try:
				await feed.close()
			except Exception:
				LOGGER.exception("Failed to close live feed %s/%s", *key)
