"""HTTP collaborators of the realtime session: settings, history, tokens, location."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from models.widget_settings import WidgetSettings

LOGGER = logging.getLogger(__name__)

HTTP_TIMEOUT = 10.0
UNKNOWN_LOCATION = {"city": "Unknown", "country": "Unknown"}


class BackendError(RuntimeError):
    """Raised when a backend HTTP call fails or returns an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendClient:
    """Thin async wrapper over the backend REST endpoints the core consumes.

    Args:
        http_base: Backend base URL including the API prefix.
        geo_url: Approximate IP geolocation endpoint.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        http_base: str,
        geo_url: str = "https://ipapi.co/json/",
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.http_base = http_base.rstrip("/")
        self.geo_url = geo_url
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise BackendError(
                f"{method} {url} returned {response.status_code}", status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"{method} {url} returned a non-JSON body") from exc

    async def fetch_widget_settings(self, agent_id: str) -> WidgetSettings:
        data = await self._request("GET", f"{self.http_base}/agents/{agent_id}/widget-settings")
        if not isinstance(data, dict):
            raise BackendError("Widget settings payload must be an object")
        try:
            return WidgetSettings.model_validate(data)
        except ValidationError as exc:
            raise BackendError(f"Widget settings for agent {agent_id} are invalid: {exc.error_count()} field error(s)") from exc

    async def fetch_conversation_page(
        self,
        agent_id: str,
        session_id: str,
        company_id: str,
        token: str,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """Return one page of conversation history.

        The backend answers either with a bare list or with an object
        carrying `messages`; both are normalised to
        `{"messages": [...], "page": n, "has_more": bool}`.
        """
        data = await self._request(
            "GET",
            f"{self.http_base}/conversations/{agent_id}/{session_id}",
            params={"page": page, "page_size": page_size},
            headers={"Authorization": f"Bearer {token}", "X-Company-ID": str(company_id)},
        )
        if isinstance(data, list):
            messages = data
            has_more = len(data) >= page_size
        elif isinstance(data, dict):
            messages = data.get("messages") or data.get("items") or []
            has_more = bool(data.get("has_more", len(messages) >= page_size))
        else:
            raise BackendError("Conversation history payload must be a list or an object")
        return {"messages": messages, "page": page, "has_more": has_more}

    async def issue_video_token(self, room_name: str, participant_name: str, agent_id: str) -> str:
        data = await self._request(
            "POST",
            f"{self.http_base}/video-calls/token",
            json={"room_name": room_name, "participant_name": participant_name, "agent_id": agent_id},
        )
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise BackendError("Video token response did not include an access_token")
        return token

    async def resolve_location(self) -> Dict[str, Any]:
        """Return an approximate visitor location, or the unknown fallback."""
        try:
            data = await self._request("GET", self.geo_url)
        except BackendError as exc:
            LOGGER.warning("Location lookup failed, using fallback: %s", exc)
            return dict(UNKNOWN_LOCATION)
        if not isinstance(data, dict):
            return dict(UNKNOWN_LOCATION)
        return {
            "city": data.get("city") or "Unknown",
            "country": data.get("country_name") or data.get("country") or "Unknown",
        }
