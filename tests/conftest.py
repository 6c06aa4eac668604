import asyncio
import json
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from dal.kv_dal import KeyValueDAL
from models.widget_settings import WidgetSettings
from services.backend_client import BackendError
from services.realtime.audio_capture import MicrophoneUnavailableError
from utils.database_init import AsyncDatabaseInitializer

_CLOSED = object()


async def settle(rounds: int = 10) -> None:
    """Let spawned tasks and callbacks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: List[Any] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise OSError("connection is closed")
        self.sent.append(data)

    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(item) for item in self.sent if isinstance(item, str)]

    def server_send(self, data):
        if isinstance(data, dict):
            data = json.dumps(data)
        self._inbox.put_nowait(data)

    def server_close(self):
        self._inbox.put_nowait(_CLOSED)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item


class FakeTransport:
    """Hands out FakeConnections; `failures` makes the next N connects fail."""

    def __init__(self, failures: int = 0, fail_all: bool = False):
        self.failures = failures
        self.fail_all = fail_all
        self.urls: List[str] = []
        self.connections: List[FakeConnection] = []

    async def connect(self, url: str):
        self.urls.append(url)
        if self.fail_all or self.failures > 0:
            self.failures = max(self.failures - 1, 0)
            raise OSError("connection refused")
        connection = FakeConnection()
        connection.url = url
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]

    def connections_to(self, fragment: str) -> List[FakeConnection]:
        return [conn for conn in self.connections if fragment in conn.url]


class FakeBackend:
    def __init__(
        self,
        settings: Optional[WidgetSettings] = None,
        fail_settings: bool = False,
        token: Optional[str] = "lk-token",
        pages: Optional[Dict[int, Dict[str, Any]]] = None,
        location: Optional[Dict[str, Any]] = None,
    ):
        self.settings = settings or WidgetSettings()
        self.fail_settings = fail_settings
        self.token = token
        self.pages = pages or {}
        self.location = location or {"city": "Unknown", "country": "Unknown"}
        self.token_requests: List[Dict[str, str]] = []
        self.page_requests: List[int] = []
        self.closed = False

    async def fetch_widget_settings(self, agent_id: str) -> WidgetSettings:
        if self.fail_settings:
            raise BackendError("settings unavailable", status_code=503)
        return self.settings

    async def fetch_conversation_page(self, agent_id, session_id, company_id, token, page=1, page_size=20):
        self.page_requests.append(page)
        return self.pages.get(page, {"messages": [], "page": page, "has_more": False})

    async def issue_video_token(self, room_name: str, participant_name: str, agent_id: str) -> str:
        self.token_requests.append(
            {"room_name": room_name, "participant_name": participant_name, "agent_id": agent_id}
        )
        if self.token is None:
            raise BackendError("no token")
        return self.token

    async def resolve_location(self) -> Dict[str, Any]:
        return dict(self.location)

    async def aclose(self) -> None:
        self.closed = True


class FakeSource:
    """Microphone double counting acquisitions and releases."""

    samplerate = 16000

    def __init__(self, deny: bool = False):
        self.deny = deny
        self.is_open = False
        self.acquire_count = 0
        self.release_count = 0
        self.listeners = []

    def open(self):
        if self.deny:
            raise MicrophoneUnavailableError("Permission denied")
        if self.is_open:
            return
        self.is_open = True
        self.acquire_count += 1

    def close(self):
        if not self.is_open:
            return
        self.is_open = False
        self.release_count += 1

    def add_listener(self, listener):
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def latest_frame(self, size=2048):
        return np.zeros(size, dtype=np.float32)


class FakeRecorder:
    """Recorder double: every started segment yields one clip on stop."""

    def __init__(self):
        self.state = "inactive"
        self.started = 0
        self.stopped = 0

    def start(self):
        self.state = "recording"
        self.started += 1

    def pause(self):
        if self.state == "recording":
            self.state = "paused"

    def resume(self):
        if self.state == "paused":
            self.state = "recording"

    def append(self, samples):
        pass

    def stop(self):
        was_active = self.state != "inactive"
        self.state = "inactive"
        if not was_active:
            return None
        self.stopped += 1
        return f"clip-{self.stopped}".encode()


class FakePlayer:
    def __init__(self):
        self.clips: List[bytes] = []

    async def play(self, clip: bytes) -> None:
        self.clips.append(clip)


class BlockingPlayer(FakePlayer):
    """Player double that keeps a clip "playing" until `finish()` is called."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self._done = asyncio.Event()

    async def play(self, clip: bytes) -> None:
        self.clips.append(clip)
        self.started.set()
        await self._done.wait()

    def finish(self):
        self._done.set()


@pytest.fixture
async def kv(tmp_path):
    db = AsyncDatabaseInitializer(tmp_path)
    await db.ensure_database()
    return KeyValueDAL(db)
