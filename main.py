import inspect
import logging
import webbrowser
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request

from dal.kv_dal import KeyValueDAL
from routes.conversation_route import router as conversation_router
from routes.realtime_ws import router as realtime_ws_router
from routes.widget_route import router as widget_router
from services.backend_client import BackendClient
from services.realtime.audio_capture import MicrophoneSource
from services.realtime.registry import FeedRegistry, WidgetRegistry
from services.realtime.scheduler import LoopScheduler
from services.realtime.session_store import SessionIdentityStore
from services.realtime.socket_channel import WebsocketsTransport
from services.realtime.widget_session import WidgetSession
from utils.database_init import AsyncDatabaseInitializer
from utils.runtime_config import RuntimeConfig

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan manager to initialize:
      - the SQLite key-value store (kept across restarts, at DATABASE_DIR/agentconnect.db)
      - the backend HTTP client, socket transport and scheduler
      - the widget and live feed registries
    and attach them to `app.state`.
    """
    config: RuntimeConfig = app.state.config

    db_initializer = AsyncDatabaseInitializer(config.database_dir)
    await db_initializer.ensure_database()
    app.state.db_initializer = db_initializer
    kv = KeyValueDAL(db_initializer)

    if getattr(app.state, "backend", None) is None:
        app.state.backend = BackendClient(config.http_base, config.geo_url)
    if getattr(app.state, "transport", None) is None:
        app.state.transport = WebsocketsTransport()
    if getattr(app.state, "scheduler", None) is None:
        app.state.scheduler = LoopScheduler()

    session_store = SessionIdentityStore(kv, expiration_days=config.session_ttl_days)
    microphone_factory: Callable[[], MicrophoneSource] = app.state.microphone_factory
    opener = app.state.opener

    def build_widget(company_id: str, agent_id: str) -> WidgetSession:
        return WidgetSession(
            company_id,
            agent_id,
            config=config,
            backend=app.state.backend,
            session_store=session_store,
            kv=kv,
            transport=app.state.transport,
            scheduler=app.state.scheduler,
            microphone=microphone_factory(),
            player=app.state.player,
            opener=opener,
        )

    app.state.session_store = session_store
    app.state.widgets = WidgetRegistry(build_widget)
    app.state.feeds = FeedRegistry()
    app.state.kv = kv
    # (agent_id, kind) -> DraftPersistence, created on first use by the conversation controller
    app.state.agent_drafts = {}

    try:
        yield
    finally:
        await app.state.widgets.close_all()
        await app.state.feeds.close_all()
        for drafts in app.state.agent_drafts.values():
            await drafts.save_now()
            drafts.close()

        # Gracefully close the backend client if it exposes an aclose/close method.
        client = getattr(app.state, "backend", None)
        aclose = getattr(client, "aclose", None) or getattr(client, "close", None)
        if aclose is not None:
            try:
                result = aclose()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Failed to close backend client")


def create_app(
    config: Optional[RuntimeConfig] = None,
    *,
    backend=None,
    transport=None,
    scheduler=None,
    microphone_factory: Optional[Callable[[], MicrophoneSource]] = None,
    player=None,
    opener: Optional[Callable[[str], bool]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Collaborators left as None are built from `config` at startup; tests pass
    in-memory fakes instead.
    """
    config = config or RuntimeConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(lifespan=lifespan)
    app.state.config = config
    app.state.backend = backend
    app.state.transport = transport
    app.state.scheduler = scheduler
    app.state.microphone_factory = microphone_factory or MicrophoneSource
    app.state.player = player
    app.state.opener = opener or webbrowser.open_new_tab

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check reporting the store and live session counts.
        """
        state = request.app.state
        return {
            "ok": True,
            "db_initialized": hasattr(state, "db_initializer"),
            "widgets": len(state.widgets) if hasattr(state, "widgets") else 0,
            "feeds": len(state.feeds) if hasattr(state, "feeds") else 0,
        }

    # Register application routers
    app.include_router(widget_router)
    app.include_router(conversation_router)
    app.include_router(realtime_ws_router)

    return app


app = create_app()
