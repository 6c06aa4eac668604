import asyncio

import httpx

from conftest import BlockingPlayer, FakeBackend, FakePlayer, FakeSource, FakeTransport, settle
from models.widget_settings import WidgetSettings
from services.backend_client import BackendClient
from services.realtime.scheduler import ManualScheduler
from services.realtime.session_store import SessionIdentityStore
from services.realtime.widget_session import WidgetSession
from utils.runtime_config import RuntimeConfig


def clock():
    return 1_700_000_000.0


def make_widget(kv, settings=None, transport=None, backend=None, opener=None, microphone=None, player=None):
    backend = backend or FakeBackend(settings=settings)
    config = RuntimeConfig(backend_url="http://backend", frontend_url="http://app", livekit_url="wss://lk")
    widget = WidgetSession(
        "c1",
        "a1",
        config=config,
        backend=backend,
        session_store=SessionIdentityStore(kv, clock=clock),
        kv=kv,
        transport=transport or FakeTransport(),
        scheduler=ManualScheduler(),
        microphone=microphone or FakeSource(),
        player=player or FakePlayer(),
        opener=opener or (lambda url: True),
        clock=clock,
    )
    return widget


def chat_connection(transport):
    return [conn for conn in transport.connections if "/voice/" not in conn.url][-1]


async def test_open_connects_chat_and_greets_once(kv):
    transport = FakeTransport()
    widget = make_widget(kv, WidgetSettings(welcome_message="Hi! How can we help?"), transport)

    state = await widget.open()

    assert transport.urls == ["ws://backend/api/v1/ws/public/c1/a1/1700000000000?user_type=user"]
    assert state["is_open"] and state["connection"] == "open"
    assert [(m["id"], m["text"]) for m in state["messages"]] == [("welcome", "Hi! How can we help?")]

    chat_connection(transport).server_close()
    await settle()
    widget.scheduler.advance(3.0)
    await settle()
    assert len(widget.history) == 1
    await widget.close()


async def test_send_message_reconciles_with_echo(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()

    assert await widget.send_message("Hello") is True
    assert widget.history.messages[-1].id == "temp_1700000000000"
    assert chat_connection(transport).sent_json()[-1] == {
        "message": "Hello",
        "message_type": "message",
        "sender": "user",
    }

    chat_connection(transport).server_send({"id": 42, "sender": "user", "message": "Hello"})
    chat_connection(transport).server_send({"id": 42, "sender": "user", "message": "Hello"})
    await settle()

    assert [(m.id, m.text) for m in widget.history.messages] == [(42, "Hello")]
    await widget.close()


async def test_send_while_disconnected_is_dropped(kv):
    widget = make_widget(kv, transport=FakeTransport(fail_all=True))
    await widget.open()

    assert await widget.send_message("Hello") is False
    assert widget.history.is_empty
    await widget.close()


async def test_sending_clears_options_and_draft(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    widget.scheduler.advance(0.2)
    chat_connection(transport).server_send({"id": 1, "sender": "agent", "message": "Pick", "options": ["A", "B"]})
    await settle()

    widget.on_composer_change("A")
    await widget.send_message("A")

    assert widget.history.messages[0].options is None
    assert widget.state.composer_text == ""
    assert await kv.get("draft_1700000000000_message") is None
    await widget.close()


async def test_indicators_follow_frames(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    connection = chat_connection(transport)

    connection.server_send({"message_type": "typing", "is_typing": True})
    connection.server_send({"message_type": "tool_use"})
    await settle()
    assert widget.state.is_typing and widget.state.is_using_tool

    connection.server_send({"id": 5, "sender": "agent", "message": "Done"})
    await settle()
    assert not widget.state.is_typing and not widget.state.is_using_tool
    await widget.close()


async def test_typing_ignored_when_indicator_disabled(kv):
    transport = FakeTransport()
    widget = make_widget(kv, WidgetSettings(typing_indicator_enabled=False), transport)
    await widget.open()

    chat_connection(transport).server_send({"message_type": "typing", "is_typing": True})
    await settle()

    assert not widget.state.is_typing
    await widget.close()


async def test_form_message_and_submit(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    connection = chat_connection(transport)
    connection.server_send({"id": 9, "sender": "agent", "message": "Details", "message_type": "form", "fields": [{"name": "email"}]})
    await settle()
    assert widget.state.active_form == [{"name": "email"}]

    assert await widget.submit_form({"email": "a@b.c"}) is True
    assert connection.sent_json()[-1] == {"message": {"email": "a@b.c"}, "message_type": "message", "sender": "user"}
    assert widget.state.active_form is None
    await widget.close()


async def test_blocked_call_window_falls_back_to_link(kv):
    transport = FakeTransport()
    opened = []

    def opener(url):
        opened.append(url)
        return False

    widget = make_widget(kv, transport=transport, opener=opener)
    await widget.open()
    chat_connection(transport).server_send({"type": "call_accepted", "user_token": "tok", "agent_name": "Dana"})
    await settle()

    assert opened == ["http://app/video-call?token=tok&livekitUrl=wss%3A%2F%2Flk&sessionId=1700000000000"]
    notice = widget.history.messages[-1]
    assert notice.sender == "system"
    assert f"({opened[0]})" in notice.text
    await widget.close()


async def test_call_rejection_uses_reason_or_default(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    connection = chat_connection(transport)

    connection.server_send({"type": "call_rejected", "reason": "Agent is busy"})
    await settle()
    assert widget.history.messages[-1].text == "Agent is busy"
    await widget.close()


async def test_video_invitation_gets_join_url(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    chat_connection(transport).server_send(
        {"id": 3, "sender": "agent", "message": "Join me", "message_type": "video_call_invitation", "token": "vt"}
    )
    await settle()

    assert widget.history.messages[-1].video_call_url.startswith("http://app/video-call?token=vt&")
    await widget.close()


async def test_settings_failure_falls_back_to_chat(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport, backend=FakeBackend(fail_settings=True))

    state = await widget.open()

    assert state["communication_mode"] == "chat"
    assert state["connection"] == "open"
    await widget.close()


async def test_voice_only_mode_fetches_token_without_sockets(kv):
    transport = FakeTransport()
    backend = FakeBackend(settings=WidgetSettings(communication_mode="voice"))
    widget = make_widget(kv, transport=transport, backend=backend)

    state = await widget.open()

    assert state["livekit_token"] == "lk-token"
    assert transport.urls == []
    assert backend.token_requests[0]["participant_name"] == "User-1700000000000"
    await widget.close()
    assert widget.state.livekit_token is None


async def test_proactive_open_uses_proactive_greeting(kv):
    settings = WidgetSettings(
        welcome_message="Welcome",
        proactive_message="Need a hand?",
        proactive_message_enabled=True,
        proactive_message_delay=5,
    )
    widget = make_widget(kv, settings)

    assert await widget.schedule_proactive_open() is True
    widget.scheduler.advance(5.0)
    await asyncio.gather(*list(widget._tasks))

    assert widget.state.is_open
    assert widget.history.messages[0].text == "Need a hand?"
    await widget.close()


async def test_mic_unavailable_is_reported(kv):
    widget = make_widget(
        kv, WidgetSettings(communication_mode="chat_and_voice"), microphone=FakeSource(deny=True)
    )
    await widget.open()

    assert await widget.toggle_mic() is False
    assert widget.state.mic_available is False
    await widget.close()


async def test_voice_segments_and_playback_gating(kv):
    transport = FakeTransport()
    widget = make_widget(kv, WidgetSettings(communication_mode="chat_and_voice"), transport)
    await widget.open()
    voice = transport.connections_to("/voice/")[0]
    assert "voice_id=default&stt_provider=groq" in voice.url

    await widget.toggle_mic()
    await widget._send_segment(b"utterance")
    assert voice.sent == [b"utterance"]

    voice.server_send(b"a")
    voice.server_send(b"b")
    await settle()
    widget.scheduler.advance(0.3)
    await settle()

    assert widget.player.clips == [b"ab"]
    assert widget.state.mic_enabled
    assert not widget.state.is_playing
    await widget.close()


async def test_teardown_is_idempotent(kv):
    transport = FakeTransport()
    source = FakeSource()
    widget = make_widget(kv, WidgetSettings(communication_mode="chat_and_voice"), transport, microphone=source)
    await widget.open()
    await widget.toggle_mic()
    widget.on_composer_change("unsent")

    await widget.close()
    await widget.close()
    widget.scheduler.advance(120.0)
    await settle()

    assert source.acquire_count == 1
    assert source.release_count == 1
    assert not widget.has_pending_timers
    assert widget.scheduler.pending == 0
    assert all(conn.closed for conn in transport.connections)
    assert len(transport.connections) == 2
    assert not widget.state.mic_enabled and not widget.state.is_playing
    assert widget.state.connection == "idle"


async def test_failed_write_drops_optimistic_entry(kv):
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport)
    await widget.open()
    widget.scheduler.advance(0.2)
    widget.on_composer_change("Hello")
    chat_connection(transport).closed = True

    assert await widget.send_message("Hello") is False

    assert widget.history.is_empty
    assert widget.state.composer_text == "Hello"
    await widget.close()


async def test_malformed_settings_fall_back_to_chat(kv):
    payload = {"communication_mode": "video", "proactive_message_delay": "soon"}
    backend_client = BackendClient(
        "http://backend/api/v1", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    )
    transport = FakeTransport()
    widget = make_widget(kv, transport=transport, backend=backend_client)

    state = await widget.open()

    assert state["communication_mode"] == "chat"
    assert state["connection"] == "open"
    await widget.close()
    await backend_client.aclose()


async def test_recording_is_gated_while_a_clip_plays(kv):
    transport = FakeTransport()
    player = BlockingPlayer()
    widget = make_widget(kv, WidgetSettings(communication_mode="chat_and_voice"), transport, player=player)
    await widget.open()
    await widget.toggle_mic()
    pipeline = widget.pipeline
    assert pipeline.has_pending_timers

    transport.connections_to("/voice/")[0].server_send(b"agent audio")
    await settle()
    widget.scheduler.advance(0.3)
    await player.started.wait()
    await settle()

    assert widget.state.is_playing
    assert pipeline.recorder.state == "paused"
    assert not pipeline.has_pending_timers
    widget.scheduler.advance(1.0)
    assert not pipeline.has_pending_timers
    assert pipeline.recorder.state == "paused"

    player.finish()
    await settle()

    assert not widget.state.is_playing
    assert pipeline.recorder.state == "recording"
    assert pipeline.has_pending_timers
    widget.scheduler.advance(0.1)
    assert pipeline.has_pending_timers
    await widget.close()
