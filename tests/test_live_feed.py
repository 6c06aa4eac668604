from conftest import FakeBackend, FakeTransport, settle
from models.message_models import Message
from services.realtime.live_feed import ConversationLiveFeed, PaginatedMessageCache
from services.realtime.scheduler import ManualScheduler

WS_BASE = "ws://backend/api/v1"


def history_page(*ids, has_more=False):
    return {
        "messages": [{"id": i, "sender": "user", "message": f"m{i}", "message_type": "message"} for i in ids],
        "has_more": has_more,
    }


def make_feed(transport, backend=None, token="tok"):
    return ConversationLiveFeed(WS_BASE, "a1", "s1", "c1", token, transport, ManualScheduler(), backend=backend)


def test_cache_appends_to_newest_page_with_dedupe():
    cache = PaginatedMessageCache()
    cache.prepend_page([Message(id=3, sender="user", text="c")], has_more=True)
    cache.prepend_page([Message(id=1, sender="user", text="a")], has_more=False)

    assert cache.append_to_newest(Message(id=4, sender="agent", text="d")) is True
    assert cache.append_to_newest(Message(id=1, sender="user", text="a")) is False
    assert [[m.id for m in page] for page in cache.pages] == [[1], [3, 4]]


async def test_feed_does_not_start_without_token():
    transport = FakeTransport()
    feed = make_feed(transport, token=None)

    assert await feed.start() is False
    assert transport.urls == []


async def test_feed_loads_history_then_patches_live_messages():
    transport = FakeTransport()
    backend = FakeBackend(pages={1: history_page(1, 2, has_more=True)})
    feed = make_feed(transport, backend)

    assert await feed.start() is True
    assert transport.urls == [f"{WS_BASE}/ws/a1/s1?user_type=agent&token=tok"]

    connection = transport.last
    connection.server_send({"type": "ping"})
    connection.server_send({"message_type": "typing", "is_typing": True})
    connection.server_send({"id": 2, "sender": "user", "message": "m2"})
    connection.server_send({"id": 3, "sender": "agent", "message": "reply", "message_type": "message"})
    await settle()

    assert [m.id for m in feed.cache.messages()] == [1, 2, 3]
    assert feed.cache.has_more is True
    assert connection.sent_json() == [{"type": "pong"}]
    await feed.close()


async def test_feed_loads_older_pages_in_front():
    backend = FakeBackend(pages={1: history_page(3, 4, has_more=True), 2: history_page(1, 2)})
    feed = make_feed(FakeTransport(), backend)
    await feed.start()

    added = await feed.load_older()

    assert added == 2
    assert [m.id for m in feed.cache.messages()] == [1, 2, 3, 4]
    assert backend.page_requests == [1, 2]
    assert feed.cache.has_more is False
    await feed.close()


async def test_feed_reconnects_after_drop():
    transport = FakeTransport()
    feed = make_feed(transport)
    await feed.start()

    transport.last.server_close()
    await settle()
    feed.scheduler.advance(3.0)
    await settle()

    assert len(transport.connections) == 2
    assert feed.channel.is_open
    await feed.close()
