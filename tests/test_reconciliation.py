import itertools

from models.message_models import Message
from services.realtime.reconciliation import MessageHistory, reconcile


def clock():
    return 1_700_000_000.0


def test_server_echo_replaces_optimistic_message_in_place():
    history = MessageHistory(clock)
    history.add_local("agent", "Welcome!", message_id="welcome")
    optimistic = history.add_optimistic("Hello")
    history.add_local("agent", "One moment", message_id=7)
    assert optimistic.id == "temp_1700000000000"

    history.apply_incoming(Message(id=42, sender="user", text="Hello"))

    assert [m.id for m in history.messages] == ["welcome", 42, 7]
    assert [m.text for m in history.messages].count("Hello") == 1


def test_duplicate_delivery_is_ignored():
    history = MessageHistory(clock)
    frame = Message(id=42, sender="agent", text="Hi")

    assert history.apply_incoming(frame) is True
    assert history.apply_incoming(Message(id=42, sender="agent", text="Hi")) is False
    assert [m.id for m in history.messages] == [42]


def test_agent_messages_are_never_matched_by_content():
    existing = [Message(id="temp_1", sender="agent", text="Sure")]
    merged = reconcile(existing, Message(id=5, sender="agent", text="Sure"))
    assert [m.id for m in merged] == ["temp_1", 5]


def test_only_first_matching_placeholder_is_replaced():
    existing = [
        Message(id="temp_1", sender="user", text="yes"),
        Message(id="temp_2", sender="user", text="yes"),
    ]
    merged = reconcile(existing, Message(id=9, sender="user", text="yes"))
    assert [m.id for m in merged] == [9, "temp_2"]


def test_reconcile_does_not_mutate_input():
    existing = [Message(id="temp_1", sender="user", text="hey")]
    reconcile(existing, Message(id=3, sender="user", text="hey"))
    assert existing[0].id == "temp_1"


def test_form_message_sets_active_form():
    history = MessageHistory(clock)
    fields = [{"name": "email", "type": "email"}]
    history.apply_incoming(Message(id=1, sender="agent", text="Details please", type="form", fields=fields))
    assert history.active_form == fields


def test_clear_options_removes_quick_replies():
    history = MessageHistory(clock)
    history.apply_incoming(Message(id=1, sender="agent", text="Pick one", options=["A", "B"]))
    history.clear_options()
    assert history.messages[0].options is None


def test_redelivered_echo_leaves_pending_placeholder_alone():
    ticks = itertools.count(1.0)
    history = MessageHistory(lambda: next(ticks))
    history.add_optimistic("yes")
    history.apply_incoming(Message(id=42, sender="user", text="yes"))
    pending = history.add_optimistic("yes")

    assert history.apply_incoming(Message(id=42, sender="user", text="yes")) is False
    assert [m.id for m in history.messages] == [42, pending.id]

    history.apply_incoming(Message(id=43, sender="user", text="yes"))
    assert [m.id for m in history.messages] == [42, 43]
