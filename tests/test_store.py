"""Test suite for the immutable conversation store."""

import pytest

from painter_coach_chat.domain.errors import MessageNotFoundError
from painter_coach_chat.domain.models import Message, MessageRole, MessageStatus
from painter_coach_chat.domain.store import ConversationStore


def _message(message_id: str, role: MessageRole = MessageRole.USER, **fields) -> Message:
    return Message(id=message_id, role=role, content=message_id, **fields)


def test_append_returns_new_store():
    """Appending leaves the original store untouched."""
    empty = ConversationStore()
    store = empty.append(_message("u1"))
    assert len(empty) == 0
    assert [m.id for m in store] == ["u1"]


def test_update_by_id_patches_one_message():
    store = ConversationStore([_message("u1"), _message("a1", MessageRole.ASSISTANT)])
    updated = store.update_by_id("a1", content="hello", status=MessageStatus.STREAMING)

    assert updated.get("a1").content == "hello"
    assert updated.get("a1").status == MessageStatus.STREAMING
    assert store.get("a1").content == "a1"
    assert updated.get("u1") is store.get("u1")


def test_unknown_id_raises():
    store = ConversationStore([_message("u1")])
    with pytest.raises(MessageNotFoundError):
        store.update_by_id("missing", content="x")
    with pytest.raises(KeyError):
        store.remove_by_id("missing")


def test_remove_by_id_keeps_order():
    store = ConversationStore([_message("u1"), _message("u2"), _message("u3")])
    assert [m.id for m in store.remove_by_id("u2")] == ["u1", "u3"]


def test_replace_at_preserves_position_and_length():
    store = ConversationStore([
        _message("u1"),
        _message("a1", MessageRole.ASSISTANT),
        _message("u2"),
    ])
    replaced = store.replace_at(1, _message("z", MessageRole.ASSISTANT))
    assert [m.id for m in replaced] == ["u1", "z", "u2"]

    with pytest.raises(IndexError):
        store.replace_at(3, _message("z"))


def test_active_and_last_user_index():
    store = ConversationStore([
        _message("u1"),
        _message("a1", MessageRole.ASSISTANT),
        _message("u2"),
        _message("a2", MessageRole.ASSISTANT, status=MessageStatus.PENDING),
    ])
    assert store.active().id == "a2"
    assert store.last_user_index() == 2
    assert "u2" in store
    assert "nope" not in store
    assert ConversationStore().last_user_index() is None
