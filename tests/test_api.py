"""Test suite for the API endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from chat_fakes import EchoTransport, FailingRepository, ScriptedTransport, fail
from painter_coach_chat.api.app import app
from painter_coach_chat.api.sessions import SessionRegistry, get_registry
from painter_coach_chat.config import ChatSettings
from painter_coach_chat.repositories.memory import InMemoryTurnRepository


def _use_registry(registry: SessionRegistry) -> SessionRegistry:
    app.dependency_overrides[get_registry] = lambda: registry
    return registry


@pytest.fixture
def registry():
    yield _use_registry(SessionRegistry(
        lambda streaming: EchoTransport(), InMemoryTurnRepository(), ChatSettings()
    ))
    app.dependency_overrides.clear()


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _open(client: AsyncClient, user_id: str = "painter-1") -> dict:
    response = await client.post("/sessions", json={"user_id": user_id})
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_create_session_starts_with_welcome(registry):
    """Test opening a new chat session."""
    async with _client() as client:
        state = await _open(client)

        assert state["conversation_id"] is None
        assert [m["id"] for m in state["messages"]] == ["welcome"]
        assert state["is_busy"] is False


@pytest.mark.asyncio
async def test_submit_message(registry):
    """Test sending a message and receiving the assistant response."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]

        response = await client.post(
            f"/sessions/{session_id}/messages",
            json={"content": "How do I find commercial clients?"},
        )
        assert response.status_code == 200
        state = response.json()

        user, assistant = state["messages"][-2:]
        assert user["role"] == "user"
        assert user["content"] == "How do I find commercial clients?"
        assert assistant["role"] == "assistant"
        assert assistant["status"] == "complete"
        assert assistant["content"] == "Echo: How do I find commercial clients?"
        assert assistant["suggested_follow_ups"] == ["Tell me more"]
        assert state["conversation_id"] is not None

        response = await client.get(f"/sessions/{session_id}")
        assert response.json()["messages"] == state["messages"]


@pytest.mark.asyncio
async def test_error_handling(registry):
    """Test error handling in various scenarios."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]

        response = await client.post(f"/sessions/{session_id}/messages", json={"content": "   "})
        assert response.status_code == 422

        response = await client.post(
            f"/sessions/{session_id}/messages",
            json={"content": "look", "attachment_url": "javascript:alert(1)"},
        )
        assert response.status_code == 422

        response = await client.post("/sessions/unknown/messages", json={"content": "hi"})
        assert response.status_code == 404

        response = await client.post(f"/sessions/{session_id}/messages/welcome/regenerate")
        assert response.status_code == 422

        state = (await client.get(f"/sessions/{session_id}")).json()
        assert [m["id"] for m in state["messages"]] == ["welcome"]


@pytest.mark.asyncio
async def test_backend_failure_returns_error_message(registry):
    """Test that a failed exchange is reported inside the message list."""
    registry.transport_factory = lambda streaming: ScriptedTransport(fail())
    async with _client() as client:
        session_id = (await _open(client))["session_id"]

        response = await client.post(f"/sessions/{session_id}/messages", json={"content": "hi"})
        assert response.status_code == 200
        state = response.json()
        assert state["messages"][-1]["status"] == "error"
        assert state["error"].startswith("Failed to generate a response")


@pytest.mark.asyncio
async def test_regenerate_message(registry):
    """Test regenerating an assistant response in place."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]
        state = (await client.post(
            f"/sessions/{session_id}/messages", json={"content": "Pricing tips?"}
        )).json()
        target = state["messages"][-1]

        response = await client.post(f"/sessions/{session_id}/messages/{target['id']}/regenerate")
        assert response.status_code == 200
        messages = response.json()["messages"]

        assert len(messages) == len(state["messages"])
        assert messages[-1]["id"] != target["id"]
        assert messages[-1]["id"].startswith(target["id"] + ":")
        assert messages[-1]["content"] == "Echo: Pricing tips?"


@pytest.mark.asyncio
async def test_retry_message(registry):
    """Test that retry removes the last turn and returns its text."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]
        await client.post(f"/sessions/{session_id}/messages", json={"content": "Say that again"})

        response = await client.post(f"/sessions/{session_id}/retry")
        assert response.status_code == 200
        assert response.json() == {"input_text": "Say that again"}

        state = (await client.get(f"/sessions/{session_id}")).json()
        assert [m["id"] for m in state["messages"]] == ["welcome"]
        assert state["input_text"] == "Say that again"


@pytest.mark.asyncio
async def test_cancel_and_close_session(registry):
    """Test cancelling with nothing running and closing a session."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]

        response = await client.post(f"/sessions/{session_id}/cancel")
        assert response.status_code == 200
        assert response.json()["is_busy"] is False

        response = await client.delete(f"/sessions/{session_id}")
        assert response.status_code == 204
        response = await client.get(f"/sessions/{session_id}")
        assert response.status_code == 404
        response = await client.delete(f"/sessions/{session_id}")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_resume_conversation(registry):
    """Test reopening a stored conversation in a new session."""
    async with _client() as client:
        first = (await _open(client))["session_id"]
        state = (await client.post(
            f"/sessions/{first}/messages", json={"content": "Remember my crew size is 4"}
        )).json()
        conversation_id = state["conversation_id"]

        response = await client.post(
            "/sessions", json={"user_id": "painter-1", "conversation_id": conversation_id}
        )
        assert response.status_code == 200
        resumed = response.json()
        assert resumed["conversation_id"] == conversation_id
        assert [m["content"] for m in resumed["messages"]] == [
            "Remember my crew size is 4",
            "Echo: Remember my crew size is 4",
        ]


@pytest.mark.asyncio
async def test_get_conversation_messages(registry):
    """Test reading a stored conversation's history."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]
        for question in ["Q1", "Q2"]:
            state = (await client.post(
                f"/sessions/{session_id}/messages", json={"content": question}
            )).json()

        response = await client.get(f"/conversations/{state['conversation_id']}/messages")
        assert response.status_code == 200
        assert [m["content"] for m in response.json()] == ["Q1", "Echo: Q1", "Q2", "Echo: Q2"]

        response = await client.get("/conversations/missing/messages")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_conversations(registry):
    """Test listing a user's stored conversations."""
    async with _client() as client:
        for question in ["First chat", "Second chat"]:
            session_id = (await _open(client))["session_id"]
            await client.post(f"/sessions/{session_id}/messages", json={"content": question})
        other = (await _open(client, "painter-2"))["session_id"]
        await client.post(f"/sessions/{other}/messages", json={"content": "Not mine"})

        response = await client.get("/users/painter-1/conversations")
        assert response.status_code == 200
        titles = {c["title"] for c in response.json()}
        assert titles == {"First chat", "Second chat"}

        response = await client.get("/users/painter-1/conversations?limit=1")
        assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_list_conversations_storage_down():
    """Test that a storage outage surfaces as 503."""
    _use_registry(SessionRegistry(lambda streaming: EchoTransport(), FailingRepository(), ChatSettings()))
    try:
        async with _client() as client:
            response = await client.get("/users/painter-1/conversations")
            assert response.status_code == 503
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_transcript(registry):
    """Test copying a session as plain text."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]
        await client.post(f"/sessions/{session_id}/messages", json={"content": "How do I bid a fence?"})

        response = await client.get(f"/sessions/{session_id}/transcript")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "You: How do I bid a fence?\n\nAI Coach: Echo: How do I bid a fence?"

        response = await client.get("/sessions/missing/transcript")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_least_recently_used_session_is_evicted():
    """Test that live sessions are capped and the least recently used goes first."""
    _use_registry(SessionRegistry(
        lambda streaming: EchoTransport(), InMemoryTurnRepository(), ChatSettings(max_sessions=2)
    ))
    try:
        async with _client() as client:
            first = (await _open(client))["session_id"]
            second = (await _open(client))["session_id"]
            assert (await client.get(f"/sessions/{first}")).status_code == 200
            third = (await _open(client))["session_id"]

            assert (await client.get(f"/sessions/{second}")).status_code == 404
            assert (await client.get(f"/sessions/{first}")).status_code == 200
            assert (await client.get(f"/sessions/{third}")).status_code == 200
    finally:
        app.dependency_overrides.clear()

@pytest.mark.asyncio
async def test_metrics_endpoint(registry):
    """Test that the metrics endpoint exposes chat counters."""
    async with _client() as client:
        session_id = (await _open(client))["session_id"]
        await client.post(f"/sessions/{session_id}/messages", json={"content": "hi"})

        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "chat_turns_total" in response.text
        assert "requests_total" in response.text
