"""In-process fakes shared by the test suite."""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from painter_coach_chat.domain.errors import PersistenceError, TransportError
from painter_coach_chat.domain.models import Conversation, TransportRequest, Turn
from painter_coach_chat.repositories.base import TurnRepository
from painter_coach_chat.repositories.memory import InMemoryTurnRepository
from painter_coach_chat.services.cancellation import CancellationToken
from painter_coach_chat.services.transport import ExchangeHandler, TransportAdapter

Script = Callable[[TransportRequest, CancellationToken, ExchangeHandler], Awaitable[None]]


def reply(content: str, follow_ups: Sequence[str] = ()) -> Script:
    async def script(request, token, handler):
        handler.on_complete(content, list(follow_ups))
    return script


def stream(*chunks: str) -> Script:
    async def script(request, token, handler):
        for chunk in chunks:
            if token.cancelled:
                return
            handler.on_chunk(chunk)
            await asyncio.sleep(0)
        handler.on_complete("".join(chunks), [])
    return script


def fail(message: str = "Backend error (500): boom", after: Sequence[str] = ()) -> Script:
    async def script(request, token, handler):
        for chunk in after:
            handler.on_chunk(chunk)
        handler.on_error(TransportError(message, status_code=500), partial=bool(after))
    return script


def gated(gate: asyncio.Event, content: str) -> Script:
    """Waits for the gate, then completes even if the token fired meanwhile."""
    async def script(request, token, handler):
        await gate.wait()
        handler.on_complete(content, [])
    return script


def crash(error: Exception) -> Script:
    async def script(request, token, handler):
        raise error
    return script


class ScriptedTransport(TransportAdapter):
    """Plays back one script per exchange, in order."""

    def __init__(self, *scripts: Script, streaming: bool = False) -> None:
        self.scripts: List[Script] = list(scripts)
        self.requests: List[TransportRequest] = []
        self.streaming = streaming

    def add(self, *scripts: Script) -> None:
        self.scripts.extend(scripts)

    async def exchange(self, request, token, handler) -> None:
        self.requests.append(request)
        script = self.scripts.pop(0)
        await script(request, token, handler)


class EchoTransport(TransportAdapter):
    """Answers every message with an echo of it."""

    def __init__(self) -> None:
        self.requests: List[TransportRequest] = []

    async def exchange(self, request, token, handler) -> None:
        self.requests.append(request)
        handler.on_complete(f"Echo: {request.message}", ["Tell me more"])


class RecordingHandler(ExchangeHandler):
    def __init__(self, on_first_chunk: Optional[Callable[[], None]] = None) -> None:
        self.chunks: List[str] = []
        self.completed: Optional[Tuple[str, List[str]]] = None
        self.errors: List[Tuple[TransportError, bool]] = []
        self._on_first_chunk = on_first_chunk

    def on_chunk(self, delta: str) -> None:
        self.chunks.append(delta)
        if self._on_first_chunk is not None and len(self.chunks) == 1:
            self._on_first_chunk()

    def on_complete(self, content: str, suggested_follow_ups: Sequence[str]) -> None:
        self.completed = (content, list(suggested_follow_ups))

    def on_error(self, error: TransportError, partial: bool) -> None:
        self.errors.append((error, partial))

    @property
    def terminal_calls(self) -> int:
        return int(self.completed is not None) + len(self.errors)


class FailingRepository(TurnRepository):
    """Every call fails as an unreachable database would."""

    async def create_conversation(self, user_id: str, title: str, first_turn: Turn) -> str:
        raise PersistenceError("Storage unreachable")

    async def add_turn(self, turn: Turn) -> Turn:
        raise PersistenceError("Storage unreachable")

    async def update_turn_response(self, turn_id: str, response: str) -> None:
        raise PersistenceError("Storage unreachable")

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        raise PersistenceError("Storage unreachable")

    async def list_turns(self, conversation_id: str, limit: int = 50) -> List[Turn]:
        raise PersistenceError("Storage unreachable")

    async def list_conversations(self, user_id: str, limit: int = 100, offset: int = 0) -> List[Conversation]:
        raise PersistenceError("Storage unreachable")


class GatedRepository(InMemoryTurnRepository):
    """Holds conversation creation until the gate opens."""

    def __init__(self, gate: asyncio.Event) -> None:
        super().__init__()
        self.gate = gate

    async def create_conversation(self, user_id: str, title: str, first_turn: Turn) -> str:
        await self.gate.wait()
        return await super().create_conversation(user_id, title, first_turn)
