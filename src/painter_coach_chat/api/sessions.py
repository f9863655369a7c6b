"""Session registry: builds chat sessions wired to the configured collaborators."""

from collections import OrderedDict
from typing import Callable, Optional

import httpx
import structlog

from ..config import ChatSettings, get_settings
from ..repositories.base import TurnRepository
from ..repositories.memory import InMemoryTurnRepository
from ..repositories.rest import PostgrestTurnRepository
from ..services.chat import ChatSession
from ..services.persistence import PersistenceGateway
from ..services.transport import NonStreamingTransport, StreamingTransport, TransportAdapter

logger = structlog.get_logger()

TransportFactory = Callable[[bool], TransportAdapter]


class SessionRegistry:
    """Holds live chat sessions by id, evicting the least recently used past the cap."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        repository: TurnRepository,
        settings: ChatSettings,
    ) -> None:
        self.transport_factory = transport_factory
        self.repository = repository
        self.settings = settings
        self._sessions: "OrderedDict[str, ChatSession]" = OrderedDict()

    def create(self, user_id: str, streaming: Optional[bool] = None) -> ChatSession:
        mode = self.settings.streaming if streaming is None else streaming
        session = ChatSession(
            user_id=user_id,
            transport=self.transport_factory(mode),
            persistence=PersistenceGateway(
                self.repository, user_id, title_max_length=self.settings.title_max_length
            ),
            context_window_turns=self.settings.context_window_turns,
            history_limit=self.settings.history_limit,
            include_welcome=self.settings.include_welcome,
        )
        self._sessions[session.id] = session
        logger.info("session_created", session_id=session.id, streaming=mode)
        while len(self._sessions) > self.settings.max_sessions:
            evicted = next(iter(self._sessions))
            self.close_session(evicted)
            logger.info("session_evicted", session_id=evicted)
        return session

    def get(self, session_id: str) -> Optional[ChatSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel_active()
        return True

    async def close(self) -> None:
        for session_id in list(self._sessions):
            self.close_session(session_id)
        await self.repository.close()


def build_registry(settings: ChatSettings, client: httpx.AsyncClient) -> SessionRegistry:
    """Registry backed by HTTP transports sharing one client."""
    headers = settings.auth_headers()

    def transport_factory(streaming: bool) -> TransportAdapter:
        if streaming:
            return StreamingTransport(client, settings.stream_url, headers=headers)
        return NonStreamingTransport(client, settings.completion_url, headers=headers)

    repository: TurnRepository
    if settings.persistence_url:
        repository = PostgrestTurnRepository(
            settings.persistence_url,
            api_key=settings.persistence_api_key.get_secret_value(),
            table=settings.persistence_table,
        )
    else:
        repository = InMemoryTurnRepository()
    return SessionRegistry(transport_factory, repository, settings)


_registry: Optional[SessionRegistry] = None
_client: Optional[httpx.AsyncClient] = None


def get_registry() -> SessionRegistry:
    """Get the global session registry instance."""
    global _registry, _client
    if _registry is None:
        settings = get_settings()
        _client = httpx.AsyncClient(timeout=settings.request_timeout)
        _registry = build_registry(settings, _client)
    return _registry


async def shutdown_registry() -> None:
    global _registry, _client
    if _registry is not None:
        await _registry.close()
        _registry = None
    if _client is not None:
        await _client.aclose()
        _client = None
