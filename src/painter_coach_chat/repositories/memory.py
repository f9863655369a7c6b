"""In-memory repository implementation."""

import asyncio
from typing import Dict, List, Optional

import structlog

from ..domain.errors import ConversationNotFoundError, TurnNotFoundError
from ..domain.models import Conversation, Turn, utcnow
from .base import TurnRepository

logger = structlog.get_logger()


class InMemoryTurnRepository(TurnRepository):
    """Async-safe in-memory repository."""

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._turns: Dict[str, Turn] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized", backend="memory")

    async def create_conversation(self, user_id: str, title: str, first_turn: Turn) -> str:
        """Create a conversation record with its root turn."""
        async with self._lock:
            conversation = Conversation(user_id=user_id, title=title)
            root = first_turn.model_copy(
                update={"conversation_id": conversation.id, "is_root": True}
            )
            conversation.turns.append(root)
            conversation.updated_at = root.created_at
            self._conversations[conversation.id] = conversation
            self._turns[root.id] = root
            logger.info("conversation_created", conversation_id=conversation.id)
            return conversation.id

    async def add_turn(self, turn: Turn) -> Turn:
        """Append a turn to an existing conversation."""
        async with self._lock:
            conversation = self._conversations.get(turn.conversation_id or "")
            if not conversation:
                logger.error("conversation_not_found_for_turn", conversation_id=turn.conversation_id)
                raise ConversationNotFoundError(
                    f"Conversation {turn.conversation_id} not found",
                    context={"conversation_id": turn.conversation_id},
                )
            conversation.turns.append(turn)
            conversation.updated_at = turn.created_at
            self._turns[turn.id] = turn
            logger.info("turn_added", conversation_id=turn.conversation_id, turn_id=turn.id)
            return turn

    async def update_turn_response(self, turn_id: str, response: str) -> None:
        """Overwrite the stored assistant response of a turn."""
        async with self._lock:
            turn = self._turns.get(turn_id)
            if turn is None:
                raise TurnNotFoundError(f"Turn {turn_id} not found", context={"turn_id": turn_id})
            updated = turn.model_copy(update={"ai_response": response})
            self._turns[turn_id] = updated
            conversation = self._conversations[turn.conversation_id]
            conversation.turns = [updated if t.id == turn_id else t for t in conversation.turns]
            conversation.updated_at = utcnow()
            logger.info("turn_updated", turn_id=turn_id)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=conversation_id)
            return conversation

    async def list_turns(self, conversation_id: str, limit: int = 50) -> List[Turn]:
        """Get the most recent turns of a conversation, oldest first."""
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(
                    f"Conversation {conversation_id} not found",
                    context={"conversation_id": conversation_id},
                )
            turns = sorted(conversation.turns, key=lambda t: t.created_at)
            return turns[-limit:]

    async def list_conversations(
        self, user_id: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations with pagination, most recent first."""
        async with self._lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.user_id == user_id),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return conversations[offset : offset + limit]
