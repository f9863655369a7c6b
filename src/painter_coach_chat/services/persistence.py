"""
Persistence gateway.

Writes completed turns to the repository. Storage is best-effort: failures
are logged and swallowed, and the in-memory message list stays authoritative
for the running session.
"""

from typing import Iterable, List, Optional

import structlog

from ..domain.errors import PersistenceError
from ..domain.models import (
    Message,
    MessageRole,
    MessageStatus,
    Turn,
    assistant_message_id,
    new_turn_id,
    turn_id_from_message_id,
    user_message_id,
)
from ..repositories.base import TurnRepository

logger = structlog.get_logger()

TITLE_ELLIPSIS = "..."


def derive_title(first_message: str, max_length: int = 30) -> str:
    """Conversation title from the first user message."""
    text = first_message.strip()
    if len(text) <= max_length:
        return text
    return text[:max_length] + TITLE_ELLIPSIS


def messages_from_turns(turns: Iterable[Turn], conversation_id: str) -> List[Message]:
    """Expand stored turns into user/assistant message pairs, oldest first."""
    messages: List[Message] = []
    for turn in turns:
        messages.append(Message(
            id=user_message_id(turn.id),
            role=MessageRole.USER,
            content=turn.user_message,
            status=MessageStatus.COMPLETE,
            created_at=turn.created_at,
            conversation_id=conversation_id,
            attachment_url=turn.image_url,
        ))
        messages.append(Message(
            id=assistant_message_id(turn.id),
            role=MessageRole.ASSISTANT,
            content=turn.ai_response,
            status=MessageStatus.COMPLETE,
            created_at=turn.created_at,
            conversation_id=conversation_id,
        ))
    return messages


class PersistenceGateway:
    """Best-effort durable storage of chat turns."""

    def __init__(self, repository: TurnRepository, user_id: str, title_max_length: int = 30) -> None:
        self.repository = repository
        self.user_id = user_id
        self.title_max_length = title_max_length

    async def record_turn(
        self,
        conversation_id: Optional[str],
        user_message: Message,
        assistant_message: Message,
        image_url: Optional[str] = None,
    ) -> Optional[str]:
        """Store a completed turn. Returns the conversation id to use from now on."""
        turn = Turn(
            id=turn_id_from_message_id(assistant_message.id) or new_turn_id(),
            conversation_id=conversation_id,
            user_id=self.user_id,
            user_message=user_message.content,
            ai_response=assistant_message.content,
            image_url=image_url,
        )

        try:
            if conversation_id is None:
                title = derive_title(user_message.content, self.title_max_length)
                conversation_id = await self.repository.create_conversation(
                    self.user_id, title, turn
                )
                logger.info("conversation_started", conversation_id=conversation_id, title=title)
            else:
                await self.repository.add_turn(turn)
            logger.info("turn_persisted", conversation_id=conversation_id, turn_id=turn.id)
        except PersistenceError as e:
            logger.error(
                "turn_persist_failed",
                conversation_id=conversation_id,
                turn_id=turn.id,
                error=e.message,
            )
        return conversation_id

    async def update_turn(self, assistant_message_id: str, new_response: str) -> bool:
        """Overwrite the stored response of a regenerated turn in place."""
        turn_id = turn_id_from_message_id(assistant_message_id)
        if turn_id is None:
            logger.warning("turn_id_unresolvable", message_id=assistant_message_id)
            return False
        try:
            await self.repository.update_turn_response(turn_id, new_response)
        except PersistenceError as e:
            logger.error("turn_update_failed", turn_id=turn_id, error=e.message)
            return False
        return True

    async def fetch_history(self, conversation_id: str, limit: int = 50) -> List[Message]:
        """Rebuild the message pairs of a stored conversation."""
        try:
            turns = await self.repository.list_turns(conversation_id, limit=limit)
        except PersistenceError as e:
            logger.error("history_fetch_failed", conversation_id=conversation_id, error=e.message)
            return []

        messages = messages_from_turns(turns, conversation_id)
        logger.info("history_loaded", conversation_id=conversation_id, turns=len(turns))
        return messages
