"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import Conversation, Turn


class TurnRepository(ABC):
    """Abstract base class for durable conversation storage."""

    @abstractmethod
    async def create_conversation(self, user_id: str, title: str, first_turn: Turn) -> str:
        """Create a conversation record with its root turn. Returns the conversation id."""
        pass

    @abstractmethod
    async def add_turn(self, turn: Turn) -> Turn:
        """Append a turn to an existing conversation."""
        pass

    @abstractmethod
    async def update_turn_response(self, turn_id: str, response: str) -> None:
        """Overwrite the stored assistant response of a turn."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_turns(self, conversation_id: str, limit: int = 50) -> List[Turn]:
        """Get the most recent turns of a conversation, oldest first."""
        pass

    @abstractmethod
    async def list_conversations(
        self, user_id: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations with pagination, most recent first."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass
