"""Immutable ordered message collection."""

from typing import Any, Iterable, Iterator, Optional, Tuple

from .errors import MessageNotFoundError
from .models import Message, MessageRole


class ConversationStore:
    """Ordered collection of messages. Every operation returns a new store."""

    __slots__ = ("_messages",)

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: Tuple[Message, ...] = tuple(messages)

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConversationStore):
            return NotImplemented
        return self._messages == other._messages

    def __repr__(self) -> str:
        return f"ConversationStore({len(self._messages)} messages)"

    def index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def get(self, message_id: str) -> Optional[Message]:
        index = self.index_of(message_id)
        return None if index is None else self._messages[index]

    def __contains__(self, message_id: object) -> bool:
        return isinstance(message_id, str) and self.index_of(message_id) is not None

    def active(self) -> Optional[Message]:
        """The message currently PENDING or STREAMING, if any."""
        for message in self._messages:
            if message.is_active:
                return message
        return None

    def last_user_index(self) -> Optional[int]:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == MessageRole.USER:
                return index
        return None

    def _require(self, message_id: str) -> int:
        index = self.index_of(message_id)
        if index is None:
            raise MessageNotFoundError(
                f"Message {message_id} not found", context={"message_id": message_id}
            )
        return index

    def append(self, message: Message) -> "ConversationStore":
        return ConversationStore(self._messages + (message,))

    def update_by_id(self, message_id: str, **patch: Any) -> "ConversationStore":
        index = self._require(message_id)
        updated = self._messages[index].model_copy(update=patch)
        return self.replace_at(index, updated)

    def remove_by_id(self, message_id: str) -> "ConversationStore":
        index = self._require(message_id)
        return ConversationStore(self._messages[:index] + self._messages[index + 1:])

    def replace_at(self, index: int, message: Message) -> "ConversationStore":
        if not 0 <= index < len(self._messages):
            raise IndexError(f"replace_at index {index} out of range")
        return ConversationStore(
            self._messages[:index] + (message,) + self._messages[index + 1:]
        )
