"""
Message lifecycle controller.

The only writer of the ConversationStore. Each public method is a synchronous
reducer step: it reads the current store, derives a new one and publishes it
to listeners. Nothing here awaits, so on the event loop every step is atomic
with respect to chunk, completion and cancellation callbacks.
"""

from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from ..domain.errors import ChatError
from ..domain.models import (
    ErrorInfo,
    ErrorKind,
    Message,
    MessageRole,
    MessageStatus,
    assistant_message_id,
    new_turn_id,
    user_message_id,
)
from ..domain.store import ConversationStore

logger = structlog.get_logger()

PLACEHOLDER_MARKER = "..."
THINKING_MARKER = "Your AI Coach is thinking..."
INTERRUPTED_ANNOTATION = "\n\n[Stream interrupted]"
TRANSPORT_ERROR_TEXT = "I'm sorry, I couldn't process your request. Please try again."
CANCELLED_TEXT = "Response cancelled."

Listener = Callable[[ConversationStore], None]


class MessageLifecycleController:
    """Drives messages through PENDING -> STREAMING -> COMPLETE | ERROR."""

    def __init__(self, store: Optional[ConversationStore] = None) -> None:
        self._store = store or ConversationStore()
        self._sealed: Set[str] = set()
        self._listeners: List[Listener] = []

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._store.messages

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a snapshot listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def is_sealed(self, message_id: str) -> bool:
        return message_id in self._sealed

    def _commit(self, store: ConversationStore) -> None:
        self._store = store
        for listener in list(self._listeners):
            listener(store)

    def create_user_turn(
        self,
        text: str,
        attachment_url: Optional[str] = None,
        think_mode: bool = False,
        conversation_id: Optional[str] = None,
    ) -> Tuple[Message, Message]:
        """Append the user message and its PENDING assistant placeholder."""
        active = self._store.active()
        if active is not None:
            raise ChatError(
                "Another response is still in progress",
                context={"active_message_id": active.id},
            )

        turn_id = new_turn_id()
        user_message = Message(
            id=user_message_id(turn_id),
            role=MessageRole.USER,
            content=text,
            status=MessageStatus.COMPLETE,
            conversation_id=conversation_id,
            attachment_url=attachment_url,
        )
        placeholder = Message(
            id=assistant_message_id(turn_id),
            role=MessageRole.ASSISTANT,
            content=THINKING_MARKER if think_mode else PLACEHOLDER_MARKER,
            status=MessageStatus.PENDING,
            conversation_id=conversation_id,
        )
        self._commit(self._store.append(user_message).append(placeholder))
        logger.debug("turn_created", message_id=placeholder.id, think_mode=think_mode)
        return user_message, placeholder

    def on_chunk(self, message_id: str, delta: str) -> bool:
        """Append a streamed delta. Returns False if the delta was discarded."""
        if message_id in self._sealed:
            logger.debug("chunk_discarded", message_id=message_id)
            return False

        message = self._store.get(message_id)
        if message is None:
            logger.warning("chunk_target_missing", message_id=message_id)
            self._commit(self._store.append(Message(
                id=message_id,
                role=MessageRole.ASSISTANT,
                content=delta,
                status=MessageStatus.STREAMING,
            )))
            return True

        content = message.content + delta if message.status == MessageStatus.STREAMING else delta
        self._commit(self._store.update_by_id(
            message_id, content=content, status=MessageStatus.STREAMING
        ))
        return True

    def on_complete(
        self,
        message_id: str,
        final_content: str,
        suggested_follow_ups: Sequence[str] = (),
    ) -> Optional[Message]:
        """Mark a message COMPLETE with its final content and extras."""
        if message_id in self._sealed:
            logger.debug("completion_discarded", message_id=message_id)
            return None
        self._sealed.add(message_id)

        patch = dict(
            content=final_content,
            status=MessageStatus.COMPLETE,
            suggested_follow_ups=list(suggested_follow_ups),
            error_info=None,
        )
        if message_id not in self._store:
            logger.warning("completion_target_missing", message_id=message_id)
            self._commit(self._store.append(
                Message(id=message_id, role=MessageRole.ASSISTANT, **patch)
            ))
        else:
            self._commit(self._store.update_by_id(message_id, **patch))
        return self._store.get(message_id)

    def on_error(
        self,
        message_id: str,
        detail: str,
        preserve_partial: bool = False,
    ) -> Optional[Message]:
        """Mark a message ERROR. Keeps streamed content when asked to."""
        if message_id in self._sealed:
            return None
        self._sealed.add(message_id)

        message = self._store.get(message_id)
        keep = (
            preserve_partial
            and message is not None
            and message.status == MessageStatus.STREAMING
            and bool(message.content)
        )
        if keep:
            patch = dict(
                content=message.content + INTERRUPTED_ANNOTATION,
                status=MessageStatus.ERROR,
                error_info=ErrorInfo(kind=ErrorKind.INTERRUPTED, detail=detail),
            )
        else:
            patch = dict(
                content=TRANSPORT_ERROR_TEXT,
                status=MessageStatus.ERROR,
                error_info=ErrorInfo(kind=ErrorKind.TRANSPORT, detail=detail),
            )

        if message is None:
            self._commit(self._store.append(
                Message(id=message_id, role=MessageRole.ASSISTANT, **patch)
            ))
        else:
            self._commit(self._store.update_by_id(message_id, **patch))
        logger.info("message_failed", message_id=message_id, kind=patch["error_info"].kind.value)
        return self._store.get(message_id)

    def on_cancel(self, message_id: str) -> bool:
        """Seal a message and discard its partial content. Idempotent."""
        already_sealed = message_id in self._sealed
        self._sealed.add(message_id)
        message = self._store.get(message_id)
        if already_sealed or message is None or not message.is_active:
            return False
        self._commit(self._store.update_by_id(
            message_id,
            content=CANCELLED_TEXT,
            status=MessageStatus.ERROR,
            error_info=ErrorInfo(kind=ErrorKind.CANCELLED),
        ))
        logger.info("message_cancelled", message_id=message_id)
        return True

    def splice_replacement(self, old_id: str, message: Message) -> int:
        """Replace a message wholesale at its current index. Returns the index."""
        self._sealed.add(old_id)
        index = self._store.index_of(old_id)
        if index is None:
            logger.warning("replacement_target_missing", message_id=old_id)
            self._commit(self._store.append(message))
            return len(self._store) - 1
        self._commit(self._store.replace_at(index, message))
        return index

    def drop_last_turn(self) -> Optional[Message]:
        """Remove the most recent user message and any assistant messages after it."""
        index = self._store.last_user_index()
        if index is None:
            return None
        user_message = self._store[index]
        store = self._store
        for message in self._store.messages[index:]:
            if message.role == MessageRole.ASSISTANT or message.id == user_message.id:
                self._sealed.add(message.id)
                store = store.remove_by_id(message.id)
        self._commit(store)
        return user_message

    def assign_conversation(self, conversation_id: str) -> None:
        """Stamp a newly created conversation id on messages that lack one."""
        store = self._store
        for message in self._store:
            if message.conversation_id is None and not message.is_welcome:
                store = store.update_by_id(message.id, conversation_id=conversation_id)
        if store is not self._store:
            self._commit(store)

    def reset(self, messages: Iterable[Message] = ()) -> None:
        """Replace the whole message list, e.g. on history load or a new chat.

        In-flight ids are not sealed: their completion is re-appended.
        """
        self._commit(ConversationStore(messages))
