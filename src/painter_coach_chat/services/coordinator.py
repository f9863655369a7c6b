"""Retry and regenerate: rebuild a prior turn's input and splice replacements."""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence
from uuid import uuid4

import structlog

from ..domain.errors import RegenerateRejected
from ..domain.models import (
    ContextEntry,
    Message,
    MessageRole,
    MessageStatus,
    assistant_message_id,
    new_turn_id,
    turn_id_from_message_id,
)
from .lifecycle import MessageLifecycleController

logger = structlog.get_logger()


def build_context_window(messages: Iterable[Message], turns: int = 5) -> List[ContextEntry]:
    """The last `turns` user/assistant pairs, without the welcome message or failed entries."""
    if turns <= 0:
        return []
    usable = [
        ContextEntry(role=m.role, content=m.content)
        for m in messages
        if not m.is_welcome and m.status == MessageStatus.COMPLETE
    ]
    return usable[-turns * 2:]


@dataclass
class RegeneratePlan:
    target_id: str
    target_index: int
    user_message: Message
    context_window: List[ContextEntry] = field(default_factory=list)


class RetryRegenerateCoordinator:
    """Rebuilds turns for retry and regenerate on top of the lifecycle controller."""

    def __init__(self, controller: MessageLifecycleController, context_window_turns: int = 5) -> None:
        self.controller = controller
        self.context_window_turns = context_window_turns

    def retry(self) -> str:
        """Drop the last user turn and hand back its text. Never resends."""
        dropped = self.controller.drop_last_turn()
        if dropped is None:
            logger.info("retry_nothing_to_retry")
            return ""
        logger.info("turn_retried", message_id=dropped.id)
        return dropped.content

    def plan_regenerate(self, assistant_message_id: str) -> RegeneratePlan:
        """Locate a target and its paired user message without mutating anything."""
        messages = self.controller.messages
        target_index = self.controller.store.index_of(assistant_message_id)
        if target_index is None:
            raise RegenerateRejected(
                "Invalid message to regenerate",
                context={"message_id": assistant_message_id},
            )
        target = messages[target_index]
        if target.role != MessageRole.ASSISTANT or target.is_welcome:
            raise RegenerateRejected(
                "Only assistant responses can be regenerated",
                context={"message_id": assistant_message_id},
            )

        user_index = target_index - 1
        while user_index >= 0 and messages[user_index].role != MessageRole.USER:
            user_index -= 1
        if user_index < 0:
            raise RegenerateRejected(
                "No user message found to regenerate from",
                context={"message_id": assistant_message_id},
            )

        return RegeneratePlan(
            target_id=assistant_message_id,
            target_index=target_index,
            user_message=messages[user_index],
            context_window=build_context_window(
                messages[:user_index], self.context_window_turns
            ),
        )

    def apply_regenerate(
        self,
        plan: RegeneratePlan,
        content: str,
        suggested_follow_ups: Sequence[str] = (),
        conversation_id: Optional[str] = None,
    ) -> Message:
        """Splice the regenerated response where the old one was."""
        turn_id = turn_id_from_message_id(plan.target_id) or new_turn_id()
        replacement = Message(
            id=assistant_message_id(turn_id, revision=uuid4().hex[:8]),
            role=MessageRole.ASSISTANT,
            content=content,
            status=MessageStatus.COMPLETE,
            conversation_id=conversation_id,
            suggested_follow_ups=list(suggested_follow_ups),
        )
        index = self.controller.splice_replacement(plan.target_id, replacement)
        logger.info(
            "message_regenerated",
            old_message_id=plan.target_id,
            new_message_id=replacement.id,
            index=index,
        )
        return replacement
