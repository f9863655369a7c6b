"""Domain models for the coach chat engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

USER_ID_PREFIX = "user-"
ASSISTANT_ID_PREFIX = "assistant-"
REVISION_SEPARATOR = ":"
WELCOME_MESSAGE_ID = "welcome"
WELCOME_TEXT = (
    "Hi there! I'm the PainterGrowth Coach, ready to help you grow your "
    "painting business. What can I help you with today?"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    return str(uuid4())


def user_message_id(turn_id: str) -> str:
    return f"{USER_ID_PREFIX}{turn_id}"


def assistant_message_id(turn_id: str, revision: Optional[str] = None) -> str:
    if revision:
        return f"{ASSISTANT_ID_PREFIX}{turn_id}{REVISION_SEPARATOR}{revision}"
    return f"{ASSISTANT_ID_PREFIX}{turn_id}"


def turn_id_from_message_id(message_id: str) -> Optional[str]:
    """Map a user/assistant message id back to its durable turn id."""
    for prefix in (ASSISTANT_ID_PREFIX, USER_ID_PREFIX):
        if message_id.startswith(prefix):
            turn_id = message_id[len(prefix):].split(REVISION_SEPARATOR, 1)[0]
            return turn_id or None
    return None


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Lifecycle state of a message."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (MessageStatus.PENDING, MessageStatus.STREAMING)


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


class ErrorInfo(BaseModel):
    """Annotation attached to a message that ended in ERROR."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    detail: str = ""


class Message(BaseModel):
    """Message model. Instances are never mutated; updates produce copies."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.COMPLETE
    created_at: datetime = Field(default_factory=utcnow)
    conversation_id: Optional[str] = None
    attachment_url: Optional[str] = None
    suggested_follow_ups: List[str] = Field(default_factory=list)
    error_info: Optional[ErrorInfo] = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_welcome(self) -> bool:
        return self.id == WELCOME_MESSAGE_ID


def welcome_message() -> Message:
    return Message(id=WELCOME_MESSAGE_ID, role=MessageRole.ASSISTANT, content=WELCOME_TEXT)


class Turn(BaseModel):
    """Durable row: one user message plus its paired assistant response."""

    id: str = Field(default_factory=new_turn_id)
    conversation_id: Optional[str] = None
    user_id: str
    user_message: str
    ai_response: str
    image_url: Optional[str] = None
    is_root: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    id: str = Field(default_factory=new_turn_id)
    user_id: str
    title: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    turns: List[Turn] = Field(default_factory=list)


class ContextEntry(BaseModel):
    role: MessageRole
    content: str


class TransportRequest(BaseModel):
    """Outbound exchange request. Serialized with the backend's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: str = Field(alias="userId")
    message: str
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    context_window: List[ContextEntry] = Field(default_factory=list, alias="context")
    think_mode: bool = Field(default=False, alias="isThinkMode")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TransportResult(BaseModel):
    """Resolved body of a single-response exchange."""

    content: str
    suggested_follow_ups: List[str] = Field(default_factory=list)
