"""
Chat session orchestrator.

Entry point used by the surrounding UI: submit_message, regenerate, retry and
cancel_active. A session owns one message list and one cancellation scope;
starting any exchange cancels the one still running.
"""

import asyncio
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

import structlog
from pydantic import BaseModel

from ..domain.errors import RegenerateRejected, TransportError, ValidationError
from ..domain.models import Message, MessageRole, TransportRequest, welcome_message
from .attachments import ImageUpload, ImageUploader, validate_attachment_url
from .cancellation import CancellationManager, CancellationToken
from .coordinator import RetryRegenerateCoordinator, build_context_window
from .lifecycle import MessageLifecycleController
from .persistence import PersistenceGateway
from .transport import ExchangeHandler, TransportAdapter

logger = structlog.get_logger()


class SessionState(BaseModel):
    """Client-visible snapshot of a session."""

    session_id: str
    conversation_id: Optional[str] = None
    messages: List[Message]
    input_text: str = ""
    error: Optional[str] = None
    is_busy: bool = False


class _PlaceholderHandler(ExchangeHandler):
    """Routes exchange callbacks into the lifecycle controller for one message."""

    def __init__(self, controller: MessageLifecycleController, message_id: str) -> None:
        self.controller = controller
        self.message_id = message_id
        self.result: Optional[Message] = None
        self.error: Optional[TransportError] = None

    def on_chunk(self, delta: str) -> None:
        self.controller.on_chunk(self.message_id, delta)

    def on_complete(self, content: str, suggested_follow_ups: Sequence[str]) -> None:
        self.result = self.controller.on_complete(self.message_id, content, suggested_follow_ups)

    def on_error(self, error: TransportError, partial: bool) -> None:
        self.error = error
        self.controller.on_error(self.message_id, error.message, preserve_partial=partial)


class _BufferedHandler(ExchangeHandler):
    """Collects an exchange without touching the store."""

    def __init__(self) -> None:
        self.parts: List[str] = []
        self.result: Optional[Tuple[str, List[str]]] = None
        self.error: Optional[TransportError] = None

    def on_chunk(self, delta: str) -> None:
        self.parts.append(delta)

    def on_complete(self, content: str, suggested_follow_ups: Sequence[str]) -> None:
        self.result = (content, list(suggested_follow_ups))

    def on_error(self, error: TransportError, partial: bool) -> None:
        self.error = error


class ChatSession:
    """One user's chat, from optimistic append to durable write."""

    def __init__(
        self,
        user_id: str,
        transport: TransportAdapter,
        persistence: Optional[PersistenceGateway] = None,
        *,
        session_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        context_window_turns: int = 5,
        history_limit: int = 50,
        include_welcome: bool = False,
        uploader: Optional[ImageUploader] = None,
    ) -> None:
        self.id = session_id or str(uuid4())
        self.user_id = user_id
        self.transport = transport
        self.persistence = persistence
        self.uploader = uploader
        self.conversation_id = conversation_id
        self.context_window_turns = context_window_turns
        self.history_limit = history_limit
        self.include_welcome = include_welcome

        self.controller = MessageLifecycleController()
        self.coordinator = RetryRegenerateCoordinator(self.controller, context_window_turns)
        self.cancellation = CancellationManager()
        self.input_text = ""
        self.error: Optional[str] = None
        self._active_message_id: Optional[str] = None
        self._persist_lock = asyncio.Lock()

        if include_welcome and conversation_id is None:
            self.controller.reset([welcome_message()])

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.controller.messages

    @property
    def is_busy(self) -> bool:
        return self.cancellation.active(self.id) is not None

    def snapshot(self) -> SessionState:
        return SessionState(
            session_id=self.id,
            conversation_id=self.conversation_id,
            messages=list(self.controller.messages),
            input_text=self.input_text,
            error=self.error,
            is_busy=self.is_busy,
        )

    def _supersede_active(self) -> None:
        if self._active_message_id is not None:
            self.controller.on_cancel(self._active_message_id)
            self._active_message_id = None

    def _validate(self, text: str, attachment_url: Optional[str]) -> None:
        try:
            if not text and not attachment_url:
                raise ValidationError("Message cannot be empty when no image is provided")
            if attachment_url:
                validate_attachment_url(attachment_url)
        except ValidationError as e:
            self.error = e.message
            logger.info("submission_rejected", reason=e.message)
            raise

    async def submit_message(
        self,
        text: str,
        attachment_url: Optional[str] = None,
        think_mode: bool = False,
    ) -> Optional[Message]:
        """Send a user message and reconcile the assistant response into the store.

        Returns the assistant message as it stands once the exchange ends.
        Raises ValidationError, before touching the store, for empty input.
        """
        text = text.strip()
        self._validate(text, attachment_url)

        with structlog.contextvars.bound_contextvars(session_id=self.id):
            context = build_context_window(self.controller.messages, self.context_window_turns)
            self._supersede_active()
            user_message, placeholder = self.controller.create_user_turn(
                text, attachment_url, think_mode, self.conversation_id
            )
            token = self.cancellation.issue(self.id)
            self.error = None
            self.input_text = ""
            self._active_message_id = placeholder.id
            logger.info(
                "message_submitted",
                message_id=placeholder.id,
                has_image=bool(attachment_url),
                think_mode=think_mode,
                streaming=self.transport.streaming,
            )

            request = TransportRequest(
                conversation_id=self.conversation_id,
                user_id=self.user_id,
                message=text,
                image_url=attachment_url,
                context_window=context,
                think_mode=think_mode,
            )
            handler = _PlaceholderHandler(self.controller, placeholder.id)
            try:
                await self.transport.exchange(request, token, handler)
            except asyncio.CancelledError:
                self.controller.on_cancel(placeholder.id)
                raise
            except Exception as e:
                logger.exception("exchange_crashed", message_id=placeholder.id)
                self.controller.on_error(placeholder.id, str(e) or type(e).__name__)
                self.error = "Failed to generate a response"
                raise
            finally:
                self.cancellation.release(self.id, token)
                if self._active_message_id == placeholder.id:
                    self._active_message_id = None

            if handler.error is not None:
                self.error = f"Failed to generate a response: {handler.error.message}"
            elif handler.result is not None:
                await self._persist_turn(user_message, handler.result, attachment_url)
            elif not token.cancelled:
                self.controller.on_error(placeholder.id, "Exchange ended without a result")
                self.error = "Failed to generate a response"

            return self.controller.store.get(placeholder.id)

    async def _persist_turn(
        self, user_message: Message, assistant_message: Message, image_url: Optional[str]
    ) -> None:
        if self.persistence is None:
            return
        # One writer at a time: later turns wait for the first to create the conversation.
        async with self._persist_lock:
            conversation_id = await self.persistence.record_turn(
                self.conversation_id, user_message, assistant_message, image_url
            )
            if conversation_id and self.conversation_id is None:
                self.conversation_id = conversation_id
                self.controller.assign_conversation(conversation_id)

    async def regenerate(self, assistant_message_id: str) -> Optional[Message]:
        """Resend the paired user message and splice the new response in place.

        Raises RegenerateRejected without mutating anything for an invalid
        target. Returns None, leaving the old response untouched, on failure.
        """
        with structlog.contextvars.bound_contextvars(session_id=self.id):
            try:
                plan = self.coordinator.plan_regenerate(assistant_message_id)
            except RegenerateRejected as e:
                self.error = e.message
                logger.info("regenerate_rejected", message_id=assistant_message_id, reason=e.message)
                raise

            self._supersede_active()
            token = self.cancellation.issue(self.id)
            self.error = None
            request = TransportRequest(
                conversation_id=self.conversation_id,
                user_id=self.user_id,
                message=plan.user_message.content,
                image_url=plan.user_message.attachment_url,
                context_window=plan.context_window,
            )
            handler = _BufferedHandler()
            try:
                await self.transport.exchange(request, token, handler)
            finally:
                self.cancellation.release(self.id, token)

            if token.cancelled:
                logger.info("regenerate_cancelled", message_id=assistant_message_id)
                return None
            if handler.result is None:
                reason = handler.error.message if handler.error else "no result"
                self.error = f"Failed to regenerate response: {reason}"
                logger.warning("regenerate_failed", message_id=assistant_message_id, error=reason)
                return None

            content, follow_ups = handler.result
            replacement = self.coordinator.apply_regenerate(
                plan, content, follow_ups, self.conversation_id
            )
            if self.persistence is not None:
                async with self._persist_lock:
                    if self.conversation_id is not None:
                        await self.persistence.update_turn(plan.target_id, content)
            return replacement

    def retry(self) -> str:
        """Drop the last turn and put its text back in the input. Does not resend."""
        self.cancel_active()
        text = self.coordinator.retry()
        if text:
            self.input_text = text
            self.error = None
        return text

    def cancel_active(self) -> bool:
        """Cancel the running exchange, if any. Safe to call repeatedly."""
        fired = self.cancellation.cancel(self.id)
        cancelled = False
        if self._active_message_id is not None:
            cancelled = self.controller.on_cancel(self._active_message_id)
            self._active_message_id = None
        return fired or cancelled

    async def attach_image(self, image: ImageUpload) -> Optional[str]:
        """Upload an image through the attachment collaborator and return its URL."""
        if self.uploader is None:
            raise ValidationError("Image uploads are not configured")
        url = await self.uploader.upload_image(image)
        if url is None:
            self.error = "Failed to upload image"
            logger.warning("image_upload_failed", filename=image.filename)
            return None
        return validate_attachment_url(url)

    async def load_history(self, conversation_id: str) -> Tuple[Message, ...]:
        """Replace the message list with a stored conversation."""
        self.cancel_active()
        messages: List[Message] = []
        if self.persistence is not None:
            messages = await self.persistence.fetch_history(conversation_id, self.history_limit)
        if not messages and self.include_welcome:
            messages = [welcome_message()]
        self.controller.reset(messages)
        self.conversation_id = conversation_id
        self.error = None
        return self.controller.messages

    def new_conversation(self) -> None:
        """Start over with an empty (or welcome-only) message list."""
        self.cancel_active()
        self.controller.reset([welcome_message()] if self.include_welcome else [])
        self.conversation_id = None
        self.input_text = ""
        self.error = None

    def transcript(self) -> str:
        """Plain-text copy of the conversation, without the welcome message."""
        return "\n\n".join(
            f"{'You' if m.role == MessageRole.USER else 'AI Coach'}: {m.content}"
            for m in self.controller.messages
            if not m.is_welcome
        )
