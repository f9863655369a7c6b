"""
FastAPI Application Module

HTTP surface of the AI-coach chat engine. The UI drives one chat session per
open chat window through these endpoints; each call returns the session's
current message list so the client can render it directly.

Key Features:
- Optimistic message lifecycle with streaming or single-response backends
- Regenerate, retry and cancel on the running conversation
- Structured logging and metrics
- CORS and OpenTelemetry support
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import get_settings
from ..domain.errors import ConversationNotFoundError, PersistenceError, RegenerateRejected, ValidationError
from ..domain.models import Conversation, Message
from ..logging import configure_logging
from ..services.chat import ChatSession, SessionState
from ..services.persistence import messages_from_turns
from .sessions import SessionRegistry, get_registry, shutdown_registry

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
TURNS = Counter("chat_turns_total", "Submitted chat turns", registry=CUSTOM_REGISTRY)
FAILED_TURNS = Counter("chat_turns_failed_total", "Chat turns that ended in error", registry=CUSTOM_REGISTRY)
REGENERATIONS = Counter("chat_regenerations_total", "Regenerated responses", registry=CUSTOM_REGISTRY)

logger = get_logger()


class SessionCreate(BaseModel):
    """Defines the structure for session creation requests"""
    user_id: str
    conversation_id: Optional[str] = None
    streaming: Optional[bool] = None


class MessageCreate(BaseModel):
    """Defines the structure for message submission requests"""
    content: str = ""
    attachment_url: Optional[str] = None
    think_mode: bool = False


class RetryResponse(BaseModel):
    input_text: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    get_registry()
    logger.info("application_startup_complete")

    yield

    await shutdown_registry()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="PainterGrowth Coach Chat API",
    description="Conversation streaming and reconciliation engine for the AI coach",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and failures"""
    REQUESTS.inc()
    logger.info("request_started", path=request.url.path)
    try:
        response = await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    if response.status_code >= 400:
        ERRORS.inc()
    return response


def get_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> ChatSession:
    """Resolves a live chat session or fails with 404"""
    session = registry.get(session_id)
    if session is None:
        logger.warning("session_not_found", session_id=session_id)
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.post("/sessions", response_model=SessionState)
async def create_session(
    body: SessionCreate,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionState:
    """Opens a chat session, optionally resuming a stored conversation"""
    session = registry.create(body.user_id, streaming=body.streaming)
    if body.conversation_id:
        await session.load_history(body.conversation_id)
    return session.snapshot()


@app.get("/sessions/{session_id}", response_model=SessionState)
async def get_session_state(session: ChatSession = Depends(get_session)) -> SessionState:
    """Returns the current message list of a session"""
    return session.snapshot()


@app.delete("/sessions/{session_id}", status_code=204)
async def close_session(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry),
) -> Response:
    """Closes a session, cancelling any running exchange"""
    if not registry.close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.post("/sessions/{session_id}/messages", response_model=SessionState)
async def submit_message(
    body: MessageCreate,
    session: ChatSession = Depends(get_session),
) -> SessionState:
    """
    Sends a user message and waits for the assistant response.
    A submission made while another is running cancels the earlier one.
    """
    try:
        message = await session.submit_message(
            body.content, attachment_url=body.attachment_url, think_mode=body.think_mode
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    TURNS.inc()
    if message is not None and message.error_info is not None:
        FAILED_TURNS.inc()
    return session.snapshot()


@app.post("/sessions/{session_id}/messages/{message_id}/regenerate", response_model=SessionState)
async def regenerate_message(
    message_id: str,
    session: ChatSession = Depends(get_session),
) -> SessionState:
    """Replaces an assistant response in place with a new one"""
    try:
        replacement = await session.regenerate(message_id)
    except RegenerateRejected as e:
        raise HTTPException(status_code=422, detail=e.message)
    if replacement is not None:
        REGENERATIONS.inc()
    return session.snapshot()


@app.post("/sessions/{session_id}/retry", response_model=RetryResponse)
async def retry_message(session: ChatSession = Depends(get_session)) -> RetryResponse:
    """Removes the last turn and returns its text for the input field"""
    return RetryResponse(input_text=session.retry())


@app.get("/sessions/{session_id}/transcript", response_class=PlainTextResponse)
async def get_transcript(session: ChatSession = Depends(get_session)) -> str:
    """Returns the conversation as plain text for copying"""
    return session.transcript()


@app.post("/sessions/{session_id}/cancel", response_model=SessionState)
async def cancel_message(session: ChatSession = Depends(get_session)) -> SessionState:
    """Cancels the running exchange, if any"""
    session.cancel_active()
    return session.snapshot()


@app.get("/users/{user_id}/conversations", response_model=List[Conversation])
async def list_conversations(
    user_id: str,
    limit: int = 100,
    offset: int = 0,
    registry: SessionRegistry = Depends(get_registry),
) -> List[Conversation]:
    """Gets a user's stored conversations, most recent first"""
    try:
        return await registry.repository.list_conversations(user_id, limit=limit, offset=offset)
    except PersistenceError as e:
        logger.error("list_conversations_error", user_id=user_id, error=e.message)
        raise HTTPException(status_code=503, detail="Conversation storage unavailable")


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def get_conversation_messages(
    conversation_id: str,
    limit: int = 50,
    registry: SessionRegistry = Depends(get_registry),
) -> List[Message]:
    """Gets the stored messages of a conversation, oldest first"""
    try:
        turns = await registry.repository.list_turns(conversation_id, limit=limit)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except PersistenceError as e:
        logger.error("conversation_history_error", conversation_id=conversation_id, error=e.message)
        raise HTTPException(status_code=503, detail="Conversation storage unavailable")
    return messages_from_turns(turns, conversation_id)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
