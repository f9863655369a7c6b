"""
Transport adapters for the language-model backend.

Two interchangeable exchange modes share one callback contract:

- NonStreamingTransport: one POST, one JSON body, one on_complete.
- StreamingTransport: a long-lived POST whose body is newline-delimited
  records ("data: {...}" lines ending with "data: [DONE]"), delivered to
  on_chunk as they arrive. Each read races the cancellation token, so a
  stalled stream is abandoned as soon as the token fires.

Each adapter fires exactly one terminal callback (on_complete or on_error)
unless the cancellation token fired first, in which case it fires none. The
HTTP response is always closed before exchange() returns.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog

from ..domain.errors import CancellationSignal, ParseError, TransportError
from ..domain.models import TransportRequest, TransportResult
from .cancellation import CancellationToken

logger = structlog.get_logger()

RECORD_PREFIX = "data:"
DONE_LITERAL = "[DONE]"


class ExchangeHandler(ABC):
    """Receives the outcome of one exchange."""

    @abstractmethod
    def on_chunk(self, delta: str) -> None:
        """A streamed content delta arrived."""

    @abstractmethod
    def on_complete(self, content: str, suggested_follow_ups: Sequence[str]) -> None:
        """The exchange finished with its full content."""

    @abstractmethod
    def on_error(self, error: TransportError, partial: bool) -> None:
        """The exchange failed. `partial` is True when content had been delivered."""


class TransportAdapter(ABC):
    """Abstract backend exchange."""

    streaming: bool = False

    @abstractmethod
    async def exchange(
        self,
        request: TransportRequest,
        token: CancellationToken,
        handler: ExchangeHandler,
    ) -> None:
        """Run one exchange, reporting through handler."""


class RecordKind(str, Enum):
    SKIP = "skip"
    DONE = "done"
    DELTA = "delta"


@dataclass(frozen=True)
class StreamRecord:
    kind: RecordKind
    content: str = ""


def parse_record(line: str) -> StreamRecord:
    """Parse one newline-delimited stream record.

    Raises ParseError when the payload is not JSON or not shaped like a
    chat-completion delta.
    """
    text = line.strip()
    if not text:
        return StreamRecord(RecordKind.SKIP)
    if text.startswith(RECORD_PREFIX):
        text = text[len(RECORD_PREFIX):].strip()
        if not text:
            return StreamRecord(RecordKind.SKIP)
    if text == DONE_LITERAL:
        return StreamRecord(RecordKind.DONE)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError("Malformed stream record", context={"record": text[:200]}, cause=e)

    try:
        delta = payload["choices"][0].get("delta") or {}
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise ParseError("Unexpected stream record shape", context={"record": text[:200]}, cause=e)
    if not isinstance(delta, dict):
        raise ParseError("Unexpected stream record shape", context={"record": text[:200]})

    content = delta.get("content")
    if not content:
        return StreamRecord(RecordKind.SKIP)
    if not isinstance(content, str):
        raise ParseError("Delta content is not a string", context={"record": text[:200]})
    return StreamRecord(RecordKind.DELTA, content)


async def _read_line(lines: AsyncIterator[str]) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def next_line(lines: AsyncIterator[str], token: CancellationToken) -> Optional[str]:
    """Next line of a stream, or None once it ends or the token fires first."""
    if token.cancelled:
        return None
    read = asyncio.ensure_future(_read_line(lines))
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read.cancel()
        raise
    finally:
        cancelled.cancel()
    if not read.done():
        read.cancel()
        await asyncio.wait({read})
        return None
    return read.result()


def _follow_ups(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


async def _error_detail(response: httpx.Response) -> str:
    try:
        body = await response.aread()
        return body.decode("utf-8", errors="replace")[:500] or "No error details available"
    except httpx.HTTPError:
        return "No error details available"


class NonStreamingTransport(TransportAdapter):
    """Single request/response exchange."""

    streaming = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        retries: int = 1,
    ) -> None:
        self.client = client
        self.url = url
        self.headers = headers or {}
        self.retries = retries

    async def _fetch(self, request: TransportRequest, token: CancellationToken) -> TransportResult:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                response = await self.client.post(
                    self.url, json=request.to_payload(), headers=self.headers
                )
            except httpx.HTTPError as e:
                logger.warning("completion_request_failed", attempt=attempt, error=str(e))
                if attempt < attempts:
                    continue
                raise TransportError(f"Network error: {e}", cause=e)

            if response.status_code >= 500 and attempt < attempts:
                logger.warning("completion_server_error", attempt=attempt, status=response.status_code)
                continue
            if not response.is_success:
                raise TransportError(
                    f"Backend error ({response.status_code}): {response.text[:500]}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise TransportError("Backend returned invalid JSON", cause=e)
            content = data.get("content", data.get("response")) if isinstance(data, dict) else None
            if not isinstance(content, str) or not content:
                raise TransportError("Backend returned no content")
            return TransportResult(
                content=content,
                suggested_follow_ups=_follow_ups(data.get("suggestedFollowUps")),
            )
        raise TransportError("Backend request failed")

    async def exchange(
        self,
        request: TransportRequest,
        token: CancellationToken,
        handler: ExchangeHandler,
    ) -> None:
        try:
            result = await self._fetch(request, token)
        except CancellationSignal:
            logger.info("completion_cancelled_before_retry")
            return
        except TransportError as e:
            if token.cancelled:
                return
            logger.error("completion_failed", error=e.message, status=e.status_code)
            handler.on_error(e, partial=False)
            return

        if token.cancelled:
            logger.info("completion_discarded_after_cancel")
            return
        handler.on_complete(result.content, result.suggested_follow_ups)


class StreamingTransport(TransportAdapter):
    """Token stream exchange over newline-delimited records."""

    streaming = True

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.client = client
        self.url = url
        self.headers = headers or {}

    async def exchange(
        self,
        request: TransportRequest,
        token: CancellationToken,
        handler: ExchangeHandler,
    ) -> None:
        parts: List[str] = []
        malformed = 0
        try:
            async with self.client.stream(
                "POST", self.url, json=request.to_payload(), headers=self.headers
            ) as response:
                if not response.is_success:
                    detail = await _error_detail(response)
                    raise TransportError(
                        f"Backend error ({response.status_code}): {detail}",
                        status_code=response.status_code,
                    )

                lines = response.aiter_lines()
                try:
                    while True:
                        line = await next_line(lines, token)
                        if token.cancelled or line is None:
                            break
                        done, bad = self._consume(line, parts, handler)
                        malformed += bad
                        if done:
                            break
                finally:
                    await lines.aclose()
        except TransportError as e:
            self._fail(e, parts, token, handler)
            return
        except httpx.HTTPError as e:
            self._fail(TransportError(f"Stream connection failed: {e}", cause=e), parts, token, handler)
            return

        if token.cancelled:
            logger.info("stream_cancelled", delivered_chars=sum(map(len, parts)))
            return
        content = "".join(parts)
        if not content.strip():
            self._fail(TransportError("Stream closed without delivering content"), parts, token, handler)
            return
        logger.info("stream_completed", content_length=len(content), malformed_records=malformed)
        handler.on_complete(content, [])

    def _consume(
        self,
        line: str,
        parts: List[str],
        handler: ExchangeHandler,
    ) -> Tuple[bool, int]:
        try:
            record = parse_record(line)
        except ParseError as e:
            logger.warning("stream_record_malformed", error=e.message, **e.context)
            return False, 1
        if record.kind == RecordKind.DONE:
            return True, 0
        if record.kind == RecordKind.DELTA:
            parts.append(record.content)
            handler.on_chunk(record.content)
        return False, 0

    def _fail(
        self,
        error: TransportError,
        parts: List[str],
        token: CancellationToken,
        handler: ExchangeHandler,
    ) -> None:
        if token.cancelled:
            return
        logger.error("stream_failed", error=error.message, delivered_chars=sum(map(len, parts)))
        handler.on_error(error, partial=bool("".join(parts).strip()))
