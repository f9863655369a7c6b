"""Cancellation tokens, at most one active per conversation scope."""

import asyncio
from enum import Enum
from typing import Dict, Optional

import structlog

from ..domain.errors import CancellationSignal

logger = structlog.get_logger()


class CancelReason(str, Enum):
    USER = "user"
    SUPERSEDED = "superseded"


class CancellationToken:
    """Cooperative cancellation flag passed into a transport exchange."""

    def __init__(self, scope: str) -> None:
        self.scope = scope
        self.reason: Optional[CancelReason] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal(
                "Exchange cancelled",
                context={"scope": self.scope, "reason": self.reason.value if self.reason else None},
            )

    async def wait(self) -> None:
        await self._event.wait()


class CancellationManager:
    """Owns the active token of each scope. Issuing a new one cancels the old."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def issue(self, scope: str) -> CancellationToken:
        previous = self._tokens.pop(scope, None)
        if previous is not None and previous.cancel(CancelReason.SUPERSEDED):
            logger.info("exchange_superseded", scope=scope)
        token = CancellationToken(scope)
        self._tokens[scope] = token
        return token

    def active(self, scope: str) -> Optional[CancellationToken]:
        return self._tokens.get(scope)

    def cancel(self, scope: str) -> bool:
        """Cancel the active token of a scope. Safe to call repeatedly."""
        token = self._tokens.pop(scope, None)
        if token is None:
            return False
        fired = token.cancel(CancelReason.USER)
        if fired:
            logger.info("exchange_cancelled", scope=scope)
        return fired

    def release(self, scope: str, token: CancellationToken) -> None:
        """Forget a token after natural completion, if it is still the active one."""
        if self._tokens.get(scope) is token:
            del self._tokens[scope]
