"""
PostgREST repository implementation.

Stores turns in the hosted `ai_coach_conversations` table. The first turn of a
conversation is its root row (is_root = true, carries the title); its id is
the conversation id, and later rows point at it through conversation_id.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..domain.errors import PersistenceError, TurnNotFoundError
from ..domain.models import Conversation, Turn
from .base import TurnRepository

logger = structlog.get_logger()


def _turn_from_row(row: Dict[str, Any]) -> Turn:
    try:
        return Turn(
            id=row["id"],
            conversation_id=row.get("conversation_id") or row["id"],
            user_id=row["user_id"],
            user_message=row.get("user_message") or "",
            ai_response=row.get("ai_response") or "",
            image_url=row.get("image_url"),
            is_root=bool(row.get("is_root")),
            created_at=row["created_at"],
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise PersistenceError("Malformed turn row", context={"row": str(row)[:200]}, cause=e)


def _conversation_from_row(row: Dict[str, Any], turns: Optional[List[Turn]] = None) -> Conversation:
    try:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row.get("title") or "",
            created_at=row["created_at"],
            updated_at=row["created_at"],
            turns=turns or [],
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise PersistenceError("Malformed conversation row", context={"row": str(row)[:200]}, cause=e)


class PostgrestTurnRepository(TurnRepository):
    """Repository backed by a PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        table: str = "ai_coach_conversations",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.client.headers.update(headers)
        self.url = f"{base_url.rstrip('/')}/rest/v1/{table}"
        logger.info("repository_initialized", backend="postgrest", table=table)

    async def _request(
        self,
        method: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        prefer_representation: bool = False,
    ) -> List[Dict[str, Any]]:
        headers = {"Prefer": "return=representation"} if prefer_representation else {}
        try:
            response = await self.client.request(
                method, self.url, params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PersistenceError(
                f"Storage request failed ({e.response.status_code})",
                context={"method": method, "body": e.response.text[:300]},
                cause=e,
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"Storage unreachable: {e}", context={"method": method}, cause=e)
        if not response.content:
            return []
        try:
            rows = response.json()
        except ValueError as e:
            raise PersistenceError(
                "Storage returned invalid JSON",
                context={"method": method, "body": response.text[:300]},
                cause=e,
            )
        if not isinstance(rows, list):
            raise PersistenceError("Storage returned an unexpected body", context={"method": method})
        return rows

    def _row(self, turn: Turn) -> Dict[str, Any]:
        return {
            "id": turn.id,
            "user_id": turn.user_id,
            "user_message": turn.user_message,
            "ai_response": turn.ai_response,
            "image_url": turn.image_url,
            "created_at": turn.created_at.isoformat(),
        }

    async def create_conversation(self, user_id: str, title: str, first_turn: Turn) -> str:
        """Insert the root row. Its id becomes the conversation id."""
        row = self._row(first_turn)
        row.update(user_id=user_id, title=title, is_root=True, conversation_id=None)
        rows = await self._request("POST", json=row, prefer_representation=True)
        conversation_id = _turn_from_row(rows[0]).id if rows else first_turn.id
        logger.info("conversation_created", conversation_id=conversation_id)
        return conversation_id

    async def add_turn(self, turn: Turn) -> Turn:
        row = self._row(turn)
        row.update(conversation_id=turn.conversation_id, is_root=False)
        await self._request("POST", json=row)
        logger.info("turn_added", conversation_id=turn.conversation_id, turn_id=turn.id)
        return turn

    async def update_turn_response(self, turn_id: str, response: str) -> None:
        rows = await self._request(
            "PATCH",
            params={"id": f"eq.{turn_id}"},
            json={"ai_response": response},
            prefer_representation=True,
        )
        if not rows:
            raise TurnNotFoundError(f"Turn {turn_id} not found", context={"turn_id": turn_id})
        logger.info("turn_updated", turn_id=turn_id)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = await self._request(
            "GET", params={"id": f"eq.{conversation_id}", "is_root": "eq.true"}
        )
        if not rows:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            return None
        return _conversation_from_row(rows[0], await self.list_turns(conversation_id))

    async def list_turns(self, conversation_id: str, limit: int = 50) -> List[Turn]:
        """Root row first, then the latest `limit` follow-up rows in order."""
        roots = await self._request("GET", params={"id": f"eq.{conversation_id}"})
        rows = await self._request(
            "GET",
            params={
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [_turn_from_row(row) for row in roots + list(reversed(rows))]

    async def list_conversations(
        self, user_id: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        rows = await self._request(
            "GET",
            params={
                "user_id": f"eq.{user_id}",
                "is_root": "eq.true",
                "order": "created_at.desc",
                "limit": str(limit),
                "offset": str(offset),
            },
        )
        return [_conversation_from_row(row) for row in rows]

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
