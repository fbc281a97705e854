# historia/memory/rest_store.py
"""
Hosted store: the same two tables behind a Supabase (PostgREST) endpoint.

Row-level security on the hosted side is what scopes rows to a user. The
owner filters added here narrow queries, and message reads and writes also
check the parent conversation's owner so both stores behave alike.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import requests

from historia.memory.repository import ConversationNotFound, StoreError, TextSearchUnavailable
from historia.utils.logging import get_logger

logger = get_logger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "conversation_messages"

_CONTENT_RANGE_TOTAL = re.compile(r"/(\d+)\s*$")

# Inner join on the parent so message reads can filter by its owner
_OWNER_EMBED = f"{CONVERSATIONS}!inner(user_id)"


def _without_embed(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k != CONVERSATIONS}


def _ilike_pattern(text: str) -> str:
    """
    Build a quoted PostgREST ilike operand matching `text` literally as a
    substring: LIKE wildcards are escaped, then the value is double-quoted
    so commas and parentheses survive inside an or=(...) filter.
    """
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    quoted = escaped.replace("\\", "\\\\").replace('"', '\\"')
    return f'"*{quoted}*"'


class RestConversationStore:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        timeout_seconds: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not (base_url.startswith("http://") or base_url.startswith("https://")):
            raise RuntimeError(f"SUPABASE_URL is invalid (missing scheme): {base_url!r}")
        self._rest_base = base_url.rstrip("/") + "/rest/v1"
        self._timeout = timeout_seconds
        self._http = session or requests.Session()
        self._http.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Content-Type": "application/json",
            "User-Agent": "historia/store (requests)",
        })

    def set_access_token(self, token: str) -> None:
        """Attach the signed-in user's JWT so row-level security applies."""
        self._http.headers["Authorization"] = f"Bearer {token}"

    # ------------------ http ------------------
    def _url(self, table: str) -> str:
        return f"{self._rest_base}/{table}"

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        try:
            resp = self._http.request(
                method,
                self._url(table),
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise StoreError(f"{method} {table} failed: {e}") from e

        if resp.status_code >= 400:
            body_preview = (resp.text or "")[:400]
            raise StoreError(f"{method} {table} returned {resp.status_code}: {body_preview}")
        return resp

    @staticmethod
    def _rows(resp: requests.Response) -> List[Dict[str, Any]]:
        if not resp.content:
            return []
        try:
            data = resp.json()
        except ValueError as e:
            raise StoreError(f"unparseable store response: {e}") from e
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    def _exact_count(self, table: str, params: Dict[str, str]) -> int:
        resp = self._request(
            "GET",
            table,
            params={**params, "select": "id", "limit": "1"},
            headers={"Prefer": "count=exact"},
        )
        match = _CONTENT_RANGE_TOTAL.search(resp.headers.get("Content-Range", ""))
        if match:
            return int(match.group(1))
        raise StoreError(f"count on {table} returned no Content-Range total")

    # ------------------ conversations ------------------
    def insert_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            CONVERSATIONS,
            json=row,
            headers={"Prefer": "return=representation"},
        )
        rows = self._rows(resp)
        if not rows:
            raise StoreError("insert conversation returned no row")
        return rows[0]

    def get_conversation(self, conversation_id: str, *, owner_id: str) -> Optional[Dict[str, Any]]:
        resp = self._request(
            "GET",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}", "user_id": f"eq.{owner_id}", "select": "*"},
        )
        rows = self._rows(resp)
        return rows[0] if rows else None

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any], *, owner_id: str) -> None:
        if not fields:
            return
        self._request(
            "PATCH",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}", "user_id": f"eq.{owner_id}"},
            json=fields,
        )

    def delete_conversation(self, conversation_id: str, *, owner_id: str) -> None:
        if self.get_conversation(conversation_id, owner_id=owner_id) is None:
            return
        self._request("DELETE", MESSAGES, params={"conversation_id": f"eq.{conversation_id}"})
        self._request(
            "DELETE",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}", "user_id": f"eq.{owner_id}"},
        )

    def list_conversations(
        self,
        *,
        owner_id: str,
        bookmarked_only: bool = False,
        newest_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        direction = "desc" if newest_first else "asc"
        params = {
            "user_id": f"eq.{owner_id}",
            "select": "*",
            "order": f"last_message_at.{direction},id.{direction}",
            "limit": str(limit),
            "offset": str(offset),
        }
        if bookmarked_only:
            params["is_bookmarked"] = "is.true"
        return self._rows(self._request("GET", CONVERSATIONS, params=params))

    def search_conversations(self, *, owner_id: str, text: str) -> List[Dict[str, Any]]:
        pattern = _ilike_pattern(text)
        params = {
            "user_id": f"eq.{owner_id}",
            "select": "*",
            "or": f"(title.ilike.{pattern},preview.ilike.{pattern})",
            "order": "last_message_at.desc,id.desc",
        }
        try:
            return self._rows(self._request("GET", CONVERSATIONS, params=params))
        except StoreError as e:
            raise TextSearchUnavailable(str(e)) from e

    def count_conversations(self, *, owner_id: str) -> int:
        return self._exact_count(CONVERSATIONS, {"user_id": f"eq.{owner_id}"})

    # ------------------ turns -------------------
    def insert_turn(self, turn_row: Dict[str, Any], *, owner_id: str, preview: str, at: str) -> None:
        conversation_id = turn_row["conversation_id"]
        if self.get_conversation(conversation_id, owner_id=owner_id) is None:
            raise ConversationNotFound(f"conversation {conversation_id} not found")
        self._request("POST", MESSAGES, json=turn_row, headers={"Prefer": "return=minimal"})

        # No multi-statement transactions over PostgREST; recount instead of
        # incrementing so a lost update cannot drift the counter.
        message_count = self._exact_count(MESSAGES, {"conversation_id": f"eq.{conversation_id}"})
        self._request(
            "PATCH",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}", "user_id": f"eq.{owner_id}"},
            json={
                "preview": preview,
                "updated_at": at,
                "last_message_at": at,
                "message_count": message_count,
            },
        )

    def list_turns(self, conversation_id: str, *, owner_id: str) -> List[Dict[str, Any]]:
        resp = self._request(
            "GET",
            MESSAGES,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "select": f"*,{_OWNER_EMBED}",
                "conversations.user_id": f"eq.{owner_id}",
                "order": "timestamp.asc",
            },
        )
        return [_without_embed(r) for r in self._rows(resp)]

    def has_image_turns(self, conversation_id: str, *, owner_id: str) -> bool:
        resp = self._request(
            "GET",
            MESSAGES,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "has_image": "is.true",
                "select": f"id,{_OWNER_EMBED}",
                "conversations.user_id": f"eq.{owner_id}",
                "limit": "1",
            },
        )
        return bool(self._rows(resp))

    def ping(self) -> bool:
        try:
            self._request("GET", CONVERSATIONS, params={"select": "id", "limit": "1"})
            return True
        except StoreError as e:
            logger.warning("Store ping failed: %s", e)
            return False
