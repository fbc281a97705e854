# historia/memory/gateway.py
"""
Persistence gateway: conversation and turn CRUD for the signed-in user.

Every call returns a Result. Without an identity the gateway does nothing
and returns Err(AUTH_REQUIRED). Store exceptions become Err(STORE_FAILURE);
nothing is raised to callers.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional, TypeVar

from historia.memory.identity import Identity, IdentityProvider
from historia.memory.models import (
    Conversation,
    Turn,
    derive_preview,
    derive_title,
    matches_text,
    to_iso,
    truncate_preview,
    utc_now,
)
from historia.memory.repository import (
    ConversationNotFound,
    ConversationStore,
    StoreError,
    TextSearchUnavailable,
)
from historia.memory.result import Err, Ok, Result, StoreErrorKind
from historia.personas.catalog import Persona
from historia.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Page size used when the search fallback walks every conversation
FALLBACK_PAGE_SIZE = 200


class PersistenceGateway:
    def __init__(self, store: ConversationStore, identity: IdentityProvider) -> None:
        self._store = store
        self._identity = identity

    @property
    def store(self) -> ConversationStore:
        return self._store

    def current_user(self) -> Optional[Identity]:
        return self._identity.current_user()

    def _run(self, op: str, fn: Callable[[Identity], T]) -> Result[T]:
        user = self._identity.current_user()
        if user is None:
            logger.info("[store] %s skipped: no authenticated user", op)
            return Err(StoreErrorKind.AUTH_REQUIRED, f"{op}: no authenticated user")
        try:
            return Ok(fn(user))
        except TextSearchUnavailable as e:
            return Err(StoreErrorKind.SEARCH_UNAVAILABLE, f"{op}: {e}", e)
        except ConversationNotFound as e:
            return Err(StoreErrorKind.NOT_FOUND, f"{op}: {e}", e)
        except (StoreError, KeyError, ValueError) as e:
            logger.warning("[store] %s failed: %s", op, e)
            return Err(StoreErrorKind.STORE_FAILURE, f"{op}: {e}", e)
        except Exception as e:
            logger.exception("[store] %s raised unexpectedly", op)
            return Err(StoreErrorKind.STORE_FAILURE, f"{op}: {e}", e)

    def _require_conversation(self, conversation_id: str, user: Identity) -> dict[str, Any]:
        row = self._store.get_conversation(conversation_id, owner_id=user.user_id)
        if row is None:
            raise ConversationNotFound(f"conversation {conversation_id} not found")
        return row

    # ------------------ conversations ------------------
    def create_conversation(self, persona: Persona, first_turn_text: str) -> Result[Conversation]:
        def _create(user: Identity) -> Conversation:
            now = to_iso(utc_now())
            row = self._store.insert_conversation({
                "user_id": user.user_id,
                "character_id": persona.id,
                "title": derive_title(first_turn_text, persona.name),
                "preview": truncate_preview(first_turn_text),
                "is_bookmarked": False,
                "message_count": 0,
                "created_at": now,
                "updated_at": now,
                "last_message_at": now,
            })
            conversation = Conversation.from_row(row)
            logger.info("[store] created conversation id=%s persona=%s", conversation.id, persona.id)
            return conversation

        return self._run("create_conversation", _create)

    def get_conversation(self, conversation_id: str) -> Result[Conversation]:
        return self._run(
            "get_conversation",
            lambda user: Conversation.from_row(self._require_conversation(conversation_id, user)),
        )

    def update_title(self, conversation_id: str, title: str) -> Result[None]:
        return self._run(
            "update_title",
            lambda user: self._store.update_conversation(
                conversation_id,
                {"title": title, "updated_at": to_iso(utc_now())},
                owner_id=user.user_id,
            ),
        )

    def list_conversations(
        self,
        *,
        bookmarked_only: bool = False,
        newest_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> Result[List[Conversation]]:
        def _list(user: Identity) -> List[Conversation]:
            rows = self._store.list_conversations(
                owner_id=user.user_id,
                bookmarked_only=bookmarked_only,
                newest_first=newest_first,
                limit=limit,
                offset=offset,
            )
            return [Conversation.from_row(r) for r in rows]

        return self._run("list_conversations", _list)

    def toggle_bookmark(self, conversation_id: str) -> Result[bool]:
        def _toggle(user: Identity) -> bool:
            row = self._require_conversation(conversation_id, user)
            new_state = not bool(row.get("is_bookmarked"))
            self._store.update_conversation(
                conversation_id,
                {"is_bookmarked": new_state},
                owner_id=user.user_id,
            )
            return new_state

        return self._run("toggle_bookmark", _toggle)

    def delete_conversation(self, conversation_id: str) -> Result[None]:
        def _delete(user: Identity) -> None:
            self._store.delete_conversation(conversation_id, owner_id=user.user_id)
            logger.info("[store] deleted conversation id=%s", conversation_id)

        return self._run("delete_conversation", _delete)

    def search_conversations(self, text: str) -> Result[List[Conversation]]:
        """
        Store-side search first; if the store cannot search, filter the full
        conversation list locally with the same predicate.
        """
        result = self._run(
            "search_conversations",
            lambda user: [
                Conversation.from_row(r)
                for r in self._store.search_conversations(owner_id=user.user_id, text=text)
            ],
        )
        if result.ok or result.kind != StoreErrorKind.SEARCH_UNAVAILABLE:
            return result

        logger.info("[store] text search unavailable (%s); filtering locally", result.detail)
        return self._run("search_conversations_fallback", lambda user: self._search_locally(text))

    def _search_locally(self, text: str) -> List[Conversation]:
        hits: List[Conversation] = []
        offset = 0
        while True:
            page = self.list_conversations(limit=FALLBACK_PAGE_SIZE, offset=offset)
            if not page.ok:
                raise StoreError(page.detail)
            hits.extend(c for c in page.value if matches_text(c, text))
            if len(page.value) < FALLBACK_PAGE_SIZE:
                return hits
            offset += FALLBACK_PAGE_SIZE

    def count_conversations(self) -> Result[int]:
        return self._run(
            "count_conversations",
            lambda user: self._store.count_conversations(owner_id=user.user_id),
        )

    def conversations_with_images(self) -> Result[List[Conversation]]:
        def _with_images(user: Identity) -> List[Conversation]:
            hits: List[Conversation] = []
            offset = 0
            while True:
                rows = self._store.list_conversations(
                    owner_id=user.user_id, limit=FALLBACK_PAGE_SIZE, offset=offset
                )
                for row in rows:
                    conversation = Conversation.from_row(row)
                    if self._store.has_image_turns(conversation.id, owner_id=user.user_id):
                        hits.append(conversation)
                if len(rows) < FALLBACK_PAGE_SIZE:
                    return hits
                offset += FALLBACK_PAGE_SIZE

        return self._run("conversations_with_images", _with_images)

    # ------------------ turns -------------------
    def append_turn(self, conversation_id: str, turn: Turn) -> Result[None]:
        def _append(user: Identity) -> None:
            row: dict[str, Any] = turn.to_row()
            row["conversation_id"] = conversation_id
            self._store.insert_turn(
                row,
                owner_id=user.user_id,
                preview=derive_preview(turn),
                at=to_iso(utc_now()),
            )

        return self._run("append_turn", _append)

    def get_turns(self, conversation_id: str) -> Result[List[Turn]]:
        def _turns(user: Identity) -> List[Turn]:
            self._require_conversation(conversation_id, user)
            rows = self._store.list_turns(conversation_id, owner_id=user.user_id)
            turns = [Turn.from_row(r) for r in rows]
            # stable sort: equal timestamps keep storage order
            turns.sort(key=lambda t: t.created_at)
            return turns

        return self._run("get_turns", _turns)

    def ping(self) -> bool:
        try:
            return self._store.ping()
        except Exception:
            logger.warning("[store] ping raised", exc_info=True)
            return False
