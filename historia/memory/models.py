# historia/memory/models.py

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

TITLE_MAX_CHARS = 50
TITLE_WORDS = 4
PREVIEW_MAX_CHARS = 100
IMAGE_PREVIEW_PREFIX = "📷"
IMAGE_ONLY_BODY = "Shared an image"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(raw: Any) -> datetime:
    """Parse store timestamps; naive values are taken as UTC."""
    if isinstance(raw, datetime):
        value = raw
    elif not raw:
        return utc_now()
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class AuthorRole(str, Enum):
    USER = "user"
    PERSONA = "persona"


@dataclass(frozen=True)
class Turn:
    id: str
    author_role: AuthorRole
    author_id: str
    author_display_name: str
    body: str
    created_at: datetime = field(default_factory=utc_now)
    conversation_id: Optional[str] = None
    image_ref: Optional[str] = None
    image_label: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        return bool(self.image_ref)

    @property
    def is_from_user(self) -> bool:
        return self.author_role == AuthorRole.USER

    @classmethod
    def create(
        cls,
        *,
        author_role: AuthorRole,
        author_id: str,
        author_display_name: str,
        body: str,
        conversation_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        image_ref: Optional[str] = None,
        image_label: Optional[str] = None,
    ) -> "Turn":
        return cls(
            id=str(uuid.uuid4()),
            author_role=author_role,
            author_id=author_id,
            author_display_name=author_display_name,
            body=body,
            created_at=created_at or utc_now(),
            conversation_id=conversation_id,
            image_ref=image_ref,
            image_label=image_label,
        )

    def with_body(self, body: str) -> "Turn":
        return replace(self, body=body)

    def to_row(self) -> Dict[str, Any]:
        """Row for the conversation_messages table."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.body,
            "sender_id": self.author_id,
            "sender_name": self.author_display_name,
            "is_from_user": self.is_from_user,
            "timestamp": to_iso(self.created_at),
            "image_url": self.image_ref,
            "image_name": self.image_label,
            "has_image": self.has_attachment,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Turn":
        return cls(
            id=str(row.get("id") or ""),
            author_role=AuthorRole.USER if row.get("is_from_user") else AuthorRole.PERSONA,
            author_id=row.get("sender_id") or "",
            author_display_name=row.get("sender_name") or "",
            body=row.get("content") or "",
            created_at=parse_iso(row.get("timestamp")),
            conversation_id=str(row["conversation_id"]) if row.get("conversation_id") is not None else None,
            image_ref=row.get("image_url") or None,
            image_label=row.get("image_name") or None,
        )


@dataclass
class Conversation:
    id: str
    owner_id: str
    persona_id: str
    title: str
    preview: Optional[str]
    is_bookmarked: bool
    turn_count: int
    created_at: datetime
    updated_at: datetime
    last_turn_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(row.get("id") or ""),
            owner_id=row.get("user_id") or "",
            persona_id=row.get("character_id") or "",
            title=row.get("title") or "",
            preview=row.get("preview"),
            is_bookmarked=bool(row.get("is_bookmarked") or False),
            turn_count=int(row.get("message_count") or 0),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
            last_turn_at=parse_iso(row.get("last_message_at")),
        )


def derive_title(text: str, persona_name: str) -> str:
    words = " ".join((text or "").split(" ")[:TITLE_WORDS])
    title = f"Chat with {persona_name}: {words}"
    if len(title) > TITLE_MAX_CHARS:
        return title[: TITLE_MAX_CHARS - 3] + "..."
    return title


def truncate_preview(text: str) -> str:
    text = text or ""
    if len(text) > PREVIEW_MAX_CHARS:
        return text[:PREVIEW_MAX_CHARS] + "..."
    return text


def derive_preview(turn: Turn) -> str:
    if turn.has_attachment:
        if turn.body:
            return f"{IMAGE_PREVIEW_PREFIX} {turn.body}"
        return f"{IMAGE_PREVIEW_PREFIX} {IMAGE_ONLY_BODY}"
    return truncate_preview(turn.body)


def matches_text(conversation: Conversation, query: str) -> bool:
    """Case-insensitive substring match over title and preview."""
    needle = (query or "").lower()
    return needle in (conversation.title or "").lower() or needle in (conversation.preview or "").lower()
