# historia/core/chat.py

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from historia.clients.completion_client import CompletionClient, CompletionError
from historia.core.feed import MessageFeed, Observer, Snapshot, Subscription
from historia.core.history import HistoryStore, InMemoryHistoryStore, RollingHistory
from historia.memory.gateway import PersistenceGateway
from historia.memory.models import (
    IMAGE_ONLY_BODY,
    IMAGE_PREVIEW_PREFIX,
    AuthorRole,
    Turn,
    derive_preview,
    derive_title,
    to_iso,
    utc_now,
)
from historia.memory.result import Result, StoreErrorKind
from historia.personas.catalog import GENERIC_PROFILE, Persona, PersonaCatalog, PersonaProfile
from historia.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

APOLOGY_TEXT = "Sorry, I'm having trouble responding right now. Please try again."
NEW_CONVERSATION_TEXT = "New conversation started with {name}"
UNTITLED = "New Conversation"
ANONYMOUS_USER_ID = "anonymous"
DEFAULT_USER_NAME = "You"

SESSION_TITLE_WORDS = 5
SESSION_TITLE_MAX_CHARS = 30


@dataclass(frozen=True)
class ImageAttachment:
    """An already-uploaded image: a fetchable URL and an optional file name."""

    ref: str
    label: Optional[str] = None


ImageInput = Union[ImageAttachment, str, None]


def _as_attachment(image: ImageInput) -> Optional[ImageAttachment]:
    if image is None:
        return None
    if isinstance(image, ImageAttachment):
        return image if image.ref.strip() else None
    ref = str(image).strip()
    return ImageAttachment(ref) if ref else None


def _format_time(value: datetime) -> str:
    return f"{value.day}/{value.month}/{value.year} {value.hour}:{value.minute:02d}"


class ConversationSession:
    """
    One open conversation with one persona.

    Local state is authoritative while the session is open: persistence runs
    on a single background writer (so rows land in append order) and its
    failures are only logged. Completion failures become an apology turn.
    Observers get a tuple snapshot of the messages after every change.
    """

    def __init__(
        self,
        client: CompletionClient,
        gateway: PersistenceGateway,
        catalog: Optional[PersonaCatalog] = None,
        *,
        history_store: Optional[HistoryStore] = None,
        history_pairs: Optional[int] = None,
        feed: Optional[MessageFeed] = None,
    ) -> None:
        self._client = client
        self._gateway = gateway
        self._catalog = catalog
        self._history_store: HistoryStore = history_store or InMemoryHistoryStore()
        self._history_pairs = client.settings.history_pairs if history_pairs is None else history_pairs
        self._feed = feed or MessageFeed()

        self._lock = threading.RLock()
        self._messages: List[Turn] = []
        self._persona: Optional[Persona] = None
        self._profile: PersonaProfile = GENERIC_PROFILE
        self._conversation_id: Optional[str] = None
        self._history = RollingHistory(self._history_pairs)
        self._history_key: Optional[str] = None
        self._titled = False

        # Bumped by open/clear; an in-flight send checks it before every mutation
        self._epoch = 0
        self._send_in_flight = False
        self._closed = False

        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="historia-writer")

    # ------------------ state ------------------
    @property
    def messages(self) -> Snapshot:
        with self._lock:
            return tuple(self._messages)

    @property
    def persona(self) -> Optional[Persona]:
        return self._persona

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def rolling_history(self) -> List[Tuple[str, str]]:
        """Completed exchanges as (role, text) entries, oldest first."""
        with self._lock:
            return self._history.entries()

    @property
    def send_in_flight(self) -> bool:
        return self._send_in_flight

    @property
    def is_persisted(self) -> bool:
        return self._conversation_id is not None

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def subscribe(self, observer: Observer) -> Subscription:
        return self._feed.subscribe(observer)

    # ------------------ internals ------------------
    def _publish(self) -> None:
        self._feed.publish(self.messages)

    def _next_timestamp(self) -> datetime:
        # Caller holds the lock
        now = utc_now()
        if self._messages and now < self._messages[-1].created_at:
            return self._messages[-1].created_at
        return now

    def _replace_body(self, turn_id: str, body: str) -> Optional[Turn]:
        # Caller holds the lock
        for i, turn in enumerate(self._messages):
            if turn.id == turn_id:
                updated = turn.with_body(body)
                self._messages[i] = updated
                return updated
        return None

    def _author(self) -> Tuple[str, str]:
        user = self._gateway.current_user()
        if user is None:
            return ANONYMOUS_USER_ID, DEFAULT_USER_NAME
        return user.user_id, user.display_name or DEFAULT_USER_NAME

    def _store_value(self, op: str, result: Result[T]) -> Optional[T]:
        """
        The one place persistence outcomes are judged: failures are logged
        and turned into None, never raised.
        """
        if result.ok:
            return result.value
        if result.kind == StoreErrorKind.AUTH_REQUIRED:
            logger.info("Persistence skipped for %s: no signed-in user.", op)
        else:
            logger.warning("Persistence %s failed (%s): %s", op, result.kind.value, result.detail)
        return None

    def _submit(self, op: str, write: Callable[[], Result[Any]]) -> Optional[Future]:
        def _run() -> None:
            try:
                self._store_value(op, write())
            except Exception:
                logger.exception("Background %s raised unexpectedly.", op)

        if self._closed:
            logger.warning("Session closed; dropping background %s.", op)
            return None
        return self._writer.submit(_run)

    def _persist_turn(self, conversation_id: Optional[str], turn: Turn) -> None:
        if conversation_id is None:
            return
        self._submit("append_turn", lambda: self._gateway.append_turn(conversation_id, turn))

    def _load_history(self, key: str) -> None:
        # Caller holds the lock
        self._history_key = key
        self._history = RollingHistory(self._history_pairs, self._history_store.get(key))

    def _history_key_for(self, persona: Persona, conversation_id: Optional[str]) -> str:
        return conversation_id or f"{persona.id}_default"

    # ------------------ open / clear / reload ------------------
    def open(self, persona: Persona, existing_conversation_id: Optional[str] = None) -> None:
        profile = self._catalog.profile(persona.id) if self._catalog is not None else GENERIC_PROFILE

        with self._lock:
            self._epoch += 1
            self._persona = persona
            self._profile = profile

        if existing_conversation_id:
            turns = self._store_value("get_turns", self._gateway.get_turns(existing_conversation_id))
            if turns is not None:
                with self._lock:
                    self._messages = sorted(turns, key=lambda t: t.created_at)
                    self._conversation_id = existing_conversation_id
                    self._titled = any(t.is_from_user for t in self._messages)
                    self._load_history(self._history_key_for(persona, existing_conversation_id))
                logger.info("Resumed conversation %s with %s (%d turns).",
                            existing_conversation_id, persona.id, len(turns))
                self._publish()
                return
            logger.warning("Could not load conversation %s; starting a new one.", existing_conversation_id)

        with self._lock:
            self._messages = []
            self._conversation_id = None
            self._titled = False

        conversation = self._store_value(
            "create_conversation",
            self._gateway.create_conversation(persona, NEW_CONVERSATION_TEXT.format(name=persona.name)),
        )
        conversation_id = conversation.id if conversation is not None else None
        if conversation_id is None:
            logger.info("Conversation with %s is not persisted; continuing in memory.", persona.id)

        with self._lock:
            self._conversation_id = conversation_id
            greeting = Turn.create(
                author_role=AuthorRole.PERSONA,
                author_id=persona.id,
                author_display_name=persona.name,
                body=profile.greeting_for(persona),
                conversation_id=conversation_id,
                created_at=self._next_timestamp(),
            )
            self._messages.append(greeting)
            self._load_history(self._history_key_for(persona, conversation_id))

        self._persist_turn(conversation_id, greeting)
        self._publish()

    def clear(self) -> None:
        """
        Abandon the in-memory session. Stored rows are kept. An in-flight
        stream is closed at its next chunk and nothing more is published or
        persisted for it.
        """
        with self._lock:
            self._epoch += 1
            key = self._history_key
            self._messages = []
            self._persona = None
            self._profile = GENERIC_PROFILE
            self._conversation_id = None
            self._history = RollingHistory(self._history_pairs)
            self._history_key = None
            self._titled = False
        if key is not None:
            self._history_store.drop(key)
        self._publish()

    def reload(self) -> bool:
        """
        Re-read the turns of the persisted conversation after pending writes
        land. Returns False when there is nothing to reload or it failed.
        """
        with self._lock:
            conversation_id = self._conversation_id
            epoch = self._epoch
            if conversation_id is None or self._send_in_flight:
                return False

        self.flush()
        turns = self._store_value("get_turns", self._gateway.get_turns(conversation_id))
        if turns is None:
            return False

        with self._lock:
            if epoch != self._epoch or self._send_in_flight:
                return False
            self._messages = sorted(turns, key=lambda t: t.created_at)
            self._titled = any(t.is_from_user for t in self._messages)
        logger.info("Reloaded %d turns (%d with images).", len(turns), sum(1 for t in turns if t.has_attachment))
        self._publish()
        return True

    # ------------------ send ------------------
    def send(self, user_text: str, image: ImageInput = None, *, stream: bool = True) -> Optional[Turn]:
        """
        Append the user turn, ask the persona, and return the persona's turn
        (the reply or the apology). Returns None without side effects when
        there is nothing to send, no persona is open, or a send is already
        running; also None when the session was cleared mid-reply.
        """
        text = (user_text or "").strip()
        attachment = _as_attachment(image)

        with self._lock:
            if not text and attachment is None:
                return None
            if self._persona is None or self._closed:
                return None
            if self._send_in_flight:
                logger.warning("send() refused: another send is in flight.")
                return None
            self._send_in_flight = True

        try:
            return self._exchange(text or IMAGE_ONLY_BODY, attachment, stream)
        finally:
            with self._lock:
                self._send_in_flight = False

    def _exchange(self, body: str, attachment: Optional[ImageAttachment], stream: bool) -> Optional[Turn]:
        author_id, author_name = self._author()

        with self._lock:
            epoch = self._epoch
            persona = self._persona
            profile = self._profile
            conversation_id = self._conversation_id
            history = self._history.as_messages()
            retitle = conversation_id is not None and not self._titled
            self._titled = True

            user_turn = Turn.create(
                author_role=AuthorRole.USER,
                author_id=author_id,
                author_display_name=author_name,
                body=body,
                conversation_id=conversation_id,
                created_at=self._next_timestamp(),
                image_ref=attachment.ref if attachment else None,
                image_label=attachment.label if attachment else None,
            )
            self._messages.append(user_turn)

        self._publish()
        self._persist_turn(conversation_id, user_turn)
        if retitle:
            title = derive_title(body, persona.name)
            self._submit("update_title", lambda: self._gateway.update_title(conversation_id, title))

        request = self._client.build_request(
            persona,
            history,
            body,
            image_ref=attachment.ref if attachment else None,
            profile=profile,
            history_pairs=self._history_pairs,
        )

        if stream:
            return self._stream_reply(epoch, persona, conversation_id, body, request)
        return self._blocking_reply(epoch, persona, conversation_id, body, request)

    def _stream_reply(self, epoch, persona, conversation_id, user_body, request) -> Optional[Turn]:
        with self._lock:
            if epoch != self._epoch:
                return None
            placeholder = Turn.create(
                author_role=AuthorRole.PERSONA,
                author_id=persona.id,
                author_display_name=persona.name,
                body="",
                conversation_id=conversation_id,
                created_at=self._next_timestamp(),
            )
            self._messages.append(placeholder)
        self._publish()

        snapshots = None
        final_text = ""
        aborted = False
        try:
            snapshots = self._client.complete_streaming(request)
            for text in snapshots:
                with self._lock:
                    if epoch != self._epoch:
                        aborted = True
                        break
                    self._replace_body(placeholder.id, text)
                final_text = text
                self._publish()
        except CompletionError as e:
            return self._apologize(epoch, persona, conversation_id, placeholder.id, e)
        except Exception as e:
            logger.exception("Unexpected error while streaming a reply.")
            return self._apologize(epoch, persona, conversation_id, placeholder.id, e)
        finally:
            close = getattr(snapshots, "close", None)
            if close is not None:
                close()

        with self._lock:
            if aborted or epoch != self._epoch:
                logger.info("Stream abandoned after clear(); discarding %d chars.", len(final_text))
                return None
            final_turn = self._replace_body(placeholder.id, final_text)
            self._remember_exchange(user_body, final_text)

        self._publish()
        self._persist_turn(conversation_id, final_turn)
        return final_turn

    def _blocking_reply(self, epoch, persona, conversation_id, user_body, request) -> Optional[Turn]:
        try:
            reply = self._client.complete(request)
        except CompletionError as e:
            return self._apologize(epoch, persona, conversation_id, None, e)
        except Exception as e:
            logger.exception("Unexpected error while waiting for a reply.")
            return self._apologize(epoch, persona, conversation_id, None, e)

        with self._lock:
            if epoch != self._epoch:
                return None
            turn = Turn.create(
                author_role=AuthorRole.PERSONA,
                author_id=persona.id,
                author_display_name=persona.name,
                body=reply,
                conversation_id=conversation_id,
                created_at=self._next_timestamp(),
            )
            self._messages.append(turn)
            self._remember_exchange(user_body, reply)

        self._publish()
        self._persist_turn(conversation_id, turn)
        return turn

    def _remember_exchange(self, user_body: str, reply: str) -> None:
        # Caller holds the lock
        self._history.push(user_body, reply)
        if self._history_key is not None:
            self._history_store.put(self._history_key, self._history.pairs())

    def _apologize(self, epoch, persona, conversation_id, placeholder_id, error: Exception) -> Optional[Turn]:
        kind = getattr(error, "kind", None)
        logger.warning("Completion failed (%s): %s; replying with apology.",
                       getattr(kind, "value", type(error).__name__), error)
        with self._lock:
            if epoch != self._epoch:
                return None
            turn = self._replace_body(placeholder_id, APOLOGY_TEXT) if placeholder_id else None
            if turn is None:
                turn = Turn.create(
                    author_role=AuthorRole.PERSONA,
                    author_id=persona.id,
                    author_display_name=persona.name,
                    body=APOLOGY_TEXT,
                    conversation_id=conversation_id,
                    created_at=self._next_timestamp(),
                )
                self._messages.append(turn)
        self._publish()
        self._persist_turn(conversation_id, turn)
        return turn

    # ------------------ background writer ------------------
    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued writes; False if they did not finish in time."""
        if self._closed:
            return True
        marker = self._writer.submit(lambda: None)
        try:
            marker.result(timeout=timeout)
            return True
        except FutureTimeout:
            logger.warning("Pending writes did not finish within %.1fs.", timeout)
            return False

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._writer.shutdown(wait=True)

    def __enter__(self) -> "ConversationSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------ read-only helpers ------------------
    def messages_with_images(self) -> List[Turn]:
        return [t for t in self.messages if t.has_attachment]

    def image_count(self) -> int:
        return len(self.messages_with_images())

    def latest_image_message(self) -> Optional[Turn]:
        images = self.messages_with_images()
        return images[-1] if images else None

    def conversation_title(self) -> str:
        messages = self.messages
        if not messages:
            return UNTITLED
        first = next((t for t in messages if t.is_from_user), messages[0])
        words = " ".join(first.body.split(" ")[:SESSION_TITLE_WORDS])
        if len(words) > SESSION_TITLE_MAX_CHARS:
            return words[:SESSION_TITLE_MAX_CHARS] + "..."
        return words

    def conversation_preview(self) -> str:
        messages = self.messages
        if len(messages) > 1:
            return derive_preview(messages[-1])
        return ""

    def export_as_text(self, now: Optional[datetime] = None) -> str:
        """Plain-text transcript with a summary header. Touches no I/O."""
        messages = self.messages
        persona = self._persona
        lines = [
            "Conversation Export",
            f"Generated: {to_iso(now or utc_now())}",
            f"Character: {persona.name if persona else 'Unknown'}",
            f"Messages: {len(messages)}",
            f"Images: {sum(1 for t in messages if t.has_attachment)}",
            "=" * 50,
        ]
        for turn in messages:
            lines.append("")
            stamp = _format_time(turn.created_at)
            if turn.has_attachment:
                lines.append(f"{IMAGE_PREVIEW_PREFIX} {turn.author_display_name} ({stamp}) shared an image:")
                lines.append(f"Image URL: {turn.image_ref}")
            else:
                lines.append(f"{turn.author_display_name} ({stamp}):")
            if turn.body:
                lines.append(turn.body)
            lines.append("-" * 30)
        return "\n".join(lines) + "\n"

    def debug_status(self) -> Dict[str, Any]:
        messages = self.messages
        user = self._gateway.current_user()
        images = sum(1 for t in messages if t.has_attachment)
        return {
            "persona_id": self._persona.id if self._persona else None,
            "conversation_id": self._conversation_id,
            "history_key": self._history_key,
            "message_count": len(messages),
            "image_count": images,
            "history_pairs": len(self._history),
            "is_persisted": self.is_persisted,
            "send_in_flight": self._send_in_flight,
            "has_greeting": bool(messages) and not messages[0].is_from_user,
            "user_id": user.user_id if user else None,
            "user_email": user.email if user else None,
            "last_message_time": to_iso(messages[-1].created_at) if messages else None,
            "conversation_title": self.conversation_title(),
            "has_images": images > 0,
        }
