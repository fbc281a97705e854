from historia.memory.gateway import PersistenceGateway
from historia.memory.identity import Identity, StaticIdentityProvider
from historia.memory.models import AuthorRole, Turn
from historia.memory.repository import SQLiteConversationStore, StoreError, TextSearchUnavailable
from historia.memory.result import StoreErrorKind


class RecordingStore:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def _record(*args, **kwargs):
            self.calls.append(name)
            raise AssertionError(f"store.{name} should not be called")

        return _record


class NoSearchStore(SQLiteConversationStore):
    def search_conversations(self, *, owner_id, text):
        raise TextSearchUnavailable("full text search disabled")


class BrokenStore(SQLiteConversationStore):
    def list_conversations(self, **kwargs):
        raise StoreError("disk I/O error")


def user_turn(body, **extra):
    return Turn.create(author_role=AuthorRole.USER, author_id="user-1", author_display_name="Ada", body=body, **extra)


def test_signed_out_calls_never_touch_the_store(socrates):
    store = RecordingStore()
    gateway = PersistenceGateway(store, StaticIdentityProvider(None))

    results = [
        gateway.create_conversation(socrates, "hi"),
        gateway.list_conversations(),
        gateway.get_turns("c1"),
        gateway.toggle_bookmark("c1"),
        gateway.search_conversations("x"),
        gateway.get_conversation("c1"),
        gateway.count_conversations(),
    ]

    assert all(not r.ok and r.kind == StoreErrorKind.AUTH_REQUIRED for r in results)
    assert store.calls == []


def test_create_append_and_read_back(gateway, socrates):
    conv = gateway.create_conversation(socrates, "What is the good life?").value
    assert conv.title == "Chat with Socrates: What is the good"
    assert conv.turn_count == 0

    first = user_turn("What is the good life?", conversation_id=conv.id)
    photo = user_turn("", conversation_id=conv.id, image_ref="https://img/agora.png")
    assert gateway.append_turn(conv.id, first).ok
    assert gateway.append_turn(conv.id, photo).ok

    turns = gateway.get_turns(conv.id).value
    assert [t.id for t in turns] == [first.id, photo.id]

    refreshed = gateway.get_conversation(conv.id).value
    assert refreshed.turn_count == 2
    assert refreshed.preview == "📷 Shared an image"
    assert [c.id for c in gateway.conversations_with_images().value] == [conv.id]


def test_toggle_bookmark_flips_state(gateway, socrates):
    conv = gateway.create_conversation(socrates, "hi").value
    assert gateway.toggle_bookmark(conv.id).value is True
    assert [c.id for c in gateway.list_conversations(bookmarked_only=True).value] == [conv.id]
    assert gateway.toggle_bookmark(conv.id).value is False
    assert gateway.list_conversations(bookmarked_only=True).value == []


def test_missing_conversation(gateway):
    assert gateway.get_conversation("nope").kind == StoreErrorKind.NOT_FOUND
    assert gateway.toggle_bookmark("nope").kind == StoreErrorKind.NOT_FOUND
    assert gateway.get_turns("nope").kind == StoreErrorKind.NOT_FOUND


def test_update_title_and_delete(gateway, socrates):
    conv = gateway.create_conversation(socrates, "hi").value
    assert gateway.update_title(conv.id, "Renamed").ok
    assert gateway.get_conversation(conv.id).value.title == "Renamed"

    assert gateway.delete_conversation(conv.id).ok
    assert gateway.count_conversations().value == 0


def test_search_fallback_matches_store_search(tmp_path, identity, catalog):
    path = tmp_path / "shared.db"
    primary = SQLiteConversationStore(path)
    primary.initialize()
    with_search = PersistenceGateway(primary, identity)
    without_search = PersistenceGateway(NoSearchStore(path), identity)

    for persona_id, text in [
        ("socrates", "What is VIRTUE?"),
        ("marie_curie", "Tell me about radium"),
        ("sun_tzu", "virtuous generals"),
        ("shakespeare", "To be or not"),
    ]:
        with_search.create_conversation(catalog.get(persona_id), text)

    for query in ["virtue", "Chat with", "RADIUM", "nothing here", ""]:
        expected = [c.id for c in with_search.search_conversations(query).value]
        fallback = [c.id for c in without_search.search_conversations(query).value]
        assert fallback == expected


def test_store_failures_become_err(tmp_path, identity):
    store = BrokenStore(tmp_path / "broken.db")
    store.initialize()
    result = PersistenceGateway(store, identity).list_conversations()
    assert not result.ok
    assert result.kind == StoreErrorKind.STORE_FAILURE
    assert "disk I/O error" in result.detail


def test_other_users_cannot_read_or_append_turns(store, gateway, socrates):
    intruder = PersistenceGateway(store, StaticIdentityProvider(Identity(user_id="user-2", display_name="Eve")))
    conv = gateway.create_conversation(socrates, "hi").value
    assert gateway.append_turn(conv.id, user_turn("my secret", conversation_id=conv.id)).ok

    assert intruder.get_turns(conv.id).kind == StoreErrorKind.NOT_FOUND
    assert intruder.append_turn(conv.id, user_turn("planted", conversation_id=conv.id)).kind == StoreErrorKind.NOT_FOUND
    assert intruder.get_conversation(conv.id).kind == StoreErrorKind.NOT_FOUND
    assert intruder.conversations_with_images().value == []

    assert [t.body for t in gateway.get_turns(conv.id).value] == ["my secret"]
    assert gateway.get_conversation(conv.id).value.turn_count == 1


def test_unopenable_store_becomes_store_failure(tmp_path, identity, socrates):
    gateway = PersistenceGateway(SQLiteConversationStore(tmp_path / "missing-dir" / "x.db"), identity)

    assert gateway.create_conversation(socrates, "hi").kind == StoreErrorKind.STORE_FAILURE
    assert gateway.get_turns("c1").kind == StoreErrorKind.STORE_FAILURE
    assert gateway.get_conversation("c1").kind == StoreErrorKind.STORE_FAILURE
    assert gateway.ping() is False
