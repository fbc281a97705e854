# historia/core/factory.py

from __future__ import annotations

from typing import Optional

from historia.clients.completion_client import CompletionClient
from historia.config.settings import Settings, load_settings
from historia.core.chat import ConversationSession
from historia.core.history import HistoryStore
from historia.memory.gateway import PersistenceGateway
from historia.memory.identity import Identity, IdentityProvider, StaticIdentityProvider
from historia.memory.repository import ConversationStore, SQLiteConversationStore
from historia.memory.rest_store import RestConversationStore
from historia.personas.catalog import PersonaCatalog
from historia.utils.logging import get_logger

logger = get_logger(__name__)


def build_store(settings: Settings) -> ConversationStore:
    if settings.store == "supabase":
        logger.info("Using Supabase store at %s", settings.supabase_url)
        return RestConversationStore(
            settings.supabase_url or "",
            settings.supabase_key or "",
            timeout_seconds=settings.timeout_seconds,
        )

    store = SQLiteConversationStore(settings.db_path)
    store.initialize()
    logger.info("Using SQLite store at %s", settings.db_path)
    return store


def build_session(
    settings: Optional[Settings] = None,
    identity: Optional[Identity] = None,
    *,
    identity_provider: Optional[IdentityProvider] = None,
    catalog: Optional[PersonaCatalog] = None,
    history_store: Optional[HistoryStore] = None,
) -> ConversationSession:
    """
    Wire a ConversationSession from settings: completion client, store,
    gateway and persona catalog. Pass `identity_provider` to plug in a real
    sign-in source; otherwise `identity` is used as a fixed user (None means
    signed out, so nothing is persisted).
    """
    settings = settings or load_settings()
    provider = identity_provider or StaticIdentityProvider(identity)
    gateway = PersistenceGateway(build_store(settings), provider)
    return ConversationSession(
        CompletionClient(settings),
        gateway,
        catalog or PersonaCatalog.from_json(settings.personas_path),
        history_store=history_store,
        history_pairs=settings.history_pairs,
    )
