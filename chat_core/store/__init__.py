"""会话状态存储。"""

from chat_core.store.conversation_store import ConversationStore, derive_title
from chat_core.store.sources import dedupe_sources

__all__ = ["ConversationStore", "dedupe_sources", "derive_title"]
