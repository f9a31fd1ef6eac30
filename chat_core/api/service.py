"""对外 API 服务模块。

提供简化的函数接口供宿主应用（Web 后端、桌面壳等）调用。
"""

from typing import Any, Dict, List, Optional

from chat_core.agents.chat_engine import ChatEngine
from chat_core.config.settings import settings
from chat_core.domain.models import ChatMessage, Part
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.providers import create_client
from chat_core.store.conversation_store import ConversationStore


_engine: Optional[ChatEngine] = None


def get_default_engine() -> ChatEngine:
    """获取默认的 ChatEngine 实例（单例），首次创建时加载已保存的会话。"""
    global _engine
    if _engine is None:
        persistence = JsonPersistenceAdapter(root=settings.storage_root) if settings.persistence_enabled else None
        _engine = ChatEngine(
            store=ConversationStore(title_max_words=settings.title_max_words),
            client=create_client(),
            persistence=persistence,
        )
        _engine.load_saved_conversations()
    return _engine


def _message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "role": message.role,
        "parts": [p.to_payload() for p in message.parts],
        "sources": [s.to_payload() for s in message.sources] if message.sources is not None else None,
    }


def send_chat(
    text: str,
    conversation_id: Optional[str] = None,
    parts: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """发送一条消息并等待本轮结束。

    Args:
        text: 用户输入内容
        conversation_id: 会话ID（可选，不提供则创建新会话）
        parts: 线上格式的附加片段（可选，例如 inlineData 图片）

    Returns:
        包含会话ID与最终消息的字典；门控拒绝时 message 为 None
    """
    engine = get_default_engine()
    if conversation_id:
        engine.select_conversation(conversation_id)
    else:
        engine.start_new_chat()
    try:
        message = engine.send_message(text, [Part.from_payload(p) for p in parts or []])
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    return {
        "conversation_id": engine.active_conversation_id,
        "message": _message_to_dict(message) if message is not None else None,
    }


def list_conversations() -> List[Dict[str, Any]]:
    """列出内存中的所有会话。"""
    engine = get_default_engine()
    return [
        {"id": c.id, "title": c.title, "message_count": len(c.messages)}
        for c in engine.store.conversations.values()
    ]


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息；会话不存在时返回空列表。"""
    engine = get_default_engine()
    conv = engine.store.get(conversation_id)
    if conv is None:
        return []
    return [_message_to_dict(m) for m in conv.messages]
