from typing import Any, Dict, List, Optional, Protocol

from .models import ChatMessage, ConversationSummary


class PersistenceAdapter(Protocol):
    """会话持久化协议。

    会话引擎只消费这个接口，不关心具体存储结构。调用可能失败，
    失败由调用方记录日志后吞掉，内存状态不回滚。
    """

    def save_conversation(self, conversation_id: str, title: str, model: Optional[str] = None) -> Optional[Dict[str, Any]]:
        ...

    def save(self, conversation_id: str, message: ChatMessage) -> Optional[Dict[str, Any]]:
        ...

    def truncate_messages(self, conversation_id: str, keep: int) -> None:
        """只保留按时间排序的前 keep 条消息（编辑重发时使用）。"""
        ...

    def load(self, conversation_id: str) -> List[ChatMessage]:
        ...

    def load_all(self) -> List[ConversationSummary]:
        ...

    def delete_conversation(self, conversation_id: str) -> None:
        ...
