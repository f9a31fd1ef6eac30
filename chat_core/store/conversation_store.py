"""内存中的会话表。

会话表是一个只读映射（conversation_id -> Conversation），每次状态变化都
复制一份新表整体替换（copy-on-write），由一把锁保证同一时刻只有一个写者。
消息本身也是不可变值：流式更新时总是构造新的 model 消息替换最后一条，
观察者只需比较对象身份即可判断是否有更新。

一个会话同一时刻最多只有一个进行中的轮次：append 打开轮次并放入占位消息，
finalize（或 fail）关闭轮次，之后不允许再对该轮次做任何更新。
"""

import threading
from dataclasses import replace
from types import MappingProxyType
from typing import Callable, Iterable, List, Mapping, Optional, TYPE_CHECKING
from uuid import uuid4

from chat_core.domain.exceptions import ConversationStateError
from chat_core.domain.models import ChatMessage, Conversation, GroundingSource
from chat_core.store.sources import dedupe_sources

if TYPE_CHECKING:
    from chat_core.session.chat_session import ChatSession


Listener = Callable[[str, Optional[Conversation]], None]

DEFAULT_TITLE = "New Chat"


def derive_title(text: str, max_words: int = 5) -> str:
    """取首条消息的前 max_words 个词作为会话标题。"""
    return " ".join((text or "").split()[:max_words]) or DEFAULT_TITLE


class ConversationStore:
    def __init__(self, title_max_words: int = 5):
        self._conversations: Mapping[str, Conversation] = MappingProxyType({})
        self._streaming: frozenset[str] = frozenset()
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._title_max_words = title_max_words

    # ---- 查询 ----

    @property
    def conversations(self) -> Mapping[str, Conversation]:
        """当前会话表快照（只读，后续变化不会影响已取得的快照）。"""
        return self._conversations

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._streaming

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册变更监听器，返回取消注册的函数。

        监听器在每次提交之后被调用，参数为 (conversation_id, 新的 Conversation)；
        会话被删除时第二个参数为 None。
        """

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 会话级操作 ----

    def load(self, conversations: Iterable[Conversation]) -> None:
        """用持久化层加载的会话整体替换会话表（进行中的会话保留内存版本）。"""

        loaded = {conv.id: conv for conv in conversations}
        with self._lock:
            for cid in self._streaming:
                current = self._conversations.get(cid)
                if current is not None:
                    loaded[cid] = current
            self._conversations = MappingProxyType(loaded)
        for cid, conv in loaded.items():
            self._notify(cid, conv)

    def create(
        self,
        title: str,
        conversation_id: Optional[str] = None,
        chat_session: Optional["ChatSession"] = None,
    ) -> Conversation:
        cid = conversation_id or str(uuid4())
        conv = Conversation(id=cid, title=title or DEFAULT_TITLE, chat_session=chat_session)
        with self._lock:
            if cid in self._conversations:
                raise ConversationStateError(
                    code="CONVERSATION_EXISTS",
                    message=f"Conversation {cid} already exists",
                    http_status=409,
                )
            self._swap(conv)
        self._notify(cid, conv)
        return conv

    def remove(self, conversation_id: str) -> None:
        with self._lock:
            if conversation_id not in self._conversations:
                return
            table = dict(self._conversations)
            del table[conversation_id]
            self._conversations = MappingProxyType(table)
            self._streaming = self._streaming - {conversation_id}
        self._notify(conversation_id, None)

    # ---- 轮次操作 ----

    def append(
        self,
        conversation_id: Optional[str],
        user_message: ChatMessage,
        chat_session: Optional["ChatSession"] = None,
    ) -> Conversation:
        """追加用户消息并同时放入占位 model 消息，打开一个新轮次。

        会话不存在时自动创建（分配新 id，标题取自消息文本）。
        """

        with self._lock:
            conv = self._conversations.get(conversation_id) if conversation_id else None
            if conv is None:
                conv = Conversation(
                    id=conversation_id or str(uuid4()),
                    title=derive_title(user_message.text, self._title_max_words),
                    chat_session=chat_session,
                )
            if conv.id in self._streaming:
                raise ConversationStateError(
                    code="TURN_IN_FLIGHT",
                    message=f"Conversation {conv.id} already has a response in flight",
                    http_status=409,
                )
            updated = replace(conv, messages=conv.messages + (user_message, ChatMessage.placeholder()))
            self._swap(updated)
            self._streaming = self._streaming | {updated.id}
        self._notify(updated.id, updated)
        return updated

    def stream_update(
        self,
        conversation_id: str,
        cumulative_text: str,
        sources: Iterable[GroundingSource] = (),
    ) -> ChatMessage:
        """用累计文本和去重后的来源构造新的 model 消息，替换最后一条。"""

        message = ChatMessage.model(cumulative_text, dedupe_sources(sources))
        self._replace_last(conversation_id, message, close=False)
        return message

    def finalize(self, conversation_id: str, message: ChatMessage) -> ChatMessage:
        """流结束（或出错）后最后一次替换，并关闭当前轮次。"""

        self._replace_last(conversation_id, message, close=True)
        return message

    def fail(self, conversation_id: str, description: str) -> ChatMessage:
        """把占位消息整体替换为 error 消息，之前的消息保持不变。"""

        return self.finalize(conversation_id, ChatMessage.error(description))

    def truncate(self, conversation_id: str, index: int) -> Conversation:
        """删除 index 及之后的所有消息。"""

        with self._lock:
            conv = self._require(conversation_id)
            if conversation_id in self._streaming:
                raise ConversationStateError(
                    code="TURN_IN_FLIGHT",
                    message="Cannot edit while a response is in flight",
                    http_status=409,
                )
            if not 0 <= index <= len(conv.messages):
                raise ConversationStateError(
                    code="INVALID_INDEX",
                    message=f"Message index {index} out of range (0..{len(conv.messages)})",
                )
            updated = replace(conv, messages=conv.messages[:index])
            self._swap(updated)
        self._notify(conversation_id, updated)
        return updated

    def edit_and_truncate(
        self,
        conversation_id: str,
        index: int,
        new_text: str,
        send: Optional[Callable[[str, str], object]] = None,
    ):
        """编辑第 index 条消息并重新发送。

        两阶段：先截断并提交，再发起新的一轮，保证重新生成时看到的已经是
        截断后的消息列表。send 缺省时只追加新的用户消息与占位消息。
        """

        self.truncate(conversation_id, index)
        if send is None:
            return self.append(conversation_id, ChatMessage.user(new_text))
        return send(conversation_id, new_text)

    # ---- 内部 ----

    def _replace_last(self, conversation_id: str, message: ChatMessage, close: bool) -> None:
        with self._lock:
            conv = self._require(conversation_id)
            if conversation_id not in self._streaming or not conv.messages:
                raise ConversationStateError(
                    code="NO_TURN_IN_FLIGHT",
                    message=f"Conversation {conversation_id} has no response in flight",
                    http_status=409,
                )
            updated = replace(conv, messages=conv.messages[:-1] + (message,))
            self._swap(updated)
            if close:
                self._streaming = self._streaming - {conversation_id}
        self._notify(conversation_id, updated)

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationStateError(
                code="CONVERSATION_NOT_FOUND",
                message=f"Conversation {conversation_id} not found",
                http_status=404,
            )
        return conv

    def _swap(self, conv: Conversation) -> None:
        # 调用方持有锁
        table = dict(self._conversations)
        table[conv.id] = conv
        self._conversations = MappingProxyType(table)

    def _notify(self, conversation_id: str, conv: Optional[Conversation]) -> None:
        for listener in list(self._listeners):
            listener(conversation_id, conv)
