"""会话引擎核心模块。

负责一次完整的发送轮次：图片意图路由、会话创建、历史构建、
流式消费并实时更新会话表、出错时转换为 error 消息，以及异步持久化。
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import PersistenceAdapter
from chat_core.domain.models import ChatMessage, Conversation, GroundingSource, Part
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import GenerationClient
from chat_core.session.chat_session import ChatSession
from chat_core.session.history import build_history
from chat_core.session.routing import Route, classify, has_inline_image
from chat_core.store.conversation_store import ConversationStore, derive_title
from chat_core.store.sources import dedupe_sources


@dataclass
class EngineConfig:
    model: str
    title_max_words: int = 5
    persistence_enabled: bool = True


@dataclass
class TurnEvent:
    """ChatEngine 产生的流式事件。

    kind:
        - "delta": 收到一个 chunk 后的最新 model 消息。
        - "final": 本轮结束，message 为最终消息（文本或图片）。
        - "error": 本轮失败，message 为替换占位消息的 error 消息。
    """

    kind: Literal["delta", "final", "error"]
    conversation_id: str
    message: ChatMessage
    delta_text: Optional[str] = None


class ChatEngine:
    def __init__(
        self,
        store: ConversationStore,
        client: GenerationClient,
        persistence: Optional[PersistenceAdapter] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._store = store
        self._client = client
        self._persistence = persistence
        self._config = config or EngineConfig(
            model=getattr(settings, "default_model", None) or client.default_model,
            title_max_words=getattr(settings, "title_max_words", 5),
            persistence_enabled=getattr(settings, "persistence_enabled", True),
        )
        self._active_conversation_id: Optional[str] = None
        self._send_lock = threading.Lock()
        self._cancel = threading.Event()
        # 单线程执行器：保证会话先于消息落库，消息按顺序落库
        self._persist_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chat-persist")
        self._pending: List[Future] = []

    # ---- 状态 ----

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def is_loading(self) -> bool:
        return self._send_lock.locked()

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active_conversation_id

    @property
    def active_conversation(self) -> Optional[Conversation]:
        if self._active_conversation_id is None:
            return None
        return self._store.get(self._active_conversation_id)

    @property
    def selected_model(self) -> str:
        return self._config.model

    @selected_model.setter
    def selected_model(self, model: str) -> None:
        self._config.model = model

    def start_new_chat(self) -> None:
        self._active_conversation_id = None

    def select_conversation(self, conversation_id: str) -> Conversation:
        conv = self._store.get(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation: {conversation_id!r}")
        self._active_conversation_id = conversation_id
        return conv

    def cancel(self) -> None:
        """请求中止进行中的流；已收到的内容会作为最终回答保留。"""
        if self.is_loading:
            self._cancel.set()

    # ---- 发送 ----

    def send_message(self, text: str, parts: Optional[List[Part]] = None) -> Optional[ChatMessage]:
        """同步执行一轮发送，返回最终消息（被门控拒绝时返回 None）。"""

        final: Optional[ChatMessage] = None
        for event in self.send_message_stream(text, parts):
            if event.kind in ("final", "error"):
                final = event.message
        return final

    def send_message_stream(self, text: str, parts: Optional[List[Part]] = None) -> Iterator[TurnEvent]:
        """执行一轮发送，逐步产出 TurnEvent。

        每个 chunk 对应一次会话表更新，更新顺序与网络到达顺序一致。
        """

        if not self._send_lock.acquire(blocking=False):
            logger.warning("Send ignored: another response is in flight")
            return
        self._cancel.clear()
        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "model": self._config.model}
        cid: Optional[str] = None
        turn_open = False
        try:
            user_parts = list(parts or [])
            route = classify(text, user_parts)
            log_ctx["route"] = route.value

            conv = self._resolve_conversation(text, log_ctx)
            if conv is None:
                self._log(logging.ERROR, "Could not find or create a conversation", log_ctx)
                return
            cid = conv.id
            log_ctx["conversation_id"] = cid

            # 必须在追加本轮消息之前构建历史
            history = build_history(conv.messages)
            user_message = ChatMessage.user(text, user_parts)
            self._store.append(cid, user_message)
            turn_open = True
            self._persist_message(cid, user_message)
            self._log(logging.INFO, "Stored user message", log_ctx, history_len=len(history))

            try:
                if route is Route.IMAGE:
                    events = self._run_image(cid, text, user_parts, log_ctx)
                else:
                    events = self._run_stream(conv, text, user_parts, history, log_ctx)
                for event in events:
                    yield event
            except Exception as e:
                # 流中任何异常都把占位消息替换为 error 消息，之前的消息不受影响
                description = str(e) or e.__class__.__name__
                self._log(
                    logging.ERROR,
                    "Generation failed",
                    log_ctx,
                    error=description,
                    error_type=e.__class__.__name__,
                )
                error_message = self._store.fail(cid, description)
                yield TurnEvent(kind="error", conversation_id=cid, message=error_message)
        finally:
            if turn_open and self._store.is_streaming(cid):
                # 调用方提前放弃了事件迭代：保留已收到的内容并关闭轮次
                self._close_abandoned_turn(cid, log_ctx)
            self._cancel.clear()
            self._send_lock.release()
            self._log(
                logging.INFO,
                "Completed turn",
                log_ctx,
                elapsed_seconds=round(time.time() - start_time, 2),
            )

    def edit_message(self, index: int, new_text: str) -> Optional[ChatMessage]:
        """编辑活动会话中的第 index 条消息：截断其后的消息并重新发送。"""

        cid = self._active_conversation_id
        if cid is None or self.is_loading:
            return None
        if self._store.get(cid) is None:
            return None

        def resend(conversation_id: str, text: str) -> Optional[ChatMessage]:
            # 截断先入持久化队列，保证新一轮消息写在截断之后
            self._submit_persist(
                "truncate_messages",
                lambda p: p.truncate_messages(conversation_id, index),
                conversation_id,
            )
            return self.send_message(text)

        return self._store.edit_and_truncate(cid, index, new_text, send=resend)

    def _resolve_conversation(self, text: str, log_ctx: Dict[str, Any]) -> Optional[Conversation]:
        cid = self._active_conversation_id
        if cid is not None:
            return self._store.get(cid)

        title = derive_title(text, self._config.title_max_words)
        conv = self._store.create(title, chat_session=self._new_session())
        self._active_conversation_id = conv.id
        self._log(logging.INFO, "Created new conversation", {**log_ctx, "conversation_id": conv.id})
        self._submit_persist(
            "save_conversation",
            lambda p: p.save_conversation(conv.id, title, self._config.model),
            conv.id,
        )
        return conv

    def _run_image(
        self,
        cid: str,
        text: str,
        user_parts: List[Part],
        log_ctx: Dict[str, Any],
    ) -> Iterator[TurnEvent]:
        self._log(logging.INFO, "Calling image endpoint", log_ctx)
        image_parts = self._client.generate_image(user_parts or [Part(text=text)])
        message = ChatMessage(role="model", parts=tuple(image_parts))
        self._store.finalize(cid, message)
        self._persist_message(cid, message)
        yield TurnEvent(kind="final", conversation_id=cid, message=message)

    def _run_stream(
        self,
        conv: Conversation,
        text: str,
        user_parts: List[Part],
        history,
        log_ctx: Dict[str, Any],
    ) -> Iterator[TurnEvent]:
        session = conv.chat_session
        if session is None:
            raise RuntimeError("chat session missing for streaming.")

        stream_parts = None
        if has_inline_image(user_parts):
            stream_parts = ([Part(text=text)] if text else []) + user_parts

        self._log(logging.INFO, "Calling generation endpoint (stream)", log_ctx)
        chunks = iter(session.send_message_stream(
            message=text,
            history=history,
            parts=stream_parts,
            model=self._config.model,
        ))
        full_response = ""
        sources: List[GroundingSource] = []
        chunk_count = 0
        try:
            for chunk in chunks:
                if self._cancel.is_set():
                    self._log(logging.INFO, "Stream cancelled", log_ctx, chunk_count=chunk_count)
                    break
                chunk_count += 1
                delta = chunk.text or ""
                full_response += delta
                sources.extend(chunk.grounding_sources())
                message = self._store.stream_update(conv.id, full_response, sources)
                yield TurnEvent(kind="delta", conversation_id=conv.id, message=message, delta_text=delta)
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

        final_message = ChatMessage.model(full_response, dedupe_sources(sources))
        self._store.finalize(conv.id, final_message)
        self._persist_message(conv.id, final_message)
        self._log(
            logging.INFO,
            "Stream finished",
            log_ctx,
            chunk_count=chunk_count,
            source_count=len(final_message.sources or ()),
        )
        yield TurnEvent(kind="final", conversation_id=conv.id, message=final_message)

    def _close_abandoned_turn(self, cid: str, log_ctx: Dict[str, Any]) -> None:
        conv = self._store.get(cid)
        if conv is None or not conv.messages:
            return
        self._store.finalize(cid, conv.messages[-1])
        self._log(logging.WARNING, "Turn abandoned before completion", log_ctx)

    def _new_session(self) -> ChatSession:
        return ChatSession(self._client, default_model=self._config.model)

    # ---- 会话管理与持久化 ----

    def load_saved_conversations(self) -> int:
        """从持久化层加载所有会话，返回加载数量；失败时只记录日志。"""

        if self._persistence is None or not self._config.persistence_enabled:
            return 0
        try:
            conversations = [
                Conversation(
                    id=summary.id,
                    title=summary.title,
                    messages=tuple(self._persistence.load(summary.id)),
                    chat_session=self._new_session(),
                )
                for summary in self._persistence.load_all()
            ]
        except Exception as e:
            logger.error("Error loading saved conversations", extra={"extra": {"error": str(e)}})
            return 0
        self._store.load(conversations)
        return len(conversations)

    def delete_conversation(self, conversation_id: str) -> None:
        if self._store.is_streaming(conversation_id):
            raise ValueError("Cannot delete a conversation while a response is in flight")
        self._store.remove(conversation_id)
        if self._active_conversation_id == conversation_id:
            self._active_conversation_id = None
        self._submit_persist(
            "delete_conversation",
            lambda p: p.delete_conversation(conversation_id),
            conversation_id,
        )

    def wait_for_persistence(self, timeout: Optional[float] = None) -> None:
        """等待已提交的持久化任务完成（测试与关闭时使用）。"""
        pending, self._pending = self._pending, []
        wait(pending, timeout=timeout)

    def close(self) -> None:
        self._persist_executor.shutdown(wait=True)

    def _persist_message(self, cid: str, message: ChatMessage) -> None:
        self._submit_persist("save_message", lambda p: p.save(cid, message), cid)

    def _submit_persist(
        self,
        operation: str,
        fn: Callable[[PersistenceAdapter], Any],
        conversation_id: str,
    ) -> None:
        if self._persistence is None or not self._config.persistence_enabled:
            return
        persistence = self._persistence

        def run() -> None:
            try:
                fn(persistence)
            except Exception as e:
                # 持久化失败只记录日志，不回滚内存状态
                logger.warning(
                    "Persistence failed",
                    extra={"extra": {
                        "operation": operation,
                        "conversation_id": conversation_id,
                        "error": str(e),
                    }},
                )

        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(self._persist_executor.submit(run))

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
