"""统一的会话与流式数据模型。

本模块定义了客户端内部共享的标准数据结构：

- Part: 消息的一个片段（文本或 base64 内联图片）。
- ChatMessage: 一条会话消息（user/model/error）。
- Conversation: 一个会话及其有序消息列表。
- StreamChunk: 流式解码出的一个增量单元。
- HistoryMessage: 随请求回传给生成服务的历史消息。

消息与会话均为不可变值（frozen dataclass），每次状态变化都构造新对象，
观察者可以通过对象身份判断是否发生了更新。
线上格式（camelCase JSON）与这些模型之间的转换也集中在这里。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from chat_core.session.chat_session import ChatSession


# 消息角色：error 只在本地展示，不会回传给生成服务
Role = Literal["user", "model", "error"]
HistoryRole = Literal["user", "model"]


@dataclass(frozen=True)
class InlineData:
    """base64 编码的内联二进制数据（通常是图片）。"""

    data: str
    mime_type: str


@dataclass(frozen=True)
class Part:
    """消息片段。

    - text: 纯文本内容。
    - inline_data: 内联图片。
    - extra: 服务端可能返回的其他字段，原样保留以便回写。
    """

    text: Optional[str] = None
    inline_data: Optional[InlineData] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        if self.text is not None:
            payload["text"] = self.text
        if self.inline_data is not None:
            payload["inlineData"] = {
                "data": self.inline_data.data,
                "mimeType": self.inline_data.mime_type,
            }
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "Part":
        if isinstance(payload, str):
            return cls(text=payload)
        if not isinstance(payload, dict):
            return cls()
        extra = {k: v for k, v in payload.items() if k not in ("text", "inlineData")}
        text = payload.get("text")
        inline = payload.get("inlineData")
        inline_data = None
        if isinstance(inline, dict) and isinstance(inline.get("data"), str):
            inline_data = InlineData(data=inline["data"], mime_type=inline.get("mimeType") or "")
        return cls(
            text=text if isinstance(text, str) else None,
            inline_data=inline_data,
            extra=extra,
        )


@dataclass(frozen=True)
class GroundingSource:
    """模型回答附带的引用来源。"""

    uri: str
    title: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"uri": self.uri}
        if self.title is not None:
            payload["title"] = self.title
        return payload


@dataclass(frozen=True)
class ChatMessage:
    """一条会话消息。

    - role: user / model / error。
    - parts: 有序片段。
    - sources: 仅 model 消息可能携带，已按 uri 去重。
    """

    role: Role
    parts: Tuple[Part, ...] = ()
    sources: Optional[Tuple[GroundingSource, ...]] = None

    @classmethod
    def user(cls, text: str, parts: Optional[Iterable[Part]] = None) -> "ChatMessage":
        items = tuple(parts or ())
        return cls(role="user", parts=items or (Part(text=text),))

    @classmethod
    def model(
        cls,
        text: str,
        sources: Optional[Iterable[GroundingSource]] = None,
    ) -> "ChatMessage":
        return cls(
            role="model",
            parts=(Part(text=text),),
            sources=tuple(sources) if sources is not None else None,
        )

    @classmethod
    def placeholder(cls) -> "ChatMessage":
        """流开始前占位用的空 model 消息。"""
        return cls(role="model", parts=(Part(text=""),))

    @classmethod
    def error(cls, text: str) -> "ChatMessage":
        return cls(role="error", parts=(Part(text=text),))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text)

    @property
    def is_placeholder(self) -> bool:
        return self.role == "model" and not self.sources and all(
            not p.text and p.inline_data is None for p in self.parts
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": {"parts": [p.to_payload() for p in self.parts]},
            "sources": [s.to_payload() for s in self.sources] if self.sources is not None else None,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        content = payload.get("content") or {}
        raw_sources = payload.get("sources")
        sources = None
        if isinstance(raw_sources, list):
            sources = tuple(
                GroundingSource(uri=s["uri"], title=s.get("title"))
                for s in raw_sources
                if isinstance(s, dict) and s.get("uri")
            )
        return cls(
            role=payload.get("role") or "model",
            parts=tuple(Part.from_payload(p) for p in content.get("parts") or []),
            sources=sources,
        )


@dataclass(frozen=True)
class Conversation:
    """一个会话。

    id 在创建时分配，生命周期内保持不变；messages 只能整体替换。
    chat_session 可为空，允许先创建会话再绑定会话对象。
    """

    id: str
    title: str
    messages: Tuple[ChatMessage, ...] = ()
    chat_session: Optional["ChatSession"] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ConversationSummary:
    """持久化层返回的会话概要，按最近更新时间排序。"""

    id: str
    title: str
    model: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryMessage:
    """回传给生成服务的一条历史消息（仅文本片段）。"""

    role: HistoryRole
    parts: Tuple[Part, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [p.to_payload() for p in self.parts]}


@dataclass(frozen=True)
class StreamChunk:
    """流式解码出的一个增量单元。

    raw 保存解码后的原始 JSON 值（或 {"text": line}），text 和 candidates
    只是对 raw 的类型化视图，字段缺失或类型不符时为 None。
    """

    raw: Any
    text: Optional[str] = None
    candidates: Optional[List[Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "StreamChunk":
        if not isinstance(payload, dict):
            return cls(raw=payload)
        text = payload.get("text")
        candidates = payload.get("candidates")
        return cls(
            raw=payload,
            text=text if isinstance(text, str) else None,
            candidates=candidates if isinstance(candidates, list) else None,
        )

    @classmethod
    def from_text(cls, text: str) -> "StreamChunk":
        return cls(raw={"text": text}, text=text)

    def grounding_sources(self) -> List[GroundingSource]:
        """从 candidates[0].groundingMetadata.groundingChunks 中提取 web 来源。"""

        if not self.candidates:
            return []
        first = self.candidates[0]
        if not isinstance(first, dict):
            return []
        metadata = first.get("groundingMetadata") or {}
        chunks = metadata.get("groundingChunks") if isinstance(metadata, dict) else None
        if not isinstance(chunks, list):
            return []
        sources: List[GroundingSource] = []
        for item in chunks:
            web = item.get("web") if isinstance(item, dict) else None
            if isinstance(web, dict) and web.get("uri"):
                sources.append(GroundingSource(uri=web["uri"], title=web.get("title") or ""))
        return sources
