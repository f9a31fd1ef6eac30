from typing import Any, Dict, Iterable, List, Optional, Sequence

from chat_core.domain.models import HistoryMessage, Part, StreamChunk
from chat_core.providers.base import GenerationClient


def build_request_body(
    message: str,
    history: Optional[Sequence[HistoryMessage]] = None,
    parts: Optional[Sequence[Part]] = None,
    model: Optional[str] = None,
    default_model: Optional[str] = None,
) -> Dict[str, Any]:
    """构造生成端点的请求体。

    多模态 parts 优先于纯文本 prompt；history 只在非空时携带；
    未指定模型时使用 default_model。
    """

    body: Dict[str, Any] = {"model": model or default_model}
    if parts:
        body["parts"] = [p.to_payload() for p in parts]
    else:
        body["prompt"] = message
    if history:
        body["history"] = [h.to_payload() for h in history]
    return body


class ChatSession:
    """对单个会话的轻量包装。

    只负责请求整形，返回的 chunk 迭代器原样来自客户端的解码器。
    同一个会话可以顺序发起多次调用，但不支持并发调用，需要由调用方串行化。
    """

    def __init__(self, client: GenerationClient, default_model: Optional[str] = None):
        self._client = client
        self._default_model = default_model

    @property
    def default_model(self) -> Optional[str]:
        return self._default_model or getattr(self._client, "default_model", None)

    def send_message_stream(
        self,
        message: str,
        history: Optional[Sequence[HistoryMessage]] = None,
        parts: Optional[List[Part]] = None,
        model: Optional[str] = None,
    ) -> Iterable[StreamChunk]:
        body = build_request_body(
            message,
            history=history,
            parts=parts,
            model=model,
            default_model=self.default_model,
        )
        return self._client.generate_stream(body)
