from typing import Iterable, List

from chat_core.domain.models import ChatMessage, HistoryMessage


def build_history(messages: Iterable[ChatMessage]) -> List[HistoryMessage]:
    """把会话中已有的消息转换为回传给生成服务的历史。

    - 只保留 user / model 角色（error 消息仅本地展示）；
    - 只保留非空文本片段，图片片段不回传；
    - 没有剩余片段的消息（包括空占位消息）整条丢弃。

    必须在追加本轮 user 消息与占位消息之前调用，避免把正在生成的这一轮重复发送。
    """

    history: List[HistoryMessage] = []
    for msg in messages:
        if msg.role not in ("user", "model"):
            continue
        text_parts = tuple(p for p in msg.parts if p.text)
        if not text_parts:
            continue
        history.append(HistoryMessage(role=msg.role, parts=text_parts))
    return history
