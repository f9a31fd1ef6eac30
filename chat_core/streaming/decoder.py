"""流式响应解码器。

生成服务的响应体格式并不固定：可能是按行分隔的 JSON（NDJSON）、
单个 JSON 对象，也可能直接是纯文本。本模块把字节流统一解码为
StreamChunk 序列：

1. 按 UTF-8 增量解码，跨读取边界的多字节字符与半行内容都先缓存；
2. 每个完整行先尝试 json.loads，成功则原样产出，失败则当作 {"text": line}；
3. 流结束后剩余的缓冲区按同样规则再处理一次。

因此同一段内容无论在哪些位置被切分，解码结果都相同。
"""

import codecs
import json
from typing import Iterable, Iterator, Optional

from chat_core.domain.models import StreamChunk


def decode_line(line: str) -> Optional[StreamChunk]:
    """按单行策略解码；空行返回 None。"""

    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return StreamChunk.from_text(trimmed)
    return StreamChunk.from_payload(payload)


def iter_chunks(byte_stream: Iterable[bytes]) -> Iterator[StreamChunk]:
    """把字节流解码为惰性的 StreamChunk 迭代器（只能消费一次）。"""

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for data in byte_stream:
        if not data:
            continue
        buffer += decoder.decode(data)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            chunk = decode_line(line)
            if chunk is not None:
                yield chunk

    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n"):
        chunk = decode_line(line)
        if chunk is not None:
            yield chunk


def decode_body(body: bytes) -> Iterator[StreamChunk]:
    """非流式回退：没有可逐步读取的响应体时，把完整响应当作一个 JSON 值处理。

    解析成功时原样产出一个 chunk（保留 candidates 等全部字段）；
    空响应体什么也不产出；不是单个 JSON 值时退回到逐行策略。
    """

    text = body.decode("utf-8", errors="replace")
    if not text.strip():
        return
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        yield from iter_chunks([body])
        return
    yield StreamChunk.from_payload(payload)
