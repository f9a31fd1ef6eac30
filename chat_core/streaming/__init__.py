"""流式解码（字节流 -> StreamChunk）。"""

from chat_core.streaming.decoder import decode_body, decode_line, iter_chunks

__all__ = ["decode_body", "decode_line", "iter_chunks"]
