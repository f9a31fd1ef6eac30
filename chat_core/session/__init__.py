"""会话层：请求整形、历史构建与图片意图路由。"""

from chat_core.session.chat_session import ChatSession, build_request_body
from chat_core.session.history import build_history
from chat_core.session.routing import Route, classify, has_inline_image

__all__ = [
    "ChatSession",
    "Route",
    "build_history",
    "build_request_body",
    "classify",
    "has_inline_image",
]
