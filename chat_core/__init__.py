"""Chat Core 顶层包。

该包提供聊天客户端的核心实现：流式响应解码、请求整形、
会话状态管理（乐观追加、流式原地替换、编辑截断、来源去重）、
图片意图路由，以及配置加载、日志与持久化适配。
"""

from chat_core.agents.chat_engine import ChatEngine, EngineConfig, TurnEvent
from chat_core.store.conversation_store import ConversationStore

__all__ = ["ChatEngine", "ConversationStore", "EngineConfig", "TurnEvent"]
