"""领域层模型与协议。

包含：
- models: Part / ChatMessage / Conversation / StreamChunk 等不可变模型。
- conversation: 持久化适配器协议 PersistenceAdapter。
- exceptions: 业务异常类型定义。
"""
