"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话引擎或 API 层做统一捕获，并转换为 error 角色的消息。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、body 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """传输层失败：非 2xx 响应或网络错误，终止当前轮次。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、读取超时等。"""


class ApiError(TransportError):
    """生成服务返回非 2xx 时抛出，message 中包含状态码与响应体。"""


class ValidationError(ApiError):
    """服务端参数校验失败（4xx 且响应体为 {"error": ...}）。

    该错误需要作为 error 消息展示给用户，而不是直接中断程序。
    """


class PersistenceError(BusinessError):
    """持久化读写失败。只记录日志，不影响内存中的会话状态。"""


class ConversationStateError(BusinessError):
    """会话状态不允许当前操作，例如没有进行中的流却要求更新。"""
