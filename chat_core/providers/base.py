"""生成服务客户端抽象接口。

会话层与引擎不直接依赖 httpx，而是依赖此协议：

- GenerationHttpClient 是基于 HTTP 的默认实现；
- 测试中可以用任意实现了这三个方法的假对象替换。
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

from chat_core.domain.models import Part, StreamChunk


class GenerationClient(Protocol):
    """生成服务客户端协议。

    实现者需要提供：
    - name: 后端名称，用于日志。
    - default_model: 未指定模型时使用的模型名。
    - generate_stream(payload): 流式对话，返回 StreamChunk 迭代器。
    - generate_image(parts): 非流式图片生成，返回图片片段。
    """

    name: str
    default_model: str

    def generate_stream(self, payload: Dict[str, Any]) -> Iterable[StreamChunk]:
        ...

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        ...

    def generate_image(self, parts: List[Part]) -> List[Part]:
        ...
