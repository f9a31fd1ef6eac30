"""生成服务集成层。

该包下的模块负责：
- 定义客户端抽象接口 (base)。
- 维护端点与模型配置 (registry)。
- 提供基于 HTTP 的具体实现 (http_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import GenerationClient
from chat_core.providers.http_client import GenerationHttpClient
from chat_core.providers.registry import get_provider_config


def create_client(name: Optional[str] = None) -> GenerationClient:
    """根据名称创建客户端实例，默认使用 gemini 后端。"""

    provider = get_provider_config(name or "gemini")
    return GenerationHttpClient(settings, provider=provider)
