"""生成服务端点与模型配置。

本模块集中维护：

- 后端提供的三个端点路径（流式对话、纯文本、图片生成）；
- 前端可选的模型列表以及默认模型。

上层只传模型名，具体请求发往哪个路径由这里决定，便于后端调整路由。"""

from dataclasses import dataclass
from typing import Dict, List, Mapping


@dataclass
class ModelConfig:
    """单个可选模型的配置。"""

    name: str
    label: str
    supports_vision: bool = True


@dataclass
class EndpointConfig:
    stream: str
    text: str
    image: str


@dataclass
class ProviderConfig:
    """某个生成后端的整体配置。"""

    name: str
    endpoints: EndpointConfig
    models: Dict[str, ModelConfig]
    default_model: str


GEMINI_BACKEND = ProviderConfig(
    name="gemini",
    endpoints=EndpointConfig(
        stream="/api/gemini/generate-stream",
        text="/api/gemini/generate",
        image="/api/gemini/generate-image",
    ),
    models={
        "gemini-2.5-flash": ModelConfig(name="gemini-2.5-flash", label="Gemini 2.5 Flash"),
        "gemini-2.0-flash-exp": ModelConfig(name="gemini-2.0-flash-exp", label="Gemini 2.0 Flash (experimental)"),
        "gemma-3-27b-it": ModelConfig(name="gemma-3-27b-it", label="Gemma 3 27B"),
    },
    default_model="gemma-3-27b-it",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "gemini": GEMINI_BACKEND,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def list_models(name: str = "gemini") -> List[ModelConfig]:
    return list(get_provider_config(name).models.values())
