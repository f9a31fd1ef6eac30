"""出站轮次路由：图片生成端点或流式对话端点。"""

import enum
import re
from typing import Iterable, Optional

from chat_core.domain.models import Part


IMAGE_INTENT_KEYWORDS = (
    "create",
    "generate",
    "draw",
    "make",
    "design",
    "show me",
    "picture of",
    "photo of",
    "image of",
    "illustration of",
)

_IMAGE_INTENT_RE = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in IMAGE_INTENT_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


class Route(str, enum.Enum):
    IMAGE = "image"
    STREAM = "stream"


def has_inline_image(parts: Optional[Iterable[Part]]) -> bool:
    return any(p.inline_data is not None for p in parts or ())


def is_image_request(text: str) -> bool:
    return bool(_IMAGE_INTENT_RE.search(text or ""))


def classify(text: str, parts: Optional[Iterable[Part]] = None) -> Route:
    """文本包含图片意图关键词且未附带图片时走图片生成，否则走流式对话。

    附带图片说明用户希望分析这张图，即使措辞里有 "make"、"draw" 也走流式（视觉）端点。
    """

    if is_image_request(text) and not has_inline_image(parts):
        return Route.IMAGE
    return Route.STREAM
