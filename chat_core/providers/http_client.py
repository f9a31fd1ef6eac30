"""生成服务 HTTP 客户端。

本模块负责：

1. 把已经整形好的请求体 POST 到后端的流式 / 文本 / 图片端点。
2. 在解码任何内容之前检查 HTTP 状态，非 2xx 直接抛出（不重试）。
3. 把响应体交给 streaming.decoder 解码为 StreamChunk 序列。

后端可能返回分块刷新的响应体，也可能一次性返回 application/json，
两种情况对调用方来说都是同一个 chunk 迭代器。
"""

import json
from typing import Any, Dict, Iterator, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, ValidationError
from chat_core.domain.models import Part, StreamChunk
from chat_core.providers.registry import GEMINI_BACKEND, ProviderConfig
from chat_core.streaming.decoder import decode_body, iter_chunks


class GenerationHttpClient:
    """生成服务客户端实现。

    - name: 后端名称（供日志/调试使用）。
    - generate_stream: 流式对话，返回惰性的 StreamChunk 迭代器。
    - generate_text / generate_image: 非流式调用，一次返回完整结果。
    """

    name = "gemini"

    def __init__(self, settings, provider: ProviderConfig = GEMINI_BACKEND):
        # Settings 里包含 api_base_url、超时等配置
        self._settings = settings
        self._provider = provider

    @property
    def default_model(self) -> str:
        return getattr(self._settings, "default_model", None) or self._provider.default_model

    def generate_stream(self, payload: Dict[str, Any]) -> Iterator[StreamChunk]:
        """执行一次流式对话调用，逐步 yield StreamChunk。

        请求在第一次迭代时才真正发出；状态码非 2xx 时在产出任何 chunk
        之前抛出 ApiError，message 中包含状态码与响应体。
        """

        url = self._url(self._provider.endpoints.stream)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    if not resp.is_success:
                        body = resp.read().decode("utf-8", errors="replace")
                        raise self._api_error("Server responded", resp.status_code, body)
                    # 即使后端一次性返回 application/json，也按逐行策略原样产出
                    yield from iter_chunks(resp.iter_bytes())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、读取中断等
            raise NetworkError(code="NETWORK_ERROR", message=f"Network error: {e}", http_status=0)

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        """调用纯文本端点，返回完整回答文本。"""

        if not prompt:
            raise ValidationError(code="MISSING_PROMPT", message="Missing 'prompt' string")
        resp = self._post(
            self._provider.endpoints.text,
            {"prompt": prompt, "model": model or self.default_model},
            error_prefix="Server responded",
        )
        # 非流式端点：整个响应体作为一个 JSON 值解码
        return "".join(chunk.text or "" for chunk in decode_body(resp.content))

    def generate_image(self, parts: List[Part]) -> List[Part]:
        """调用图片生成端点，返回一个完整结果（inlineData 片段列表）。"""

        resp = self._post(
            self._provider.endpoints.image,
            {"parts": [p.to_payload() for p in parts]},
            error_prefix="Image API error",
        )
        data = resp.json()
        raw_parts = data.get("parts") if isinstance(data, dict) else None
        return [Part.from_payload(p) for p in raw_parts or []]

    def _post(self, path: str, payload: Dict[str, Any], error_prefix: str) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    self._url(path),
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=f"Network error: {e}", http_status=0)
        if not resp.is_success:
            raise self._api_error(error_prefix, resp.status_code, resp.text)
        return resp

    def _url(self, path: str) -> str:
        base = getattr(self._settings, "api_base_url", "") or ""
        return f"{base.rstrip('/')}{path}"

    @staticmethod
    def _api_error(prefix: str, status: int, body: str) -> ApiError:
        """把非 2xx 响应包装为异常；4xx 且带 {"error"} 的视为校验错误。"""

        message = f"{prefix} {status}: {body}"
        if 400 <= status < 500:
            try:
                parsed = json.loads(body)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("error"):
                return ValidationError(
                    code="VALIDATION_ERROR",
                    message=message,
                    http_status=status,
                    error=parsed["error"],
                )
        return ApiError(code="API_ERROR", message=message, http_status=status, body=body)
