"""OpenAI 兼容的 chat/completions Provider 适配器（Kimi / GLM 通用）。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 {base_url}/chat/completions 的流式 HTTP 请求。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将 SSE 行解析为统一的 ChatStreamChunk。

认证方式统一为 Authorization: Bearer <api_key>。
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
)
from chat_core.providers.registry import ModelConfig, ProviderConfig


class ChatCompletionsClient:
    """chat/completions 流式客户端。

    - name: Provider 名称（供日志/调试使用）。
    - chat_stream: 对外统一调用入口，逐步 yield ChatStreamChunk。
    """

    def __init__(self, config: ProviderConfig, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._config = config
        self._settings = settings
        self.name = config.name

    @property
    def _api_key(self) -> Optional[str]:
        return getattr(self._settings, self._config.api_key_field, None)

    @property
    def _base_url(self) -> str:
        return getattr(self._settings, self._config.base_url_field, None) or self._config.base_url

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。"""

        if not self._api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self._config.api_key_field.upper()} not set",
            )
        try:
            model_cfg = self._config.models[req.model]
        except KeyError:
            raise ValidationError(code="UNKNOWN_MODEL", message=f"{self.name} has no model {req.model!r}")
        payload = self._build_payload(req, model_cfg)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 429:
                        # 限流错误交给 ProviderModelInvoker 做重试/退避
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit")
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=body.decode("utf-8", errors="replace"),
                            http_status=resp.status_code,
                        )
                    async for line in resp.aiter_lines():
                        chunk = self._parse_sse_line(line, req)
                        if chunk is not None:
                            yield chunk
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时、读超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        """将 ChatRequest 转成 chat/completions 所需的请求 JSON。"""

        return {
            "model": model_cfg.provider_model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature if req.temperature is not None else model_cfg.default_temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
            "stream": True,
        }

    def _parse_sse_line(self, line: str, req: ChatRequest) -> Optional[ChatStreamChunk]:
        if not line:
            return None
        data_str = line[5:] if line.startswith("data:") else line
        data_str = data_str.strip()
        if not data_str or data_str == "[DONE]":
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ApiError(code="API_ERROR", message=message or "stream error")
        return self._parse_stream_chunk(data, req)

    def _parse_stream_chunk(self, data: Dict[str, Any], req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。"""

        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            delta_payload = ch.get("delta") or {}
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatMessage(
                        role=delta_payload.get("role") or "assistant",
                        content=delta_payload.get("content") or "",
                    ),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )
