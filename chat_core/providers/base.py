"""Provider 抽象接口。

ProviderModelInvoker 不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商（或兼容协议族）实现一个 ProviderClient。
- 负责：将 ChatRequest 转成具体 API 请求，并把流式响应解析为 ChatStreamChunk。

这样可以在不改会话引擎代码的前提下接入更多厂商。
"""

from typing import AsyncIterator, Protocol

from chat_core.domain.models import ChatRequest, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat_stream(req): 执行一次流式对话调用，逐步产出增量。
    """

    name: str

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...
