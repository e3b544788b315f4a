"""模型调用边界的默认实现。

ProviderModelInvoker 把会话引擎给出的有序 LLMMessage 序列转换为 ChatRequest，
交给 ProviderClient 流式调用，并只把文本增量交回会话引擎。

重试策略归这里所有：在收到第一个文本片段之前遇到限流或网络错误时，
按线性退避重试；一旦已有片段产出，任何错误都直接上抛，避免重复输出。
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Sequence

from chat_core.domain.exceptions import NetworkError, RateLimitError
from chat_core.domain.message import LLMMessage
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import ProviderClient


RETRYABLE = (RateLimitError, NetworkError)


class ProviderModelInvoker:
    def __init__(
        self,
        provider: ProviderClient,
        model: str = "chat",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
    ):
        self._provider = provider
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff

    async def invoke(self, messages: Sequence[LLMMessage]) -> AsyncIterator[str]:
        req = ChatRequest(
            provider=self._provider.name,
            model=self._model,
            messages=[ChatMessage(role=m.role, content=m.processed_text) for m in messages],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        log_ctx = {"provider": self._provider.name, "model": self._model}
        attempt = 0
        while True:
            produced = False
            try:
                async for chunk in self._provider.chat_stream(req):
                    text = chunk.text
                    if text:
                        produced = True
                        yield text
                    if chunk.usage:
                        log_event(
                            logging.INFO,
                            "Token usage",
                            log_ctx,
                            prompt_tokens=chunk.usage.prompt_tokens,
                            completion_tokens=chunk.usage.completion_tokens,
                            total_tokens=chunk.usage.total_tokens,
                        )
                return
            except RETRYABLE as e:
                if produced or attempt >= self._max_retries:
                    raise
                attempt += 1
                delay = self._retry_backoff * attempt
                log_event(
                    logging.WARNING,
                    "Retrying provider call",
                    log_ctx,
                    attempt=attempt,
                    delay=delay,
                    code=e.code,
                )
                await asyncio.sleep(delay)
