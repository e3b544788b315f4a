"""Provider 层共享的请求/响应数据模型。

本模块定义了模型调用边界内部使用的标准数据结构：

- ChatMessage: 发给 Provider 的一条消息（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatStreamChunk: 从 Provider 流式响应解析出的统一增量结果。

会话状态本身由 chat_core.domain.message 中的 Message 维护，
这里只负责 "项目内部统一模型 ⇄ 厂商 JSON" 之间的中转。
"""

from dataclasses import dataclass
from typing import List, Optional

from chat_core.domain.message import Role


@dataclass
class ChatMessage:
    """一条发给 Provider 的消息。"""

    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    Provider 适配层负责把本结构转换成各家 API 的 JSON 请求体。
    """

    provider: str  # 逻辑 Provider 名，如 "kimi"
    model: str  # 逻辑模型名，如 "chat"（再由 registry 映射为真实模型名）
    messages: List[ChatMessage]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果。

    每次流式回调由若干 choice 组成，choice.delta 代表本次增量内容。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def text(self) -> str:
        """index=0 候选的增量文本，没有则为空串。"""
        for choice in self.choices:
            if choice.index == 0:
                return choice.delta.content or ""
        return ""
