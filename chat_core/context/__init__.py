"""上下文附加流水线。

- resolver: 把 MessageContext 解析为文本块。
- sources: 默认的笔记库 / URL 来源实现。
- active_note: 当前活动笔记追踪。
"""

from chat_core.context.resolver import ContextResolver, Resolution

__all__ = ["ContextResolver", "Resolution"]
