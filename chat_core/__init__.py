"""Chat Core 顶层包。

该包提供对话助手前端的会话状态引擎，
包括消息存储与视图、上下文解析、会话编排与项目隔离、
订阅通知、模型调用边界与会话记录持久化等能力。
"""

from chat_core.api.service import build_orchestrator
from chat_core.engine.orchestrator import ConversationOrchestrator

__all__ = ["ConversationOrchestrator", "build_orchestrator"]
