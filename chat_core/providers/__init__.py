"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 chat/completions 兼容协议的具体实现 (chat_completions)。
- 把 Provider 适配为会话引擎的模型调用边界 (invoker)。
"""

from typing import Optional

from chat_core.providers.base import ProviderClient
from chat_core.providers.chat_completions import ChatCompletionsClient
from chat_core.providers.registry import get_provider_config


def create_provider(settings, name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "glm")).lower()
    return ChatCompletionsClient(get_provider_config(provider_name), settings)
