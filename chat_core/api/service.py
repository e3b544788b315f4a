"""对外 API 服务模块。

提供组合根（composition root）：根据 Settings 显式构造并装配各组件，
组件的生命周期归调用方（宿主进程）所有，不使用模块级单例。
另提供把视图序列化为普通 dict 的辅助函数，供 UI / HTTP 层使用。
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.context.active_note import ActiveNoteTracker
from chat_core.context.resolver import ContextResolver
from chat_core.context.sources import HttpUrlSource, LocalVaultSource
from chat_core.domain.conversation import IdentityProvider, ModelInvoker
from chat_core.engine.identity import StaticIdentityProvider
from chat_core.engine.orchestrator import ConversationOrchestrator
from chat_core.infrastructure.storage.json_store import JsonTranscriptStore
from chat_core.providers import create_provider
from chat_core.providers.invoker import ProviderModelInvoker
from chat_core.state.subscription import SubscriptionBus


def build_orchestrator(
    cfg: Optional[Settings] = None,
    *,
    invoker: Optional[ModelInvoker] = None,
    identity_provider: Optional[IdentityProvider] = None,
    active_notes: Optional[ActiveNoteTracker] = None,
) -> ConversationOrchestrator:
    """装配一个完整的 ConversationOrchestrator。

    Args:
        cfg: 配置对象，默认使用进程级 settings。
        invoker: 模型调用边界；不提供时按 cfg.default_provider 创建 ProviderModelInvoker。
        identity_provider: 项目标识来源；不提供时使用 StaticIdentityProvider（默认会话）。
        active_notes: 活动笔记追踪器；不提供时新建一个。

    Returns:
        装配好的 ConversationOrchestrator。
    """
    cfg = cfg or default_settings
    resolver = ContextResolver(
        notes=LocalVaultSource(Path(cfg.vault_root)),
        urls=HttpUrlSource(timeout=cfg.url_timeout),
        max_chars_per_block=cfg.max_context_chars,
    )
    if invoker is None:
        invoker = ProviderModelInvoker(
            create_provider(cfg),
            model=cfg.default_model,
            temperature=cfg.temperature,
            max_retries=cfg.max_retries,
            retry_backoff=cfg.retry_backoff,
        )
    return ConversationOrchestrator(
        resolver=resolver,
        invoker=invoker,
        identity_provider=identity_provider or StaticIdentityProvider(),
        bus=SubscriptionBus(),
        transcripts=JsonTranscriptStore(root=cfg.storage_root),
        active_notes=active_notes or ActiveNoteTracker(),
        autosave=cfg.autosave_transcripts,
        default_identity=cfg.default_identity,
    )


def get_conversation_messages(orchestrator: ConversationOrchestrator, identity: Optional[str] = None) -> List[Dict[str, Any]]:
    """获取会话的所有展示消息。

    Args:
        orchestrator: 已装配的编排器
        identity: 会话标识（可选，默认当前活动会话）

    Returns:
        消息列表
    """
    return [m.to_dict() for m in orchestrator.get_display_messages(identity)]
