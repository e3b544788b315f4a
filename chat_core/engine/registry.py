"""会话注册表：会话标识 -> MessageStore。

每个标识同一时刻至多一个 Store；未见过的标识在首次访问时惰性创建为空 Store。
切换标识不会合并、复制或修改其它标识的 Store。
"""

from typing import Dict

from chat_core.context.resolver import ContextResolver
from chat_core.state.message_store import MessageStore


class ConversationRegistry:
    def __init__(self, resolver: ContextResolver):
        self._resolver = resolver
        self._stores: Dict[str, MessageStore] = {}

    def __contains__(self, identity: str) -> bool:
        return identity in self._stores

    def get(self, identity: str) -> MessageStore:
        store = self._stores.get(identity)
        if store is None:
            store = MessageStore(self._resolver)
            self._stores[identity] = store
        return store

    def reset(self, identity: str) -> MessageStore:
        """用一个全新的空 Store 替换该标识的 Store。"""
        store = MessageStore(self._resolver)
        self._stores[identity] = store
        return store
