"""单个会话的消息存储。

MessageStore 持有一个会话的规范有序消息记录，并在读取时现算两个视图：

- get_display_messages(): 展示视图；
- get_llm_messages(): 模型输入视图（排除 error 消息）。

视图从不跨修改缓存，保证每次读取都是最新的。所有同步方法在一次调用内
原子地完成修改；带 await 的 update* 方法先完成上下文解析，再一次性赋值。
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from chat_core.context.resolver import ContextResolver
from chat_core.domain.exceptions import InvalidStateError, NotFoundError
from chat_core.domain.message import (
    LEGAL_TRANSITIONS,
    DisplayMessage,
    LLMMessage,
    Message,
    MessageContext,
    MessageStatus,
    display_view,
    llm_view,
)


class MessageStore:
    def __init__(self, resolver: ContextResolver):
        self._resolver = resolver
        # dict 保持插入顺序；append 只在末尾追加，truncate 只删除尾部，因此顺序即 sequence 顺序
        self._messages: Dict[str, Message] = {}
        self._next_sequence = 0
        self._last_created_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages.values()))

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    # ---- 基本读写 ----

    def append(self, message: Message, created_at: Optional[datetime] = None) -> Message:
        """追加消息，分配下一个 sequence 与单调递增的 created_at。"""
        if message.id in self._messages:
            raise InvalidStateError(f"duplicate message id: {message.id}", message_id=message.id)
        message.sequence = self._next_sequence
        message.created_at = self._monotonic(created_at or datetime.now(timezone.utc))
        self._messages[message.id] = message
        self._next_sequence += 1
        return message

    def get(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise NotFoundError(message_id) from None

    def last(self) -> Optional[Message]:
        if not self._messages:
            return None
        return next(reversed(self._messages.values()))

    def previous_user_message(self, message_id: str) -> Optional[Message]:
        """返回 message_id 之前最近的一条 user 消息。"""
        target = self.get(message_id)
        found: Optional[Message] = None
        for m in self._messages.values():
            if m.sequence >= target.sequence:
                break
            if m.role == "user":
                found = m
        return found

    # ---- 内容修改 ----

    async def update_text(self, message_id: str, display_text: str) -> Message:
        return await self.update(message_id, display_text=display_text)

    async def update_context(self, message_id: str, context: MessageContext) -> Message:
        return await self.update(message_id, context=context)

    async def update(
        self,
        message_id: str,
        display_text: Optional[str] = None,
        context: Optional[MessageContext] = None,
    ) -> Message:
        """替换原文和/或上下文，并重新计算 processed_text。

        仅允许修改 complete 状态的消息。解析期间可能挂起，
        因此在 await 之后再次校验状态，然后一次性赋值。
        """
        message = self._require_complete(message_id)
        new_text = message.display_text if display_text is None else display_text
        new_context = message.context if context is None else context

        if message.role == "assistant":
            processed, degraded = new_text, []
        else:
            resolution = await self._resolver.compose(new_text, new_context)
            processed, degraded = resolution.text, resolution.degraded

        message = self._require_complete(message_id)
        message.display_text = new_text
        message.context = new_context
        message.processed_text = processed
        message.meta["degraded"] = [d.marker for d in degraded]
        return message

    def append_stream_delta(self, message_id: str, fragment: str) -> Message:
        message = self.get(message_id)
        if message.status != "streaming":
            raise InvalidStateError(
                f"cannot append stream delta to a {message.status} message",
                message_id=message_id,
            )
        message.display_text += fragment
        if message.role == "assistant":
            message.processed_text += fragment
        return message

    # ---- 状态迁移 ----

    def set_status(self, message_id: str, status: MessageStatus) -> Message:
        message = self.get(message_id)
        if (message.status, status) not in LEGAL_TRANSITIONS:
            raise InvalidStateError(
                f"illegal status transition {message.status} -> {status}",
                message_id=message_id,
            )
        message.status = status
        return message

    def set_error(self, message_id: str, text: str) -> Message:
        """迁移到 error，并把可读的错误描述作为 display_text。"""
        message = self.set_status(message_id, "error")
        message.display_text = text
        message.processed_text = ""
        return message

    # ---- 删除 ----

    def truncate_from(self, sequence: int) -> List[Message]:
        """删除所有 sequence >= 给定值的消息（单步原子操作）。"""
        removed = [m for m in self._messages.values() if m.sequence >= sequence]
        for m in removed:
            del self._messages[m.id]
        last = self.last()
        self._next_sequence = last.sequence + 1 if last else 0
        return removed

    def remove(self, message_id: str) -> Message:
        """只删除一条消息；其余消息保留原 sequence（允许出现空洞）。"""
        message = self.get(message_id)
        del self._messages[message_id]
        return message

    # ---- 视图 ----

    def get_display_messages(self) -> List[DisplayMessage]:
        return [display_view(m) for m in self._messages.values()]

    def get_llm_messages(self) -> List[LLMMessage]:
        return llm_view(self._messages.values())

    # ---- helpers -------------------------------------------------

    def _require_complete(self, message_id: str) -> Message:
        message = self.get(message_id)
        if message.status != "complete":
            raise InvalidStateError(
                f"cannot modify a {message.status} message",
                message_id=message_id,
            )
        return message

    def _monotonic(self, ts: datetime) -> datetime:
        if self._last_created_at is not None and ts <= self._last_created_at:
            ts = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = ts
        return ts
