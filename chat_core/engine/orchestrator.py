"""会话编排器。

所有修改会话状态的操作（send / edit / regenerate / delete / clear）的唯一入口。
负责协调 MessageStore、ContextResolver 与模型调用边界，并持有会话注册表，
保证不同项目标识之间的会话完全隔离。

并发模型：asyncio 协作式调度。

- 同一会话标识上同一时刻至多一个进行中的操作，第二个修改操作抛出 ConcurrentOperationError；
- 不同标识上的操作相互独立，可以并发进行；
- 生成过程在独立的 asyncio.Task 中消费 token 流，stop() 只取消该 Task，
  已累积的部分输出保留为 complete（零输出时为 error）。
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from chat_core.context.active_note import ActiveNoteTracker
from chat_core.context.resolver import ContextResolver
from chat_core.domain.conversation import (
    DEFAULT_IDENTITY,
    IdentityProvider,
    ModelInvoker,
    TranscriptEntry,
    TranscriptStore,
)
from chat_core.domain.exceptions import (
    BusinessError,
    ConcurrentOperationError,
    GenerationFailure,
    InvalidStateError,
    ValidationError,
)
from chat_core.domain.message import (
    EMPTY_CONTEXT,
    DisplayMessage,
    LLMMessage,
    Message,
    MessageContext,
    display_view,
    new_message_id,
)
from chat_core.engine.registry import ConversationRegistry
from chat_core.infrastructure.logging.logger import log_event
from chat_core.state.message_store import MessageStore
from chat_core.state.subscription import ChangeKind, StoreChange, SubscriptionBus


STOPPED_BEFORE_OUTPUT = "Error: Generation stopped before any output was received"


@dataclass
class _Operation:
    """某个会话标识上正在进行的操作。"""

    identity: str
    message_id: Optional[str] = None
    task: Optional["asyncio.Task[None]"] = None
    stop_requested: bool = False
    received: int = 0


class ConversationOrchestrator:
    def __init__(
        self,
        resolver: ContextResolver,
        invoker: ModelInvoker,
        identity_provider: IdentityProvider,
        bus: Optional[SubscriptionBus] = None,
        transcripts: Optional[TranscriptStore] = None,
        active_notes: Optional[ActiveNoteTracker] = None,
        autosave: bool = False,
        default_identity: str = DEFAULT_IDENTITY,
    ):
        self._resolver = resolver
        self._invoker = invoker
        self._identity_provider = identity_provider
        self._bus = bus or SubscriptionBus()
        self._transcripts = transcripts
        self._active_notes = active_notes
        self._autosave_enabled = autosave and transcripts is not None
        self._default_identity = default_identity
        self._registry = ConversationRegistry(resolver)
        self._active = default_identity
        self._registry.get(default_identity)
        self._ops: Dict[str, _Operation] = {}

    # ---- 只读属性与视图 ----

    @property
    def bus(self) -> SubscriptionBus:
        return self._bus

    @property
    def active_identity(self) -> str:
        return self._active

    def is_generating(self, identity: Optional[str] = None) -> bool:
        return (identity or self._active) in self._ops

    def get_display_messages(self, identity: Optional[str] = None) -> List[DisplayMessage]:
        identity = identity or self._active
        if identity not in self._registry:
            return []
        return self._registry.get(identity).get_display_messages()

    def get_llm_messages(self, identity: Optional[str] = None) -> List[LLMMessage]:
        identity = identity or self._active
        if identity not in self._registry:
            return []
        return self._registry.get(identity).get_llm_messages()

    def get_message(self, message_id: str, identity: Optional[str] = None) -> DisplayMessage:
        return display_view(self._registry.get(identity or self._active).get(message_id))

    # ---- 项目隔离 ----

    def resolve_active_conversation(self) -> str:
        """根据外部项目状态切换活动会话；不做 I/O，不修改被切走的 Store。"""
        identity = self._identity_provider.get_current_identity() or self._default_identity
        self._registry.get(identity)
        if identity != self._active:
            previous, self._active = self._active, identity
            log_event(logging.INFO, "Switched conversation", {}, previous=previous, identity=identity)
            self._notify("switched", identity)
        return identity

    # ---- 修改操作 ----

    async def send(
        self,
        text: str,
        context: Optional[MessageContext] = None,
        *,
        include_active_note: bool = False,
    ) -> Message:
        """追加一条 user 消息，然后流式生成 assistant 回复。

        返回 assistant 消息的快照。生成失败不会抛出，而是记录在该消息的 error 状态中。
        """
        self._check_reentrant()
        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="message text is empty")
        identity = self._active
        store = self._registry.get(identity)
        log_ctx = self._log_ctx(identity, "send")
        with self._operation(identity) as op:
            context = context or EMPTY_CONTEXT
            if include_active_note and self._active_notes is not None:
                note = self._active_notes.active()
                if note:
                    context = context.with_note(note)

            resolution = await self._resolver.compose(text, context)
            user = Message(
                id=new_message_id(),
                role="user",
                display_text=text,
                processed_text=resolution.text,
                context=context,
                status="complete",
                meta={"degraded": [d.marker for d in resolution.degraded]},
            )
            store.append(user)
            self._notify("appended", identity, user.id)
            log_event(logging.INFO, "Stored user message", log_ctx, message_id=user.id, sequence=user.sequence)

            assistant = await self._generate(store, op, log_ctx)
            await self._autosave_async(identity)
        return self._snapshot(assistant)

    async def edit(
        self,
        message_id: str,
        new_text: str,
        new_context: Optional[MessageContext] = None,
    ) -> Message:
        """编辑一条 complete 消息。

        - user 消息：更新原文/上下文，截断其后的全部消息，然后重新生成回复，返回新的 assistant 消息；
        - assistant / system 消息：只替换自身文本，不截断，返回被编辑的消息。
        """
        self._check_reentrant()
        identity = self._active
        store = self._registry.get(identity)
        log_ctx = self._log_ctx(identity, "edit")
        with self._operation(identity) as op:
            target = store.get(message_id)
            if target.status != "complete":
                raise InvalidStateError(f"cannot edit a {target.status} message", message_id=message_id)
            if target.role == "user" and not new_text.strip():
                raise ValidationError(code="EMPTY_MESSAGE", message="message text is empty")

            if target.role != "user":
                context = new_context if target.role == "system" else None
                await store.update(message_id, display_text=new_text, context=context)
                self._notify("updated", identity, message_id)
                log_event(logging.INFO, "Edited message in place", log_ctx, message_id=message_id, role=target.role)
                result = target
            else:
                await store.update(message_id, display_text=new_text, context=new_context)
                self._notify("updated", identity, message_id)
                removed = store.truncate_from(target.sequence + 1)
                self._notify("truncated", identity, message_id)
                log_event(
                    logging.INFO,
                    "Edited user message",
                    log_ctx,
                    message_id=message_id,
                    truncated=len(removed),
                )
                result = await self._generate(store, op, log_ctx)
            await self._autosave_async(identity)
        return self._snapshot(result)

    async def regenerate(self, message_id: str) -> Message:
        """丢弃一条 assistant 消息及其后的全部消息，基于前一条 user 消息重新生成。"""
        self._check_reentrant()
        identity = self._active
        store = self._registry.get(identity)
        log_ctx = self._log_ctx(identity, "regenerate")
        with self._operation(identity) as op:
            target = store.get(message_id)
            if target.role != "assistant" or target.status not in ("complete", "error"):
                raise InvalidStateError(
                    f"only a complete or failed assistant message can be regenerated, got {target.role}/{target.status}",
                    message_id=message_id,
                )
            if store.previous_user_message(message_id) is None:
                raise InvalidStateError("no user message precedes this reply", message_id=message_id)
            removed = store.truncate_from(target.sequence)
            self._notify("truncated", identity, message_id)
            log_event(logging.INFO, "Regenerating reply", log_ctx, message_id=message_id, truncated=len(removed))
            assistant = await self._generate(store, op, log_ctx)
            await self._autosave_async(identity)
        return self._snapshot(assistant)

    def delete_message(self, message_id: str) -> None:
        """只删除这一条消息，不级联删除依赖它的回复。"""
        self._check_reentrant()
        identity = self._active
        self._check_idle(identity)
        store = self._registry.get(identity)
        store.remove(message_id)
        self._notify("removed", identity, message_id)
        log_event(logging.INFO, "Deleted message", self._log_ctx(identity, "delete"), message_id=message_id)
        self._autosave(identity)

    def clear(self) -> None:
        """用空 Store 替换当前会话；不影响其它会话标识。"""
        self._check_reentrant()
        identity = self._active
        self._check_idle(identity)
        self._registry.reset(identity)
        self._notify("cleared", identity)
        log_event(logging.INFO, "Cleared conversation", self._log_ctx(identity, "clear"))
        if self._autosave_enabled:
            self._transcripts.delete(identity)

    def stop(self, identity: Optional[str] = None) -> bool:
        """停止进行中的生成；返回是否确实有生成在进行。"""
        op = self._ops.get(identity or self._active)
        if op is None:
            return False
        op.stop_requested = True
        if op.task is not None and not op.task.done():
            op.task.cancel()
        return True

    # ---- 持久化 ----

    def save(self, identity: Optional[str] = None) -> None:
        if self._transcripts is None:
            raise InvalidStateError("no transcript store configured")
        identity = identity or self._active
        self._transcripts.save(identity, self._transcript_snapshot(identity))

    @staticmethod
    def _entry(message: Message) -> TranscriptEntry:
        return {
            "id": message.id,
            "role": message.role,
            "display_text": message.display_text,
            "context": message.context.to_dict(),
            "created_at": message.created_at,
        }

    def _transcript_snapshot(self, identity: str) -> List[TranscriptEntry]:
        return [self._entry(m) for m in self._registry.get(identity) if m.status == "complete"]

    async def restore(self, identity: Optional[str] = None) -> int:
        """从持久化快照重放消息（全部为 complete 状态），返回恢复的条数。

        只能恢复到空会话；user/system 消息会重新解析上下文以重建 processed_text。
        """
        self._check_reentrant()
        if self._transcripts is None:
            raise InvalidStateError("no transcript store configured")
        identity = identity or self._active
        store = self._registry.get(identity)
        with self._operation(identity):
            if len(store):
                raise InvalidStateError("cannot restore into a non-empty conversation", identity=identity)
            entries = await asyncio.to_thread(self._transcripts.load, identity)
            ids = [entry["id"] for entry in entries]
            if len(set(ids)) != len(ids):
                raise InvalidStateError("transcript contains duplicate message ids", identity=identity)
            rebuilt: List[tuple] = []
            for entry in entries:
                context = MessageContext.from_dict(entry.get("context"))
                text = entry.get("display_text") or ""
                meta: Dict[str, Any] = {"restored": True}
                if entry["role"] == "assistant":
                    processed = text
                else:
                    resolution = await self._resolver.compose(text, context)
                    processed = resolution.text
                    meta["degraded"] = [d.marker for d in resolution.degraded]
                message = Message(
                    id=entry["id"],
                    role=entry["role"],
                    display_text=text,
                    processed_text=processed,
                    context=context,
                    status="complete",
                    meta=meta,
                )
                rebuilt.append((message, entry.get("created_at")))
            # 全部解析完成后一次性追加，观察者不会看到半恢复状态
            try:
                for message, created_at in rebuilt:
                    store.append(message, created_at=created_at)
            except BusinessError:
                self._registry.reset(identity)
                raise
        if rebuilt:
            self._notify("restored", identity)
        log_event(logging.INFO, "Restored conversation", self._log_ctx(identity, "restore"), count=len(rebuilt))
        return len(rebuilt)

    # ---- 生成 ----

    async def _generate(self, store: MessageStore, op: _Operation, log_ctx: Dict[str, Any]) -> Message:
        identity = op.identity
        # 模型输入在追加占位 assistant 消息之前取快照
        llm_messages = store.get_llm_messages()
        assistant = Message(id=new_message_id(), role="assistant", status="pending")
        store.append(assistant)
        op.message_id = assistant.id
        self._notify("appended", identity, assistant.id)

        if op.stop_requested:
            store.set_error(assistant.id, STOPPED_BEFORE_OUTPUT)
            assistant.meta["stopped"] = True
            self._notify("status", identity, assistant.id)
            return assistant

        store.set_status(assistant.id, "streaming")
        self._notify("status", identity, assistant.id)
        log_event(
            logging.INFO,
            "Calling model",
            log_ctx,
            message_id=assistant.id,
            message_count=len(llm_messages),
        )

        op.task = asyncio.create_task(self._consume(store, op, assistant, llm_messages))
        try:
            await asyncio.wait({op.task})
        except asyncio.CancelledError:
            # 调用方被取消：先停止 token 流，收尾消息状态后再继续传播取消
            op.task.cancel()
            try:
                await asyncio.wait({op.task})
            finally:
                # 再次被取消时也要把消息收尾，不能停留在 streaming
                self._finish_stopped(store, op, assistant, log_ctx)
                self._autosave(identity)
            raise

        if op.task.cancelled():
            self._finish_stopped(store, op, assistant, log_ctx)
        elif op.task.exception() is not None:
            self._finish_failed(store, assistant, op.task.exception(), log_ctx)
        else:
            store.set_status(assistant.id, "complete")
            self._notify("status", identity, assistant.id)
            log_event(
                logging.INFO,
                "Stored assistant message",
                log_ctx,
                message_id=assistant.id,
                fragments=op.received,
            )
        return assistant

    async def _consume(
        self,
        store: MessageStore,
        op: _Operation,
        assistant: Message,
        llm_messages: List[LLMMessage],
    ) -> None:
        stream = self._invoker.invoke(llm_messages)
        try:
            async for fragment in stream:
                if not fragment:
                    continue
                store.append_stream_delta(assistant.id, fragment)
                op.received += 1
                self._notify("delta", op.identity, assistant.id)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _finish_stopped(self, store: MessageStore, op: _Operation, assistant: Message, log_ctx: Dict[str, Any]) -> None:
        assistant.meta["stopped"] = True
        if op.received:
            store.set_status(assistant.id, "complete")
        else:
            store.set_error(assistant.id, STOPPED_BEFORE_OUTPUT)
        self._notify("status", op.identity, assistant.id)
        log_event(logging.INFO, "Generation stopped", log_ctx, message_id=assistant.id, fragments=op.received)

    def _finish_failed(
        self,
        store: MessageStore,
        assistant: Message,
        exc: BaseException,
        log_ctx: Dict[str, Any],
    ) -> None:
        if isinstance(exc, GenerationFailure):
            failure = exc
        else:
            reason = exc.message if isinstance(exc, BusinessError) else (str(exc) or type(exc).__name__)
            failure = GenerationFailure(reason, cause=type(exc).__name__)
        if assistant.display_text:
            assistant.meta["partial_text"] = assistant.display_text
        assistant.meta["error_code"] = getattr(exc, "code", failure.code)
        store.set_error(assistant.id, f"Error: {failure.message}")
        self._notify("status", log_ctx["identity"], assistant.id)
        log_event(
            logging.ERROR,
            "Generation failed",
            log_ctx,
            message_id=assistant.id,
            error=failure.message,
            cause=type(exc).__name__,
        )

    # ---- helpers -------------------------------------------------

    @contextmanager
    def _operation(self, identity: str) -> Iterator[_Operation]:
        self._check_idle(identity)
        op = _Operation(identity=identity)
        self._ops[identity] = op
        try:
            yield op
        finally:
            del self._ops[identity]

    def _check_idle(self, identity: str) -> None:
        if identity in self._ops:
            raise ConcurrentOperationError(identity)

    def _check_reentrant(self) -> None:
        if self._bus.delivering:
            raise InvalidStateError("conversation cannot be mutated from inside a subscriber")

    def _notify(self, kind: ChangeKind, identity: str, message_id: Optional[str] = None) -> None:
        self._bus.notify(StoreChange(kind=kind, identity=identity, message_id=message_id))

    def _autosave(self, identity: str) -> None:
        if self._autosave_enabled:
            self.save(identity)

    async def _autosave_async(self, identity: str) -> None:
        """快照在事件循环上取，文件写入放到工作线程。"""
        if self._autosave_enabled:
            snapshot = self._transcript_snapshot(identity)
            await asyncio.to_thread(self._transcripts.save, identity, snapshot)

    @staticmethod
    def _snapshot(message: Message) -> Message:
        return replace(message, meta=dict(message.meta))

    @staticmethod
    def _log_ctx(identity: str, operation: str) -> Dict[str, Any]:
        return {"trace_id": f"tr-{uuid4().hex}", "identity": identity, "operation": operation}
