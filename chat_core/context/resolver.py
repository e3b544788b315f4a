"""上下文解析器。

把消息附带的结构化上下文（笔记、标签、文件夹、URL、框选文本）解析成
可并入 processed_text 的文本块。

- 每次调用都重新读取外部来源，不复用上一次的解析结果：引用的内容可能在附加之后发生变化。
- 无法解析的引用（笔记被删除、URL 不可达等）降级为内联标记，整体解析仍然成功。
- 输出格式是确定性的：同一上下文在来源内容不变时两次解析结果完全一致。
"""

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Optional, Set

from chat_core.domain.conversation import NoteSource, UrlSource
from chat_core.domain.exceptions import ContextResolutionDegraded
from chat_core.domain.message import MessageContext, SelectedText
from chat_core.infrastructure.logging.logger import log_event


@dataclass
class Resolution:
    """一次解析的结果：文本块 + 降级的引用列表。"""

    text: str
    degraded: List[ContextResolutionDegraded] = field(default_factory=list)


class ContextResolver:
    def __init__(
        self,
        notes: Optional[NoteSource] = None,
        urls: Optional[UrlSource] = None,
        max_chars_per_block: int = 20000,
    ):
        self._notes = notes
        self._urls = urls
        self._max_chars = max_chars_per_block

    async def resolve(self, context: MessageContext) -> str:
        return (await self.resolve_with_report(context)).text

    async def compose(self, display_text: str, context: MessageContext) -> Resolution:
        """生成完整的 processed_text：原文 + 解析后的上下文块。"""
        resolution = await self.resolve_with_report(context)
        if not resolution.text:
            return Resolution(text=display_text, degraded=resolution.degraded)
        return Resolution(text=f"{display_text}\n\n{resolution.text}", degraded=resolution.degraded)

    async def resolve_with_report(self, context: MessageContext) -> Resolution:
        if context.is_empty:
            return Resolution(text="")

        blocks: List[str] = []
        degraded: List[ContextResolutionDegraded] = []
        emitted: Set[str] = set()

        # 1. 直接引用的笔记
        for note_id in context.notes:
            blocks.append(await self._note_block(note_id, emitted, degraded))

        # 2. 标签：展开为带该标签的笔记
        for tag in context.tags:
            try:
                matched = await self._require_notes().notes_with_tag(tag)
            except Exception as exc:
                blocks.append(self._degrade("tag", f"#{tag}", exc, degraded))
                continue
            if not matched:
                blocks.append(self._degrade("tag", f"#{tag}", "no matching notes", degraded))
                continue
            inner = [await self._note_block(n, emitted, degraded) for n in sorted(matched) if n not in emitted]
            if inner:
                blocks.append(f'<tag_context tag="#{tag}">\n' + "\n".join(inner) + "\n</tag_context>")

        # 3. 文件夹：展开为文件夹内的全部笔记
        for folder in context.folders:
            try:
                listed = await self._require_notes().list_folder(folder)
            except Exception as exc:
                blocks.append(self._degrade("folder", folder, exc, degraded))
                continue
            if not listed:
                blocks.append(self._degrade("folder", folder, "no notes in folder", degraded))
                continue
            inner = [await self._note_block(n, emitted, degraded) for n in sorted(listed) if n not in emitted]
            if inner:
                blocks.append(f'<folder_context path="{folder}">\n' + "\n".join(inner) + "\n</folder_context>")

        # 4. URL
        for url in context.urls:
            blocks.append(await self._url_block(url, degraded))

        # 5. 框选文本（保留插入顺序）
        for selection in context.selected_texts:
            blocks.append(self._selection_block(selection))

        return Resolution(text="\n\n".join(blocks), degraded=degraded)

    # ---- blocks --------------------------------------------------

    async def _note_block(
        self,
        note_id: str,
        emitted: Set[str],
        degraded: List[ContextResolutionDegraded],
    ) -> str:
        emitted.add(note_id)
        try:
            content = await self._require_notes().read_note(note_id)
        except Exception as exc:
            return self._degrade("note", note_id, exc, degraded)
        title = PurePosixPath(note_id).stem
        return (
            "<note_context>\n"
            f"<title>{title}</title>\n"
            f"<path>{note_id}</path>\n"
            f"<content>\n{self._cap(content)}\n</content>\n"
            "</note_context>"
        )

    async def _url_block(self, url: str, degraded: List[ContextResolutionDegraded]) -> str:
        try:
            if self._urls is None:
                raise LookupError("no url source configured")
            content = await self._urls.fetch_text(url)
        except Exception as exc:
            return self._degrade("url", url, exc, degraded)
        if not content.strip():
            return self._degrade("url", url, "empty content", degraded)
        return (
            "<url_content>\n"
            f"<url>{url}</url>\n"
            f"<content>\n{self._cap(content)}\n</content>\n"
            "</url_content>"
        )

    def _selection_block(self, selection: SelectedText) -> str:
        lines = ""
        if selection.start_line is not None:
            end = selection.end_line if selection.end_line is not None else selection.start_line
            lines = f"<lines>{selection.start_line}-{end}</lines>\n"
        return (
            "<selected_text>\n"
            f"<source>{selection.source}</source>\n"
            f"{lines}"
            f"<content>\n{self._cap(selection.content)}\n</content>\n"
            "</selected_text>"
        )

    # ---- helpers -------------------------------------------------

    def _require_notes(self) -> NoteSource:
        if self._notes is None:
            raise LookupError("no note source configured")
        return self._notes

    def _cap(self, text: str) -> str:
        if len(text) <= self._max_chars:
            return text
        return text[: self._max_chars] + "\n[truncated]"

    @staticmethod
    def _degrade(
        kind: str,
        reference: str,
        cause,
        degraded: List[ContextResolutionDegraded],
    ) -> str:
        if isinstance(cause, BaseException):
            reason = str(cause) or type(cause).__name__
        else:
            reason = str(cause)
        item = ContextResolutionDegraded(kind=kind, reference=reference, reason=reason)
        degraded.append(item)
        log_event(logging.WARNING, "Context reference degraded", {}, kind=kind, reference=reference, reason=reason)
        return item.marker
