"""会话消息模型。

每条消息只有一份规范记录（Message），其中同时保存：

- display_text: 用户编写/编辑的原文，或模型流式输出的文本，仅用于展示。
- processed_text: 实际与模型交换的文本。user 消息为 display_text 加上解析后的上下文块，
  assistant 消息为模型原始输出。它总是由 MessageStore 根据 display_text + context 重新计算，
  不单独维护。

DisplayMessage / LLMMessage 是只读视图，由 MessageStore 在读取时现算。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple
from uuid import uuid4


Role = Literal["user", "assistant", "system"]
MessageStatus = Literal["pending", "streaming", "complete", "error"]

# 合法的状态迁移；其余迁移一律视为非法
LEGAL_TRANSITIONS = {
    ("pending", "streaming"),
    ("streaming", "complete"),
    ("streaming", "error"),
    ("pending", "error"),
}


@dataclass(frozen=True)
class SelectedText:
    """用户在笔记中框选的一段文本。"""

    source: str
    content: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "content": self.content,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectedText":
        return cls(
            source=data.get("source") or "",
            content=data.get("content") or "",
            start_line=data.get("start_line"),
            end_line=data.get("end_line"),
        )


def _unique_sorted(items: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted({s.strip() for s in items if s and s.strip()}))


@dataclass(frozen=True)
class MessageContext:
    """消息附带的上下文引用。

    notes/urls/folders/tags 为集合语义：构造时去重并排序，插入顺序无关；
    selected_texts 保留插入顺序。
    """

    notes: Tuple[str, ...] = ()
    urls: Tuple[str, ...] = ()
    folders: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    selected_texts: Tuple[SelectedText, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "notes", _unique_sorted(self.notes))
        object.__setattr__(self, "urls", _unique_sorted(self.urls))
        object.__setattr__(self, "folders", _unique_sorted(f.rstrip("/") for f in self.folders))
        object.__setattr__(self, "tags", _unique_sorted(t.lstrip("#") for t in self.tags))
        object.__setattr__(self, "selected_texts", tuple(self.selected_texts))

    @property
    def is_empty(self) -> bool:
        return not (self.notes or self.urls or self.folders or self.tags or self.selected_texts)

    def with_note(self, note_id: str) -> "MessageContext":
        return replace(self, notes=self.notes + (note_id,))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": list(self.notes),
            "urls": list(self.urls),
            "folders": list(self.folders),
            "tags": list(self.tags),
            "selected_texts": [s.to_dict() for s in self.selected_texts],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MessageContext":
        data = data or {}
        return cls(
            notes=tuple(data.get("notes") or ()),
            urls=tuple(data.get("urls") or ()),
            folders=tuple(data.get("folders") or ()),
            tags=tuple(data.get("tags") or ()),
            selected_texts=tuple(SelectedText.from_dict(s) for s in data.get("selected_texts") or ()),
        )


EMPTY_CONTEXT = MessageContext()


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


@dataclass
class Message:
    """一条消息的规范记录，生命周期内就地修改，不会被替换成新身份。

    sequence / created_at 由 MessageStore.append 分配。
    """

    id: str
    role: Role
    display_text: str = ""
    processed_text: str = ""
    context: MessageContext = EMPTY_CONTEXT
    status: MessageStatus = "complete"
    created_at: Optional[datetime] = None
    sequence: int = -1
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DisplayMessage:
    """展示视图：纯投影，不含任何模型侧内容。"""

    id: str
    role: Role
    display_text: str
    status: MessageStatus
    context: MessageContext
    created_at: datetime
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "display_text": self.display_text,
            "status": self.status,
            "context": self.context.to_dict(),
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class LLMMessage:
    """模型输入视图：调用模型时的精确有序输入。"""

    role: Role
    processed_text: str


def display_view(message: Message) -> DisplayMessage:
    return DisplayMessage(
        id=message.id,
        role=message.role,
        display_text=message.display_text,
        status=message.status,
        context=message.context,
        created_at=message.created_at,
        sequence=message.sequence,
    )


def llm_view(messages: Iterable[Message]) -> List[LLMMessage]:
    return [LLMMessage(role=m.role, processed_text=m.processed_text) for m in messages if m.status != "error"]
