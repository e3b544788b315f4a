from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from .message import LLMMessage


DEFAULT_IDENTITY = "default"

# 持久化快照中单条消息的形状：{id, role, display_text, context, created_at}
TranscriptEntry = Dict[str, Any]


class ModelInvoker(Protocol):
    """模型调用边界：接收有序的 LLM 输入，返回文本片段的异步序列。"""

    def invoke(self, messages: Sequence[LLMMessage]) -> AsyncIterator[str]:
        ...


class NoteSource(Protocol):
    async def read_note(self, note_id: str) -> str:
        ...

    async def list_folder(self, folder: str) -> List[str]:
        ...

    async def notes_with_tag(self, tag: str) -> List[str]:
        ...


class UrlSource(Protocol):
    async def fetch_text(self, url: str) -> str:
        ...


class IdentityProvider(Protocol):
    def get_current_identity(self) -> Optional[str]:
        ...


class TranscriptStore(Protocol):
    def save(self, identity: str, snapshot: List[TranscriptEntry]) -> None:
        ...

    def load(self, identity: str) -> List[TranscriptEntry]:
        ...

    def delete(self, identity: str) -> None:
        ...

    def list_identities(self) -> List[str]:
        ...
