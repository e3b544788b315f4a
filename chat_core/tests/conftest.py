import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from chat_core.context.resolver import ContextResolver
from chat_core.domain.exceptions import NetworkError
from chat_core.domain.message import LLMMessage
from chat_core.engine.identity import StaticIdentityProvider
from chat_core.engine.orchestrator import ConversationOrchestrator
from chat_core.state.message_store import MessageStore
from chat_core.state.subscription import SubscriptionBus


class FakeNotes:
    def __init__(self, notes: Optional[Dict[str, str]] = None, folders=None, tags=None):
        self.notes = dict(notes or {})
        self.folders = dict(folders or {})
        self.tags = dict(tags or {})
        self.reads: List[str] = []

    async def read_note(self, note_id: str) -> str:
        self.reads.append(note_id)
        if note_id not in self.notes:
            raise FileNotFoundError(f"note not found: {note_id}")
        return self.notes[note_id]

    async def list_folder(self, folder: str) -> List[str]:
        if folder not in self.folders:
            raise FileNotFoundError(f"folder not found: {folder}")
        return list(self.folders[folder])

    async def notes_with_tag(self, tag: str) -> List[str]:
        return list(self.tags.get(tag, []))


class FakeUrls:
    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages = dict(pages or {})

    async def fetch_text(self, url: str) -> str:
        if url not in self.pages:
            raise NetworkError(code="NETWORK_ERROR", message="unreachable")
        return self.pages[url]


class ScriptedInvoker:
    """按脚本产出片段的假模型调用边界。

    - fragments: 每次调用依次产出的文本片段；
    - error: 产出全部片段后抛出的异常；
    - gate: 若设置，在产出第 hold_after 个片段之后等待该事件。
    """

    def __init__(self, fragments=("Hel", "lo"), error: Optional[Exception] = None):
        self.fragments = list(fragments)
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.hold_after = 0
        self.calls: List[List[LLMMessage]] = []
        self.started = asyncio.Event()

    async def invoke(self, messages: Sequence[LLMMessage]):
        self.calls.append(list(messages))
        self.started.set()
        for i, fragment in enumerate(self.fragments):
            if self.gate is not None and i == self.hold_after:
                await self.gate.wait()
            yield fragment
        if self.gate is not None and self.hold_after >= len(self.fragments):
            await self.gate.wait()
        if self.error is not None:
            raise self.error


@pytest.fixture
def notes():
    return FakeNotes(
        notes={"a.md": "alpha", "dir/b.md": "beta", "dir/c.md": "gamma"},
        folders={"dir": ["dir/b.md", "dir/c.md"]},
        tags={"proj": ["a.md", "dir/c.md"]},
    )


@pytest.fixture
def urls():
    return FakeUrls({"https://example.com": "example page"})


@pytest.fixture
def resolver(notes, urls):
    return ContextResolver(notes=notes, urls=urls, max_chars_per_block=1000)


@pytest.fixture
def store(resolver):
    return MessageStore(resolver)


@pytest.fixture
def invoker():
    return ScriptedInvoker()


@pytest.fixture
def identities():
    return StaticIdentityProvider()


@pytest.fixture
def orchestrator(resolver, invoker, identities):
    return ConversationOrchestrator(
        resolver=resolver,
        invoker=invoker,
        identity_provider=identities,
        bus=SubscriptionBus(),
    )
