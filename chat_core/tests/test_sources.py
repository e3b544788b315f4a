import asyncio

import httpx
import pytest

from chat_core.context import sources
from chat_core.context.active_note import ActiveNoteTracker, is_context_eligible
from chat_core.context.resolver import ContextResolver
from chat_core.context.sources import HttpUrlSource, LocalVaultSource
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from chat_core.domain.message import MessageContext


@pytest.fixture
def vault(tmp_path):
    (tmp_path / "dir").mkdir()
    (tmp_path / "a.md").write_text("alpha #proj", encoding="utf-8")
    (tmp_path / "dir" / "b.md").write_text("beta #project", encoding="utf-8")
    (tmp_path / "dir" / "c.md").write_text("---\ntags: [proj, misc]\n---\ngamma", encoding="utf-8")
    (tmp_path / "dir" / "image.png").write_bytes(b"\x89PNG")
    return LocalVaultSource(tmp_path)


@pytest.mark.asyncio
async def test_vault_reads_notes_and_folders(vault):
    assert await vault.read_note("a.md") == "alpha #proj"
    assert await vault.list_folder("dir") == ["dir/b.md", "dir/c.md"]
    with pytest.raises(FileNotFoundError):
        await vault.read_note("missing.md")
    with pytest.raises(FileNotFoundError):
        await vault.list_folder("nope")


@pytest.mark.asyncio
async def test_vault_tags_from_inline_and_front_matter(vault):
    assert await vault.notes_with_tag("#proj") == ["a.md", "dir/c.md"]
    assert await vault.notes_with_tag("misc") == ["dir/c.md"]
    assert await vault.notes_with_tag("absent") == []


@pytest.mark.asyncio
async def test_vault_rejects_paths_outside_root(vault):
    with pytest.raises(PermissionError):
        await vault.read_note("../secret.md")


@pytest.mark.asyncio
async def test_vault_scans_do_not_block_the_event_loop(vault, tmp_path):
    for i in range(200):
        (tmp_path / f"bulk-{i}.md").write_text(f"note {i} #bulk", encoding="utf-8")
    ticks = 0
    running = True

    async def ticker():
        nonlocal ticks
        while running:
            ticks += 1
            await asyncio.sleep(0)

    task = asyncio.create_task(ticker())
    await asyncio.sleep(0)
    before = ticks
    matched = await vault.notes_with_tag("bulk")
    listed = await vault.list_folder(".")
    note = await vault.read_note("bulk-0.md")
    during = ticks - before
    running = False
    await task
    assert len(matched) == 200
    assert len(listed) == 203
    assert note == "note 0 #bulk"
    assert during > 0


def _source(handler):
    return HttpUrlSource(timeout=5.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_url_plain_text_is_returned_stripped():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, text="  " + "x" * 30 + "  ", headers={"content-type": "text/plain"})

    text = await _source(handler).fetch_text("example.com/page")
    assert text == "x" * 30
    assert seen == ["https://example.com/page"]


@pytest.mark.asyncio
async def test_long_page_is_capped_by_resolver_with_marker():
    page = "y" * 500
    source = _source(lambda r: httpx.Response(200, text=page, headers={"content-type": "text/plain"}))
    resolver = ContextResolver(urls=source, max_chars_per_block=100)
    text = await resolver.resolve(MessageContext(urls=("https://example.com",)))
    assert "y" * 100 + "\n[truncated]" in text
    assert "y" * 101 not in text


@pytest.mark.asyncio
async def test_url_html_goes_through_extractor(monkeypatch):
    monkeypatch.setattr(sources.trafilatura, "extract", lambda html: "main text")

    def handler(request):
        return httpx.Response(200, text="<html><body>nav main text</body></html>", headers={"content-type": "text/html; charset=utf-8"})

    assert await _source(handler).fetch_text("https://example.com") == "main text"


@pytest.mark.asyncio
async def test_url_error_statuses():
    with pytest.raises(ApiError) as ei:
        await _source(lambda r: httpx.Response(404)).fetch_text("https://example.com")
    assert ei.value.code == "URL_FETCH_ERROR"
    with pytest.raises(RateLimitError):
        await _source(lambda r: httpx.Response(429)).fetch_text("https://example.com")
    with pytest.raises(ApiError) as ei:
        await _source(
            lambda r: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})
        ).fetch_text("https://example.com")
    assert ei.value.code == "UNSUPPORTED_CONTENT"


@pytest.mark.asyncio
async def test_url_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError):
        await _source(handler).fetch_text("https://example.com")


def test_active_note_tracker_falls_back_to_last_note():
    tracker = ActiveNoteTracker()
    assert tracker.active() is None
    tracker.set_current("notes/a.md")
    assert tracker.active() == "notes/a.md"
    tracker.set_current("settings")
    assert tracker.active() == "notes/a.md"
    tracker.set_current("board.canvas")
    assert tracker.active() == "board.canvas"
    assert not is_context_eligible("image.png")
    assert not is_context_eligible(None)
