"""Context source implementations: local note vault + HTTP URL fetch."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import httpx
import trafilatura
import yaml

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError


NOTE_SUFFIX = ".md"
_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(\n|\Z)", re.DOTALL)


@dataclass
class LocalVaultSource:
    """笔记库目录实现：note id 为相对 vault 根目录的 .md 路径。"""

    root: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()

    # ---- helpers -------------------------------------------------

    def _resolve(self, raw: str) -> Path:
        candidate = (self.root / raw).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise PermissionError(f"path outside vault: {raw}") from exc
        return candidate

    def _note_id(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # ---- NoteSource ----------------------------------------------
    # 文件 I/O 不在事件循环线程上执行

    async def read_note(self, note_id: str) -> str:
        resolved = self._resolve(note_id)
        if not resolved.is_file():
            raise FileNotFoundError(f"note not found: {note_id}")
        async with aiofiles.open(resolved, "r", encoding="utf-8") as f:
            return await f.read()

    async def list_folder(self, folder: str) -> List[str]:
        resolved = self._resolve(folder)
        if not resolved.is_dir():
            raise FileNotFoundError(f"folder not found: {folder}")
        return await asyncio.to_thread(self._scan_folder, resolved)

    async def notes_with_tag(self, tag: str) -> List[str]:
        return await asyncio.to_thread(self._scan_tag, tag.lstrip("#"))

    # ---- blocking scans ------------------------------------------

    def _scan_folder(self, folder: Path) -> List[str]:
        return sorted(self._note_id(p) for p in folder.rglob(f"*{NOTE_SUFFIX}") if p.is_file())

    def _scan_tag(self, tag: str) -> List[str]:
        inline = re.compile(rf"(?<![\w#/])#{re.escape(tag)}(?![\w/-])")
        matched: List[str] = []
        for path in sorted(self.root.rglob(f"*{NOTE_SUFFIX}")):
            if not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                continue
            if tag in _front_matter_tags(text) or inline.search(text):
                matched.append(self._note_id(path))
        return matched


def _front_matter_tags(text: str) -> List[str]:
    m = _FRONT_MATTER.match(text)
    if not m:
        return []
    try:
        data: Any = yaml.safe_load(m.group(1)) or {}
    except yaml.YAMLError:
        return []
    if not isinstance(data, dict):
        return []
    raw = data.get("tags") or []
    if isinstance(raw, str):
        raw = re.split(r"[,\s]+", raw)
    return [str(t).lstrip("#") for t in raw if t]


class HttpUrlSource:
    """通过 HTTP 抓取 URL 并抽取正文文本。

    - text/html 使用 trafilatura 抽取正文；
    - 其它 text/* 与 JSON 原样返回；
    - 非 2xx 响应抛出 RateLimitError / ApiError，网络异常抛出 NetworkError。
    """

    def __init__(
        self,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._transport = transport

    async def fetch_text(self, url: str) -> str:
        if not re.match(r"^https?://", url, flags=re.I):
            url = "https://" + url
        kwargs: Dict[str, Any] = {"timeout": self._timeout, "follow_redirects": True, "trust_env": False}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                resp = await client.get(url)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"rate limited: {url}")
        if resp.status_code >= 400:
            raise ApiError(code="URL_FETCH_ERROR", message=f"HTTP {resp.status_code}", http_status=resp.status_code)

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type in ("text/html", "application/xhtml+xml"):
            text = await asyncio.to_thread(trafilatura.extract, resp.text) or ""
        elif content_type.startswith("text/") or content_type in ("application/json", ""):
            text = resp.text
        else:
            raise ApiError(code="UNSUPPORTED_CONTENT", message=f"unsupported content type: {content_type}")

        # 长度上限由 ContextResolver 统一截断并加标记
        return text.strip()
