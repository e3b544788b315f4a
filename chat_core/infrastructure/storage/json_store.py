import hashlib
import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from chat_core.domain.conversation import TranscriptEntry, TranscriptStore
from chat_core.domain.exceptions import BusinessError


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class JsonTranscriptStore(TranscriptStore):
    """按会话标识保存消息快照，每个标识一个 JSON 文件。"""

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()
        self._dir = self._root / "transcripts"
        self._dir.mkdir(parents=True, exist_ok=True)

    def save(self, identity: str, snapshot: List[TranscriptEntry]) -> None:
        path = self._path(identity)
        tmp_path = self._dir / f"{path.stem}.{uuid4().hex}.json.tmp"
        obj = {
            "identity": identity,
            "saved_at": _iso(datetime.now(timezone.utc)),
            "messages": [self._to_payload(entry) for entry in snapshot],
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), identity=identity)

    def load(self, identity: str) -> List[TranscriptEntry]:
        path = self._path(identity)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), identity=identity)
        items: List[TranscriptEntry] = []
        for raw in data.get("messages") or []:
            try:
                items.append(self._from_payload(raw))
            except (KeyError, TypeError, ValueError):
                continue
        return items

    def delete(self, identity: str) -> None:
        path = self._path(identity)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), identity=identity)

    def list_identities(self) -> List[str]:
        identities: List[str] = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                identities.append(data["identity"])
            except (OSError, json.JSONDecodeError, KeyError):
                continue
        return identities

    def _path(self, identity: str) -> Path:
        safe = _UNSAFE.sub("_", identity).strip("._")[:64] or "default"
        digest = hashlib.sha1(identity.encode("utf-8")).hexdigest()[:8]
        return self._dir / f"{safe}-{digest}.json"

    @staticmethod
    def _to_payload(entry: TranscriptEntry) -> Dict[str, Any]:
        payload = dict(entry)
        created_at = payload.get("created_at")
        if isinstance(created_at, datetime):
            payload["created_at"] = _iso(created_at)
        return payload

    @staticmethod
    def _from_payload(raw: Dict[str, Any]) -> TranscriptEntry:
        return {
            "id": raw["id"],
            "role": raw["role"],
            "display_text": raw.get("display_text") or "",
            "context": raw.get("context") or {},
            "created_at": datetime.fromisoformat(str(raw["created_at"]).replace("Z", "+00:00")),
        }


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
