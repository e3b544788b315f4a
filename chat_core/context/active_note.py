"""当前活动笔记追踪。

记录最近一次可作为上下文的笔记；当前焦点不是笔记时（比如切到了设置页），
回退到最后一次追踪到的笔记。
"""

from typing import Optional


CONTEXT_ELIGIBLE_SUFFIXES = (".md", ".canvas")


def is_context_eligible(note_id: Optional[str]) -> bool:
    return bool(note_id) and note_id.lower().endswith(CONTEXT_ELIGIBLE_SUFFIXES)


class ActiveNoteTracker:
    def __init__(self) -> None:
        self._current: Optional[str] = None
        self._last: Optional[str] = None

    def track(self, note_id: Optional[str]) -> None:
        if is_context_eligible(note_id):
            self._last = note_id

    def set_current(self, note_id: Optional[str]) -> None:
        self._current = note_id if is_context_eligible(note_id) else None
        self.track(note_id)

    def active(self) -> Optional[str]:
        return self._current or self._last
