"""订阅总线：外部观察者（UI）获知会话状态变化的唯一接口。

观察者收到通知后应调用 get_display_messages() 重新读取状态，
不要持有 MessageStore 内部的引用。
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional

from chat_core.infrastructure.logging.logger import logger


ChangeKind = Literal[
    "appended",
    "status",
    "delta",
    "updated",
    "truncated",
    "removed",
    "cleared",
    "switched",
    "restored",
]


@dataclass(frozen=True)
class StoreChange:
    kind: ChangeKind
    identity: str
    message_id: Optional[str] = None


Listener = Callable[[StoreChange], None]


class SubscriptionBus:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._delivering = 0

    @property
    def delivering(self) -> bool:
        """是否正在同步投递通知（用于调用方拒绝监听器内的重入修改）。"""
        return self._delivering > 0

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, change: StoreChange) -> None:
        """按注册顺序同步投递；投递期间的订阅变化只影响之后的通知。"""
        self._delivering += 1
        try:
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception:
                    logger.log(
                        logging.ERROR,
                        "Subscriber raised during notify",
                        exc_info=True,
                        extra={"extra": {"kind": change.kind, "identity": change.identity}},
                    )
        finally:
            self._delivering -= 1
