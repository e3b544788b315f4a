from typing import Optional


class StaticIdentityProvider:
    """由宿主显式设置当前项目标识；None 表示非项目对话。"""

    def __init__(self, identity: Optional[str] = None):
        self._identity = identity

    def switch(self, identity: Optional[str]) -> None:
        self._identity = identity

    def get_current_identity(self) -> Optional[str]:
        return self._identity
