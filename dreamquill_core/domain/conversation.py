from dataclasses import dataclass
from typing import List, Optional, Protocol

from .models import ChatTurn, Role, VendorProfile


@dataclass
class Conversation:
    id: str
    title: str
    profile_id: Optional[int]


@dataclass
class TurnRecord:
    id: str
    conversation_id: str
    role: Role
    content: str


class ConversationStore(Protocol):
    """会话引擎依赖的最小存储契约。

    核心从不初始化表结构或管理连接，只调用这些操作并原样上抛失败。
    """

    def get_profile(self, profile_id: int) -> Optional[VendorProfile]:
        ...

    def append_turn(self, conversation_id: str, role: Role, text: str) -> str:
        ...

    def load_history(self, conversation_id: str) -> List[ChatTurn]:
        ...
