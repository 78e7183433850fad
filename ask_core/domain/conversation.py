"""会话与消息的持久化模型及 ConversationStore 抽象。

约定：
- MessageRecord.id 为 None 表示尚未落库；有 id 的消息视为已持久化，保存时跳过。
- Conversation.id 为 None 表示下次保存时新建；分配后在整个生命周期内不变。
- 消息只追加，不更新、不删除。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from .models import Message


@dataclass
class MessageRecord:
    role: str
    content: str
    id: Optional[int] = None
    conversation_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def persisted(self) -> bool:
        return self.id is not None

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content)  # type: ignore[arg-type]


@dataclass
class Conversation:
    model: str
    provider: str
    title: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    messages: List[MessageRecord] = field(default_factory=list)

    def append(self, role: str, content: str) -> MessageRecord:
        """追加一条尚未落库的消息。"""

        record = MessageRecord(role=role, content=content, conversation_id=self.id)
        self.messages.append(record)
        return record

    def pending_messages(self) -> List[MessageRecord]:
        return [m for m in self.messages if not m.persisted]

    def to_messages(self) -> List[Message]:
        return [m.to_message() for m in self.messages]


class ConversationStore(Protocol):
    def save_conversation(self, conversation: Conversation) -> int:
        ...

    def get_conversation(self, conversation_id: int) -> Conversation:
        ...

    def list_conversations(self, limit: int = 20, search: str = "") -> List[Conversation]:
        ...
