"""基于 SQLAlchemy + SQLite 的会话存储。

save_conversation 在一个事务里完成：
1. 会话没有 id 时新建会话行（标题只在此时确定一次）。
2. 依次插入所有还没有 id 的消息；已有 id 的消息视为已落库，直接跳过。
3. 提交；任一步失败整体回滚。

id 与时间戳只在提交成功后回写到内存对象上，因此失败的保存不会让
内存里的消息“看起来已经落库”，下次保存仍会重新插入。
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from sqlalchemy import create_engine, event, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ask_core.config.settings import settings
from ask_core.domain.conversation import Conversation, ConversationStore, MessageRecord
from ask_core.domain.exceptions import ConversationNotFoundError, StoreError
from ask_core.infrastructure.logging.logger import logger
from ask_core.infrastructure.storage.schema import Base, ConversationRow, MessageRow
from ask_core.utils.text import MAX_TITLE_LENGTH, truncate


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite 不保存时区信息，读回来的是 UTC 的 naive 时间
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def derive_title(conversation: Conversation) -> str:
    """调用方给定的标题优先，否则取第一条 user 消息生成标题。"""

    if conversation.title:
        return conversation.title
    for msg in conversation.messages:
        if msg.role == "user":
            return truncate(msg.content, MAX_TITLE_LENGTH)
    return ""


class SqlConversationStore(ConversationStore):
    def __init__(self, path: str | Path | None = None):
        url = self._to_url(path if path is not None else settings.history_path())
        try:
            self._engine = create_engine(url)
            if self._engine.dialect.name == "sqlite":
                event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StoreError(code="STORE_INIT_ERROR", message=f"failed to open history database: {e}") from e
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False)

    @staticmethod
    def _to_url(path: str | Path) -> str:
        text = str(path)
        if "://" in text:
            return text
        return f"sqlite:///{Path(text).expanduser().resolve()}"

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> "SqlConversationStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- 写 ----

    def save_conversation(self, conversation: Conversation) -> int:
        pending = conversation.pending_messages()
        rows: List[MessageRow] = []
        created: Optional[ConversationRow] = None
        try:
            with self._session_factory.begin() as session:
                if conversation.id is None:
                    created = ConversationRow(
                        title=derive_title(conversation),
                        model=conversation.model,
                        provider=conversation.provider,
                        created_at=_now(),
                    )
                    session.add(created)
                    session.flush()
                    conv_id = created.id
                else:
                    if session.get(ConversationRow, conversation.id) is None:
                        raise ConversationNotFoundError(
                            code="CONVERSATION_NOT_FOUND",
                            message=f"conversation {conversation.id} not found",
                            http_status=404,
                        )
                    conv_id = conversation.id

                for msg in pending:
                    row = MessageRow(
                        conversation_id=conv_id,
                        role=msg.role,
                        content=msg.content,
                        created_at=_now(),
                    )
                    session.add(row)
                    rows.append(row)
                session.flush()
        except SQLAlchemyError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=f"failed to save conversation: {e}") from e

        if created is not None:
            conversation.id = created.id
            conversation.title = created.title
            conversation.created_at = created.created_at
        for msg, row in zip(pending, rows):
            msg.id = row.id
            msg.conversation_id = conv_id
            msg.created_at = row.created_at

        logger.info(
            "conversation saved",
            extra={"extra": {"conversation_id": conv_id, "new_messages": len(rows), "created": created is not None}},
        )
        return conv_id

    # ---- 读 ----

    def get_conversation(self, conversation_id: int) -> Conversation:
        try:
            with self._session_factory() as session:
                row = session.get(ConversationRow, conversation_id)
                if row is None:
                    raise ConversationNotFoundError(
                        code="CONVERSATION_NOT_FOUND",
                        message=f"conversation {conversation_id} not found",
                        http_status=404,
                    )
                messages = session.scalars(
                    select(MessageRow)
                    .where(MessageRow.conversation_id == conversation_id)
                    .order_by(MessageRow.created_at.asc(), MessageRow.id.asc())
                ).all()
                return self._to_conversation(row, messages)
        except SQLAlchemyError as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"failed to get conversation: {e}") from e

    def list_conversations(self, limit: int = 20, search: str = "") -> List[Conversation]:
        """按创建时间倒序列出会话；search 非空时匹配标题或任一消息内容。

        不区分大小写依赖 SQLite 的 lower()/LIKE，只对 ASCII 字母生效：
        搜索 "É" 不会匹配 "é"。
        """

        stmt = select(ConversationRow).order_by(ConversationRow.created_at.desc(), ConversationRow.id.desc())
        if search:
            pattern = _like_pattern(search)
            # 子查询而不是 JOIN，保证每个会话只出现一次
            matching = select(MessageRow.conversation_id).where(MessageRow.content.ilike(pattern, escape="\\"))
            stmt = stmt.where(or_(ConversationRow.title.ilike(pattern, escape="\\"), ConversationRow.id.in_(matching)))
        if limit and limit > 0:
            stmt = stmt.limit(limit)
        try:
            with self._session_factory() as session:
                return [self._to_conversation(row, ()) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"failed to list conversations: {e}") from e

    @staticmethod
    def _to_conversation(row: ConversationRow, messages: Sequence[MessageRow]) -> Conversation:
        return Conversation(
            id=row.id,
            title=row.title,
            model=row.model,
            provider=row.provider,
            created_at=_as_utc(row.created_at),
            messages=[
                MessageRecord(
                    id=m.id,
                    conversation_id=m.conversation_id,
                    role=m.role,
                    content=m.content,
                    created_at=_as_utc(m.created_at),
                )
                for m in messages
            ],
        )
