"""对外 API 服务模块。

提供简化的函数接口供 CLI / 上层应用调用：

- stream_chat: 在工作线程里运行 provider.chat，主线程边收 token 边写出。
- ChatSession: 多轮对话，每轮结束后把整个会话交给存储（只插入新消息）。
- run_chat: 一次性问答的便捷入口。
- list_conversations / get_conversation_messages: 历史查询。
"""

import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from ask_core.config.settings import settings
from ask_core.domain.conversation import Conversation, ConversationStore
from ask_core.domain.exceptions import BusinessError, ValidationError
from ask_core.domain.models import ChatRequest
from ask_core.infrastructure.logging.logger import logger
from ask_core.infrastructure.storage.sql_store import SqlConversationStore
from ask_core.providers import create_provider
from ask_core.providers.base import ProviderClient
from ask_core.streaming.channel import CancelToken, Channel
from ask_core.streaming.writer import StreamWriter


_store: Optional[ConversationStore] = None


def get_default_store() -> ConversationStore:
    """获取默认的历史存储实例（单例）。"""
    global _store
    if _store is None:
        _store = SqlConversationStore(settings.history_path())
    return _store


@dataclass
class ChatOutcome:
    """一轮对话的结果。

    history_error 非空表示回答已经完整输出，但写入历史失败（只作为警告）。
    """

    response: str
    conversation_id: Optional[int] = None
    history_error: Optional[BusinessError] = None


def stream_chat(
    provider: ProviderClient,
    req: ChatRequest,
    writer: StreamWriter,
    cancel: Optional[CancelToken] = None,
    buffer_size: Optional[int] = None,
) -> str:
    """运行一次流式调用，把 token 写到 writer，返回完整回答。

    provider 的异常会在输出收尾之后原样抛出；写出失败会取消 provider
    并抛出 OUTPUT_ERROR。
    """

    cancel = cancel or CancelToken()
    tokens: Channel[str] = Channel(buffer_size or settings.channel_buffer)
    parts: List[str] = []

    def _ensure_closed(_future) -> None:
        # provider 在进入 chat 之前就失败时通道不会被关闭
        if not tokens.closed:
            tokens.close()

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"chat-{provider.name}") as pool:
        future = pool.submit(provider.chat, req, tokens, cancel)
        future.add_done_callback(_ensure_closed)
        try:
            for token in tokens:
                parts.append(token)
                writer.write(token)
        except (OSError, ValueError) as e:
            cancel.cancel()
            raise BusinessError(code="OUTPUT_ERROR", message=f"failed to write output: {e}") from e
        except BaseException:
            # 包括 KeyboardInterrupt；provider 必须在线程池退出前停下
            cancel.cancel()
            raise
        writer.flush()
        future.result()

    return "".join(parts)


class ChatSession:
    """绑定到一个 provider/model 的多轮对话。

    会话对象在内存里不断追加消息；每轮结束都保存整个会话，已落库的消息
    带有 id，存储层会跳过它们，所以重复保存不会产生重复消息。
    """

    def __init__(
        self,
        provider: ProviderClient,
        writer: StreamWriter,
        store: Optional[ConversationStore] = None,
        model: Optional[str] = None,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        conversation: Optional[Conversation] = None,
    ):
        self._provider = provider
        self._writer = writer
        self._store = store
        self.model = model or settings.default_model
        self._system_prompt = system_prompt
        self._temperature = settings.temperature if temperature is None else temperature
        self._max_tokens = settings.max_tokens if max_tokens is None else max_tokens
        self.conversation = conversation or self._new_conversation()

    def _new_conversation(self) -> Conversation:
        conv = Conversation(model=self.model, provider=self._provider.name)
        if self._system_prompt:
            conv.append("system", self._system_prompt)
        return conv

    def reset(self) -> None:
        self.conversation = self._new_conversation()

    def send(self, prompt: str, cancel: Optional[CancelToken] = None) -> ChatOutcome:
        self.conversation.append("user", prompt)
        req = ChatRequest(
            model=self.model,
            messages=self.conversation.to_messages(),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        try:
            response = stream_chat(self._provider, req, self._writer, cancel)
        except Exception:
            # 失败的提问不进入历史
            self.conversation.messages.pop()
            raise

        self.conversation.append("assistant", response)
        outcome = ChatOutcome(response=response, conversation_id=self.conversation.id)
        if self._store is None:
            return outcome
        try:
            outcome.conversation_id = self._store.save_conversation(self.conversation)
        except BusinessError as e:
            logger.warning(
                f"failed to save to history: {e.message}",
                extra={"extra": {"conversation_id": self.conversation.id, "code": e.code}},
            )
            outcome.history_error = e
        return outcome


def resolve_system_prompt(value: Optional[str]) -> str:
    """``@path`` 形式从文件读取 system prompt，否则原样返回。"""

    if not value:
        return ""
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(
                code="SYSTEM_PROMPT_ERROR",
                message=f"failed to read system prompt file {path}: {e}",
            ) from e
    return value


def run_chat(
    prompt: str,
    is_tty: bool,
    provider_name: Optional[str] = None,
    model: Optional[str] = None,
    system_prompt: Optional[str] = None,
    conversation_id: Optional[int] = None,
    save_history: Optional[bool] = None,
    out: Optional[TextIO] = None,
    cancel: Optional[CancelToken] = None,
) -> ChatOutcome:
    """一次性问答。

    Args:
        prompt: 用户输入
        is_tty: 输出是否为交互式终端（由调用方检测）
        provider_name: Provider 名称，默认取配置
        model: 模型 ID，默认取配置
        system_prompt: system prompt，支持 ``@file``
        conversation_id: 继续已有会话
        save_history: 是否写入历史；默认只在输出为终端且提问非空时写入，
            管道/重定向输出不记录
        out: 输出流，默认 stdout

    Raises:
        各种 domain.exceptions 中定义的异常
    """

    provider = create_provider(provider_name)
    writer = StreamWriter(out or sys.stdout, is_tty)
    try:
        if save_history is None:
            save_history = writer.is_tty and bool(prompt.strip())
        store = get_default_store() if (save_history or conversation_id) else None
        conversation = store.get_conversation(conversation_id) if conversation_id else None
        session = ChatSession(
            provider,
            writer,
            store=store if save_history else None,
            model=model,
            system_prompt=resolve_system_prompt(system_prompt),
            conversation=conversation,
        )
        return session.send(prompt, cancel)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "provider": provider.name,
            "error": str(e),
        }})
        raise


def list_conversations(limit: Optional[int] = None, search: str = "", store: Optional[ConversationStore] = None) -> List[Dict[str, Any]]:
    """列出会话（按创建时间倒序）。

    Returns:
        会话列表，每项包含 id, title, model, provider, created_at
    """
    store = store or get_default_store()
    convs = store.list_conversations(limit or settings.history_limit, search)
    return [
        {
            "id": c.id,
            "title": c.title,
            "model": c.model,
            "provider": c.provider,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in convs
    ]


def get_conversation_messages(conversation_id: int, store: Optional[ConversationStore] = None) -> Dict[str, Any]:
    """获取会话及其全部消息。"""
    store = store or get_default_store()
    conv = store.get_conversation(conversation_id)
    return {
        "id": conv.id,
        "title": conv.title,
        "model": conv.model,
        "provider": conv.provider,
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "messages": [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in conv.messages
        ],
    }
