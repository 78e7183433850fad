"""Anthropic Provider 适配器。

与 OpenAI 风格的差异：

- system 消息不放在 messages 里，而是按原顺序以空行拼接为顶层 ``system`` 字段。
- ``max_tokens`` 必填，未设置或非正数时使用 4096。
- ``temperature`` 只在 > 0 时发送。
- 响应是带 ``event:`` 名称的 SSE：只有 ``content_block_delta`` 携带文本，
  ``message_stop`` 表示结束，其余事件（包括未知的新事件）一律忽略。

- URL: {base_url}/messages
- 认证: x-api-key: <api_key>，外加 anthropic-version 头
"""

import json
from contextlib import closing
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from ask_core.domain.exceptions import ChunkParseError
from ask_core.domain.models import ChatRequest, Message
from ask_core.infrastructure.logging.logger import logger
from ask_core.providers.base import stream_body
from ask_core.providers.registry import ANTHROPIC_CONFIG
from ask_core.streaming.channel import CancelToken, Channel
from ask_core.streaming.sse import SSEReader

ANTHROPIC_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

EVENT_CONTENT_DELTA = "content_block_delta"
EVENT_MESSAGE_STOP = "message_stop"


class AnthropicClient:
    """Anthropic (Claude) 提供方客户端实现。"""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key
        self._base_url = (base_url or ANTHROPIC_CONFIG.base_url).rstrip("/")
        self._timeout = timeout
        self._client = client

    def models(self) -> List[str]:
        return list(ANTHROPIC_CONFIG.models)

    def chat(self, req: ChatRequest, stream: Channel[str], cancel: Optional[CancelToken] = None) -> None:
        """执行一次流式对话调用，token 依次写入 stream，结束时关闭 stream。"""

        cancel = cancel or CancelToken()
        try:
            cancel.raise_if_cancelled()
            payload = self._build_payload(req)
            logger.debug("anthropic chat start", extra={"extra": {"model": req.model, "messages": len(req.messages)}})
            with closing(stream_body(
                self._client,
                self._timeout,
                ANTHROPIC_CONFIG,
                f"{self._base_url}{ANTHROPIC_CONFIG.endpoint}",
                payload,
                {
                    "x-api-key": self._api_key,
                    "anthropic-version": ANTHROPIC_API_VERSION,
                    "Content-Type": "application/json",
                },
                cancel,
            )) as body:
                self._parse_stream(body, stream, cancel)
        finally:
            stream.close()

    # ---- 辅助方法 ----

    @staticmethod
    def _split_system(messages: Iterable[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        system_parts: List[str] = []
        rest: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
            else:
                rest.append({"role": m.role, "content": m.content})
        return "\n\n".join(system_parts), rest

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        system, messages = self._split_system(req.messages)
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": messages,
            "max_tokens": req.max_tokens if req.max_tokens > 0 else DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if req.temperature > 0:
            payload["temperature"] = req.temperature
        return payload

    def _parse_stream(self, chunks: Iterable[bytes], stream: Channel[str], cancel: CancelToken) -> None:
        for event in SSEReader(chunks, cancel).events():
            cancel.raise_if_cancelled()
            if event.type == EVENT_MESSAGE_STOP:
                logger.debug("anthropic stream done")
                return
            if event.type != EVENT_CONTENT_DELTA:
                continue
            try:
                text = self._decode_delta(event.data)
            except ChunkParseError as e:
                logger.debug("skip malformed anthropic event: %s", e.message)
                continue
            if text:
                stream.send(text, cancel)

    @staticmethod
    def _decode_delta(data: str) -> str:
        """解析 content_block_delta 事件，返回 delta.text（可能为空串）。"""

        try:
            event = json.loads(data)
        except json.JSONDecodeError as e:
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message=str(e))
        if not isinstance(event, dict):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="event is not an object")
        delta = event.get("delta")
        if delta is None:
            return ""
        if not isinstance(delta, dict):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="delta is not an object")
        text = delta.get("text")
        if text is None:
            return ""
        if not isinstance(text, str):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="delta.text is not a string")
        return text
