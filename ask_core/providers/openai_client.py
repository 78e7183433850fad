"""OpenAI Provider 适配器。

本模块负责：

1. 把统一的 ChatRequest 转成 Chat Completions 流式请求（消息原样发送，含 system）。
2. 调用 HTTP 接口，按状态码把错误映射为统一异常。
3. 解析 ``data: <json>`` 行，把 ``choices[0].delta.content`` 作为 token 写入通道，
   遇到 ``data: [DONE]`` 立即结束。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
"""

import json
from contextlib import closing
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ask_core.domain.exceptions import ChunkParseError
from ask_core.domain.models import ChatRequest, Message
from ask_core.infrastructure.logging.logger import logger
from ask_core.providers.base import stream_body
from ask_core.providers.registry import OPENAI_CONFIG
from ask_core.streaming.channel import CancelToken, Channel
from ask_core.streaming.sse import iter_lines

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class OpenAIClient:
    """OpenAI 提供方客户端实现。"""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key
        self._base_url = (base_url or OPENAI_CONFIG.base_url).rstrip("/")
        self._timeout = timeout
        self._client = client

    def models(self) -> List[str]:
        return list(OPENAI_CONFIG.models)

    def chat(self, req: ChatRequest, stream: Channel[str], cancel: Optional[CancelToken] = None) -> None:
        """执行一次流式对话调用，token 依次写入 stream，结束时关闭 stream。"""

        cancel = cancel or CancelToken()
        try:
            cancel.raise_if_cancelled()
            payload = self._build_payload(req)
            logger.debug("openai chat start", extra={"extra": {"model": req.model, "messages": len(req.messages)}})
            with closing(stream_body(
                self._client,
                self._timeout,
                OPENAI_CONFIG,
                f"{self._base_url}{OPENAI_CONFIG.endpoint}",
                payload,
                {
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "Accept": "text/event-stream",
                },
                cancel,
            )) as body:
                self._parse_stream(iter_lines(body), stream, cancel)
        finally:
            stream.close()

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature,
            "stream": True,
        }
        if req.max_tokens > 0:
            payload["max_tokens"] = req.max_tokens
        return payload

    @staticmethod
    def _message_to_payload(message: Message) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}

    def _parse_stream(self, lines: Iterable[str], stream: Channel[str], cancel: CancelToken) -> None:
        for line in lines:
            cancel.raise_if_cancelled()
            # 空行、注释以及其他 SSE 字段都不携带内容
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):]
            if data == DONE_SENTINEL:
                logger.debug("openai stream done")
                return
            try:
                token = self._decode_chunk(data)
            except ChunkParseError as e:
                logger.debug("skip malformed openai chunk: %s", e.message)
                continue
            if token:
                stream.send(token, cancel)

    @staticmethod
    def _decode_chunk(data: str) -> str:
        """解析单个流式分片，返回 choices[0].delta.content（可能为空串）。"""

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as e:
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message=str(e))
        if not isinstance(chunk, dict):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="chunk is not an object")
        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="choices is not a list")
        if not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="choice is not an object")
        delta = first.get("delta") or {}
        if not isinstance(delta, dict):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="delta is not an object")
        content = delta.get("content")
        if content is None:
            return ""
        if not isinstance(content, str):
            raise ChunkParseError(code="CHUNK_PARSE_ERROR", message="delta.content is not a string")
        return content
