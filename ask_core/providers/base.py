"""Provider 抽象接口。

上层调用方不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（OpenAIClient、AnthropicClient）。
- chat(req, stream, cancel)：发送请求，把解析出的文本 token 按顺序写入 stream，
  无论成功还是失败都恰好关闭 stream 一次；失败时抛出 domain.exceptions 中的异常。

本模块同时提供各适配器共享的 HTTP 辅助逻辑（状态码映射、客户端构造、
可取消的流式读取），新增厂商不需要修改这里。
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol

import httpx

from ask_core.domain.exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    RequestCancelled,
    UpstreamServiceError,
)
from ask_core.domain.models import ChatRequest
from ask_core.providers.registry import ProviderConfig
from ask_core.streaming.channel import CancelToken, Channel


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志与历史记录。
    - models(): 该 Provider 支持的模型 ID 列表。
    - chat(req, stream, cancel): 执行一次流式对话调用。
    """

    name: str

    def models(self) -> List[str]:
        ...

    def chat(self, req: ChatRequest, stream: Channel[str], cancel: Optional[CancelToken] = None) -> None:
        ...


def raise_for_status(resp: httpx.Response, cfg: ProviderConfig) -> None:
    """把非 2xx 响应映射为统一异常。"""

    if resp.is_success:
        return
    status = resp.status_code
    if status == 401:
        raise AuthenticationError(
            code="INVALID_API_KEY",
            message=f"Invalid API key. Check your {cfg.api_key_env}.",
            http_status=status,
            provider=cfg.name,
        )
    if status == 429:
        raise RateLimitError(
            code="RATE_LIMIT",
            message="Rate limited. Please wait and try again.",
            http_status=status,
            provider=cfg.name,
        )
    if status >= 500:
        raise UpstreamServiceError(
            code="SERVICE_ERROR",
            message=f"{cfg.label} service error. Please try again later.",
            http_status=status,
            provider=cfg.name,
        )
    try:
        body = resp.read().decode("utf-8", errors="replace")
    except httpx.HTTPError:
        body = ""
    raise ApiError(
        code="API_ERROR",
        message=f"{cfg.label} API error (status {status}): {body}",
        http_status=status,
        provider=cfg.name,
        body=body,
    )


def transport_error(exc: Exception, cancel: CancelToken, cfg: ProviderConfig) -> Exception:
    """传输层异常：取消已生效时报告为取消，否则包装为 NetworkError。"""

    if cancel.cancelled:
        return RequestCancelled(code="CANCELLED", message="request cancelled", http_status=499)
    return NetworkError(
        code="NETWORK_ERROR",
        message=f"{cfg.label} request failed: {exc}",
        http_status=503,
        provider=cfg.name,
    )


@contextmanager
def http_client(client: Optional[httpx.Client], timeout: float) -> Iterator[httpx.Client]:
    """优先复用注入的 client，否则为本次调用临时创建一个。"""

    if client is not None:
        yield client
        return
    with httpx.Client(timeout=timeout, trust_env=False) as owned:
        yield owned


# 后台 HTTP 线程与调用方之间缓冲的字节块数量
_BODY_BUFFER = 64


def stream_body(
    client: Optional[httpx.Client],
    timeout: float,
    cfg: ProviderConfig,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    cancel: CancelToken,
) -> Iterator[bytes]:
    """发送流式 POST，逐块产出响应体。

    HTTP 交换（连接、等待响应头、读取响应体）在后台线程里完成，调用方只在
    通道上等待，因此取消在任何阶段都能立即生效：生成器抛出 RequestCancelled，
    后台线程在下一次收到数据时发现读取方已停止并自行退出。调用方应在用完后
    关闭生成器（``contextlib.closing``）。

    非 2xx 响应按 raise_for_status 映射；传输层异常经 transport_error 包装。
    """

    chunks: Channel[bytes] = Channel(_BODY_BUFFER)
    failure: List[Exception] = []
    # 读取方停止（取消、提前结束或出错）时通知后台线程退出
    stop = CancelToken()

    def pump() -> None:
        try:
            with http_client(client, timeout) as c:
                with c.stream("POST", url, json=payload, headers=headers) as resp:
                    stop.raise_if_cancelled()
                    raise_for_status(resp, cfg)
                    for chunk in resp.iter_bytes():
                        chunks.send(chunk, stop)
        except Exception as e:
            failure.append(e)
        finally:
            chunks.close()

    threading.Thread(target=pump, name=f"{cfg.name}-http", daemon=True).start()
    try:
        while True:
            chunk = chunks.receive(cancel=cancel)
            if chunk is None:
                break
            yield chunk
    finally:
        stop.cancel()

    if failure:
        exc = failure[0]
        if isinstance(exc, httpx.RequestError):
            raise transport_error(exc, cancel, cfg) from exc
        raise exc
