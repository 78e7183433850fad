"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在 CLI / 上层调用方做统一捕获与用户提示。

Provider 相关：
- AuthenticationError / RateLimitError / UpstreamServiceError / ApiError 对应 HTTP 状态码。
- NetworkError 表示传输层失败；RequestCancelled 表示调用方主动取消，
  两者按类型区分，而不是按错误文本区分。
- ChunkParseError 只在流式解析内部使用，永远不会抛给调用方。

存储相关：
- ConversationNotFoundError：会话 ID 不存在。
- StoreError：其余所有存储失败。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、body 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败（缺少 API key、未知 provider 等）。"""


class AuthenticationError(BusinessError):
    """Provider 返回 401：API key 无效或缺失。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。核心层不做重试，由上层决定是否换 provider。"""


class UpstreamServiceError(BusinessError):
    """Provider 返回 5xx。"""


class ApiError(BusinessError):
    """第三方 API 返回其他非 2xx 错误时抛出，携带状态码与响应体。"""

    @property
    def body(self) -> str:
        return self.extra.get("body", "")


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、读流中断等。"""


class RequestCancelled(BusinessError):
    """调用方通过 CancelToken 取消了请求。"""


class ChunkParseError(BusinessError):
    """单个流式分片无法解析；解析循环会跳过它继续处理。"""


class ConversationNotFoundError(BusinessError):
    """请求的会话不存在。"""


class StoreError(BusinessError):
    """会话存储读写失败。"""
