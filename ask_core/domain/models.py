"""统一的对话请求数据模型。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- Message: 一条发给 Provider 的对话消息（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。

所有 Provider 适配器（如 OpenAIClient、AnthropicClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。流式响应不再建模为结构化
chunk，而是直接以纯文本 token 的形式写入 Channel。
"""

from dataclasses import dataclass, field
from typing import Literal, Tuple

# LLM 消息角色类型（与 OpenAI / Anthropic 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class Message:
    """一条对话消息。"""

    role: Role
    content: str


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求，对 Provider 来说是只读输入。

    - temperature: 采样温度；Anthropic 仅在 > 0 时发送。
    - max_tokens: 0 表示交给 Provider 的默认值（OpenAI 省略该字段，
      Anthropic 使用 4096）。
    """

    model: str
    messages: Tuple[Message, ...] = field(default_factory=tuple)
    temperature: float = 0.7
    max_tokens: int = 0

    def __post_init__(self):
        # 允许调用方传入 list，统一冻结为 tuple
        object.__setattr__(self, "messages", tuple(self.messages))
