"""流式输出相关基础设施：token 通道、SSE 解析、终端写出。"""

from ask_core.streaming.channel import CancelToken, Channel
from ask_core.streaming.sse import Event, SSEReader
from ask_core.streaming.writer import StreamWriter

__all__ = ["CancelToken", "Channel", "Event", "SSEReader", "StreamWriter"]
