"""SSE (Server-Sent Events) 解析器。

把字节流切成行，再按 SSE 帧规则组装为 Event：

- ``:`` 开头的行是注释，忽略。
- ``event:<value>`` 设置当前事件类型（去掉首尾空白）。
- ``data:<value>`` 去掉至多一个前导空格后追加到当前数据，多行 data 以 ``\\n`` 连接。
- 空行结束当前事件：数据非空才产出，否则静默丢弃。
- 流结束时若还有未产出的非空事件，同样产出。

行切分在字节层完成，因此输入在任意字节边界被拆开都不影响结果
（包括被拆开的多字节 UTF-8 字符）。
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import httpx

from ask_core.domain.exceptions import NetworkError
from ask_core.streaming.channel import CancelToken, Channel


@dataclass(frozen=True)
class Event:
    data: str
    type: str = ""


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """把任意切分的字节块还原为文本行（去掉 ``\\n`` / ``\\r\\n`` 行尾）。"""

    buffer = b""
    for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while True:
            idx = buffer.find(b"\n")
            if idx < 0:
                break
            line, buffer = buffer[:idx], buffer[idx + 1:]
            yield _decode(line)
    if buffer:
        yield _decode(buffer)


def _decode(line: bytes) -> str:
    if line.endswith(b"\r"):
        line = line[:-1]
    return line.decode("utf-8", errors="replace")


class SSEReader:
    """从字节流读取 SSE 事件。

    ``events()`` 以生成器形式逐个产出事件；``read(channel)`` 把事件发送到通道，
    但不会关闭通道，关闭由调用方负责。
    """

    def __init__(self, source: Iterable[bytes], cancel: Optional[CancelToken] = None):
        self._source = source
        self._cancel = cancel or CancelToken()

    def events(self) -> Iterator[Event]:
        event_type = ""
        data: Optional[str] = None
        try:
            for line in iter_lines(self._source):
                self._cancel.raise_if_cancelled()

                if line == "":
                    if data:
                        yield Event(data=data, type=event_type)
                    event_type, data = "", None
                    continue

                if line.startswith(":"):
                    continue

                if line.startswith("event:"):
                    event_type = line[len("event:"):].strip()
                    continue

                if line.startswith("data:"):
                    value = line[len("data:"):]
                    if value.startswith(" "):
                        value = value[1:]
                    data = value if not data else data + "\n" + value
        except (OSError, httpx.RequestError, httpx.StreamError) as e:
            self._cancel.raise_if_cancelled()
            raise NetworkError(code="SSE_READ_ERROR", message=f"error reading SSE stream: {e}") from e

        self._cancel.raise_if_cancelled()
        if data:
            yield Event(data=data, type=event_type)

    def read(self, events: Channel[Event]) -> None:
        """读取全部事件并发送到 events；正常结束返回 None，取消抛出 RequestCancelled。"""

        for event in self.events():
            self._cancel.raise_if_cancelled()
            events.send(event, self._cancel)


__all__ = ["Event", "SSEReader", "iter_lines"]
