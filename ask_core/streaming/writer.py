"""终端流式输出。

根据输出是否为交互式终端调整收尾行为：管道/重定向时补一个结尾换行，
终端模式下不额外写入。
"""

from typing import TextIO

from ask_core.infrastructure.logging.logger import logger


class StreamWriter:
    def __init__(self, out: TextIO, is_tty: bool):
        self._out = out
        self._is_tty = is_tty

    @property
    def is_tty(self) -> bool:
        return self._is_tty

    def write(self, token: str) -> None:
        """原样写出 token 并立即刷新。"""
        self._out.write(token)
        self._out.flush()

    def flush(self) -> None:
        if self._is_tty:
            return
        try:
            self._out.write("\n")
            self._out.flush()
        except (OSError, ValueError) as e:
            # 正文已经输出，结尾换行失败只记警告
            logger.warning("failed to write trailing newline: %s", e)
