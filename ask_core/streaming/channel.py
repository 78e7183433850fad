"""生产者/消费者之间的 token 通道与取消令牌。

- CancelToken: 协作式取消信号，Provider 在等待 HTTP 响应、每次解析循环、
  每次向通道发送时检查它。
- Channel: 有界、线程安全、可迭代的通道。只有生产者可以 close，且只能 close 一次；
  消费者用 ``for item in channel`` 读取，直到通道关闭且清空。
"""

import threading
import time
from collections import deque
from typing import Deque, Generic, Iterator, Optional, TypeVar

from ask_core.domain.exceptions import RequestCancelled

T = TypeVar("T")

DEFAULT_CHANNEL_BUFFER = 100

# 阻塞等待时轮询取消信号的间隔（秒）
_POLL_INTERVAL = 0.05


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(code="CANCELLED", message="request cancelled", http_status=499)


class Channel(Generic[T]):
    """有界通道，语义上对应“单生产者负责关闭”的 channel。"""

    def __init__(self, capacity: int = DEFAULT_CHANNEL_BUFFER):
        if capacity < 1:
            raise ValueError("channel capacity must be >= 1")
        self._capacity = capacity
        self._items: Deque[T] = deque()
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def send(self, item: T, cancel: Optional[CancelToken] = None) -> None:
        """发送一个元素；通道满时阻塞，期间取消则抛出 RequestCancelled。"""

        with self._cond:
            while True:
                if self._closed:
                    raise RuntimeError("send on closed channel")
                if cancel is not None:
                    cancel.raise_if_cancelled()
                if len(self._items) < self._capacity:
                    break
                self._cond.wait(_POLL_INTERVAL)
            self._items.append(item)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("close of closed channel")
            self._closed = True
            self._cond.notify_all()

    def receive(self, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None) -> Optional[T]:
        """取出一个元素；通道关闭且为空时返回 None。

        超时抛出 TimeoutError；传入 cancel 时，等待期间取消抛出 RequestCancelled。
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items and not self._closed:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                wait = _POLL_INTERVAL if cancel is not None else None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("channel receive timed out")
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            return None

    def __iter__(self) -> Iterator[T]:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._items or self._closed)
                if not self._items:
                    return
                item = self._items.popleft()
                self._cond.notify_all()
            yield item
