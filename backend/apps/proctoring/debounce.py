# apps/proctoring/debounce.py

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

DEFAULT_DEBOUNCE_SECONDS = 0.5

_MISSING = object()


class Debouncer:
    """
    防抖提交：输入期间只更新待提交值，静默 delay 秒后才调用 commit
    - 窗口内最后一次输入总是胜出，之前的待提交值被覆盖
    - flush() 立即提交待提交值（切题、提交、超时、销毁前调用）
    - 运行在事件循环线程中，commit 为同步回调
    """

    def __init__(self, commit: Callable[[Any], None], delay: float = DEFAULT_DEBOUNCE_SECONDS):
        self._commit = commit
        self.delay = delay
        self._pending: Any = _MISSING
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._pending is not _MISSING

    def push(self, value: Any) -> None:
        self._pending = value
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def flush(self) -> bool:
        """立即提交待提交值；没有待提交值时返回 False"""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending is _MISSING:
            return False
        value, self._pending = self._pending, _MISSING
        self._commit(value)
        return True

    def cancel(self) -> None:
        """丢弃待提交值"""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = _MISSING

    def _fire(self) -> None:
        self._handle = None
        self.flush()
