"""
操作门控：按作用域（账户 key、项目 id）统计进行中的操作。
- operation(scope)：进入时若该作用域正在移除则抛 NotFoundError，否则计数 +1。
- removal(scope)：标记移除并等待进行中操作全部退出；期间新操作被拒绝。
操作本身从不等待，只有移除方等待，因此嵌套使用不会死锁。
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Set

from ..core.errors import NotFoundError


class OperationGate:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active: Dict[Hashable, int] = {}
        self._removing: Set[Hashable] = set()

    def active(self, scope: Hashable) -> int:
        with self._cond:
            return self._active.get(scope, 0)

    def removing(self, scope: Hashable) -> bool:
        with self._cond:
            return scope in self._removing

    @contextmanager
    def operation(self, scope: Hashable) -> Iterator[None]:
        with self._cond:
            if scope in self._removing:
                raise NotFoundError("目标正在删除")
            self._active[scope] = self._active.get(scope, 0) + 1
        try:
            yield
        finally:
            with self._cond:
                left = self._active[scope] - 1
                if left:
                    self._active[scope] = left
                else:
                    del self._active[scope]
                    self._cond.notify_all()

    @contextmanager
    def removal(self, scope: Hashable) -> Iterator[None]:
        with self._cond:
            if scope in self._removing:
                raise NotFoundError("目标正在删除")
            self._removing.add(scope)
            while self._active.get(scope):
                self._cond.wait()
        try:
            yield
        finally:
            # 移除失败时目标仍在，允许后续操作与重试
            with self._cond:
                self._removing.discard(scope)
