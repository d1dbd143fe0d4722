"""
就绪探测：轮询依赖端点直到同一轮内全部可连接。
- 每次失败仅打日志，不向上抛出；只有超出 max_duration 才转为 ReadinessTimeout（Fatal）。
- 轮间按退避策略休眠（固定或指数，封顶），不忙等；不跨轮锁存部分成功。
"""
from __future__ import annotations

import logging
import random
import socket
import time
from typing import Callable, Iterable, List, NamedTuple, Optional

from ..errors import ReadinessTimeout
from ..settings import _float_env
from .config import Endpoint

logger = logging.getLogger("readiness")

# 退避下限，防止配置为 0 时忙等
_MIN_DELAY_SEC = 0.05


class BackoffPolicy:
    """轮间休眠：factor == 1 为固定间隔，否则按 initial * factor^attempt 指数增长，封顶 max_delay。"""

    def __init__(self, initial: float = 1.0, factor: float = 1.0, max_delay: float = 30.0, jitter: float = 0.0):
        if factor < 1:
            raise ValueError("factor 不能小于 1")
        self.initial = max(_MIN_DELAY_SEC, float(initial))
        self.factor = float(factor)
        self.max_delay = max(self.initial, float(max_delay))
        self.jitter = max(0.0, float(jitter))

    @classmethod
    def fixed(cls, interval: float) -> "BackoffPolicy":
        return cls(initial=interval, factor=1.0, max_delay=interval)

    @classmethod
    def exponential(cls, initial: float = 0.5, max_delay: float = 30.0, factor: float = 2.0) -> "BackoffPolicy":
        return cls(initial=initial, factor=factor, max_delay=max_delay)

    @classmethod
    def from_env(cls) -> "BackoffPolicy":
        """READINESS_BACKOFF_INITIAL_SEC / READINESS_BACKOFF_FACTOR / READINESS_BACKOFF_MAX_SEC。"""
        return cls(
            initial=_float_env("READINESS_BACKOFF_INITIAL_SEC", 1.0),
            factor=max(1.0, _float_env("READINESS_BACKOFF_FACTOR", 1.0)),
            max_delay=_float_env("READINESS_BACKOFF_MAX_SEC", 30.0),
        )

    def delay(self, attempt: int) -> float:
        """第 attempt 次失败后的休眠秒数（attempt 从 0 开始）。"""
        if self.factor == 1.0:
            base = self.initial
        else:
            # 指数上溢前截断
            exp = min(attempt, 64)
            base = min(self.max_delay, self.initial * (self.factor ** exp))
        if self.jitter:
            base += random.uniform(0, self.jitter)
        return base

    def __repr__(self) -> str:
        return f"BackoffPolicy(initial={self.initial}, factor={self.factor}, max_delay={self.max_delay})"


class ReadinessResult(NamedTuple):
    ready: bool
    attempts: int
    elapsed: float


def _tcp_connect(address, timeout):
    return socket.create_connection(address, timeout=timeout)


class ReadinessProbe:
    """对一组 (host, port) 做 TCP 连接探测；connector/sleep/clock 可注入便于测试。"""

    def __init__(
        self,
        endpoints: Iterable[Endpoint],
        backoff: Optional[BackoffPolicy] = None,
        connect_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        connector: Callable = _tcp_connect,
    ):
        self.endpoints: List[Endpoint] = [Endpoint(*ep) for ep in endpoints]
        self.backoff = backoff or BackoffPolicy.from_env()
        self.connect_timeout = connect_timeout if connect_timeout is not None else _float_env("READINESS_CONNECT_TIMEOUT_SEC", 2.0)
        self._sleep = sleep
        self._clock = clock
        self._connect = connector

    def _reachable(self, endpoint: Endpoint) -> bool:
        try:
            conn = self._connect((endpoint.host, endpoint.port), self.connect_timeout)
        except OSError as e:
            logger.debug("connect %s failed: %s", endpoint, e)
            return False
        try:
            conn.close()
        except OSError:
            pass
        return True

    def check_once(self) -> List[Endpoint]:
        """单轮探测，返回不可达端点列表；空列表表示本轮全部就绪。"""
        return [ep for ep in self.endpoints if not self._reachable(ep)]

    def wait(self, max_duration: Optional[float] = None) -> ReadinessResult:
        """
        阻塞直到全部端点在同一轮内可连接。
        max_duration 为 None 时无限重试；否则超时抛 ReadinessTimeout。
        """
        start = self._clock()
        deadline = start + max_duration if max_duration is not None else None
        attempt = 0
        while True:
            pending = self.check_once()
            if not pending:
                elapsed = self._clock() - start
                logger.info("dependencies are available after %d attempt(s): %s", attempt + 1, ", ".join(str(e) for e in self.endpoints) or "-")
                return ReadinessResult(True, attempt + 1, elapsed)
            delay = self.backoff.delay(attempt)
            attempt += 1
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    names = ", ".join(str(e) for e in pending)
                    logger.error("readiness timed out after %d attempt(s), still unavailable: %s", attempt, names)
                    raise ReadinessTimeout("依赖端点在限定时间内未就绪", details=names)
                delay = min(delay, remaining)
            for ep in pending:
                logger.warning("%s is not available yet - sleeping %.2fs", ep, delay)
            self._sleep(delay)
