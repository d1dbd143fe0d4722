"""
启动协调：先等待依赖就绪，再把控制权交给主入口，且只交一次。
就绪超时是核心唯一的致命路径：记录 critical 日志后以非零状态退出进程。
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Optional

from ..errors import ReadinessTimeout
from ..readiness import BackoffPolicy, Endpoint, ReadinessProbe
from ..settings import _optional_float_env

logger = logging.getLogger("startup")

# EX_UNAVAILABLE：依赖服务不可用
EXIT_READINESS_TIMEOUT = 69


class StartupCoordinator:
    def __init__(self, probe: ReadinessProbe, max_duration: Optional[float] = None) -> None:
        self.probe = probe
        self.max_duration = max_duration if max_duration is not None else _optional_float_env("READINESS_MAX_WAIT_SEC")
        self._latch = threading.Lock()
        self._started = False

    @property
    def handed_off(self) -> bool:
        return self._started

    def run(self, main: Callable[..., Any], *args, **kwargs) -> Any:
        """阻塞至就绪后调用 main(*args, **kwargs) 并返回其结果；重复调用属编程错误。"""
        with self._latch:
            if self._started:
                raise RuntimeError("StartupCoordinator.run 只能调用一次")
            self._started = True
        try:
            self.probe.wait(self.max_duration)
        except ReadinessTimeout as e:
            logger.critical("dependencies not ready, giving up: %s", e.details or e.message)
            raise SystemExit(EXIT_READINESS_TIMEOUT) from e
        logger.info("dependencies are available - starting %s", getattr(main, "__name__", "main"))
        return main(*args, **kwargs)


def run_with_endpoints(
    endpoints: Iterable[Endpoint],
    main: Callable[..., Any],
    backoff: Optional[BackoffPolicy] = None,
    max_duration: Optional[float] = None,
    **kwargs,
) -> Any:
    """便捷入口：按端点列表构造探测器与协调器并执行。"""
    coordinator = StartupCoordinator(ReadinessProbe(endpoints, backoff=backoff), max_duration=max_duration)
    return coordinator.run(main, **kwargs)
