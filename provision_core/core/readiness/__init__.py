"""
就绪门控：服务主进程启动前阻塞，直到声明的网络依赖全部可连接。
"""
from .config import Endpoint, load_endpoints, parse_endpoint, parse_endpoints
from .probe import BackoffPolicy, ReadinessProbe, ReadinessResult

__all__ = [
    "Endpoint",
    "load_endpoints",
    "parse_endpoint",
    "parse_endpoints",
    "BackoffPolicy",
    "ReadinessProbe",
    "ReadinessResult",
]
