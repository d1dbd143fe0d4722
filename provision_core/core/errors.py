"""
统一错误分类：NotFound / Conflict / Transient / Fatal。
每类错误携带 code 与 http_status，供 HTTP 层按统一错误响应格式输出。
"""
from __future__ import annotations


class ProvisionError(Exception):
    """开通子系统错误基类。"""

    code = "PROVISION_ERROR"
    http_status = 500

    def __init__(self, message: str, details: str = "", code: str = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(ProvisionError):
    """账户、项目或租约不存在；立即返回，不重试。"""

    code = "NOT_FOUND"
    http_status = 404


class ConflictError(ProvisionError):
    """唯一性冲突，或存储侧资源归属其他项目。"""

    code = "CONFLICT"
    http_status = 409


class InvalidStateError(ConflictError):
    """租约当前状态不允许该操作（如非 failed 状态调用 retry）。"""

    code = "INVALID_STATE"


class TransientError(ProvisionError):
    """存储不可用、网络异常或超时；调用方可 retry 或重新 provision。"""

    code = "TRANSIENT"
    http_status = 503


class FatalError(ProvisionError):
    code = "FATAL"
    http_status = 500


class ReadinessTimeout(FatalError):
    """启动就绪等待超出配置时长，进程无法完成启动。"""

    code = "READINESS_TIMEOUT"


# ---------- 存储客户端侧错误（由 ResourceProvisioner 归类） ----------
class StoreError(Exception):
    """存储客户端错误基类；未显式归类的一律视为 Transient。"""


class StoreConflict(StoreError):
    """资源已存在且归属其他项目。"""


class StoreNotFound(StoreError):
    """释放时资源已不存在。"""


class StoreUnavailable(StoreError):
    """存储服务不可达或返回非预期状态。"""


__all__ = [
    "ProvisionError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "TransientError",
    "FatalError",
    "ReadinessTimeout",
    "StoreError",
    "StoreConflict",
    "StoreNotFound",
    "StoreUnavailable",
]
