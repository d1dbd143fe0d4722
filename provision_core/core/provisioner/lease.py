"""
资源租约：某项目在某类后端存储中的一份已分配资源。
状态单调推进，仅允许 failed -> provisioning（重试）与 failed -> deprovisioning（放弃并清理）回转。
"""
from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..errors import InvalidStateError
from .store_types import connection_string


class LeaseStatus(str, Enum):
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    READY = "ready"
    DEPROVISIONING = "deprovisioning"
    RELEASED = "released"
    FAILED = "failed"


_TRANSITIONS = {
    LeaseStatus.REQUESTED: {LeaseStatus.PROVISIONING, LeaseStatus.DEPROVISIONING},
    LeaseStatus.PROVISIONING: {LeaseStatus.READY, LeaseStatus.FAILED, LeaseStatus.DEPROVISIONING},
    LeaseStatus.READY: {LeaseStatus.DEPROVISIONING},
    LeaseStatus.FAILED: {LeaseStatus.PROVISIONING, LeaseStatus.DEPROVISIONING},
    LeaseStatus.DEPROVISIONING: {LeaseStatus.RELEASED},
    LeaseStatus.RELEASED: set(),
}

LeaseKey = Tuple[str, str]


def can_transition(current: LeaseStatus, target: LeaseStatus) -> bool:
    return target in _TRANSITIONS[current]


@dataclass
class ResourceLease:
    project_id: str
    store_type: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: LeaseStatus = LeaseStatus.REQUESTED
    handle: Optional[str] = None
    credentials: Dict[str, Any] = field(default_factory=dict)
    adopted: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> LeaseKey:
        return (self.project_id, self.store_type)

    @property
    def live(self) -> bool:
        return self.status != LeaseStatus.RELEASED

    def transition(self, target: LeaseStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidStateError(
                "租约状态不允许该操作",
                details=f"{self.status.value} -> {target.value}",
            )
        self.status = target
        self.updated_at = time.time()

    def copy(self) -> "ResourceLease":
        return copy.deepcopy(self)

    def to_dict(self, show_password: bool = False) -> Dict[str, Any]:
        creds = dict(self.credentials)
        if creds and not show_password:
            creds.pop("password", None)
        out = {
            "id": self.id,
            "project_id": self.project_id,
            "store_type": self.store_type,
            "status": self.status.value,
            "handle": self.handle,
            "adopted": self.adopted,
            "credentials": creds,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.credentials:
            out["connection_string"] = connection_string(self.credentials, show_password=show_password)
        if self.error_code:
            out["error"] = {"code": self.error_code, "message": self.error_message}
        return out
