"""
资源开通：按 (项目, 存储类型) 的租约状态机、租约存储与存储客户端。
"""
from .backends import Allocation, HttpStoreBackend, MemoryStoreBackend, build_backends_from_env, resource_name
from .lease import LeaseStatus, ResourceLease, can_transition
from .lease_store import MemoryLeaseStore, SqlLeaseStore
from .provisioner import ResourceProvisioner
from .store_types import ALIASES, STORE_TYPES, connection_string, normalize_store_type

__all__ = [
    "Allocation",
    "HttpStoreBackend",
    "MemoryStoreBackend",
    "build_backends_from_env",
    "resource_name",
    "LeaseStatus",
    "ResourceLease",
    "can_transition",
    "MemoryLeaseStore",
    "SqlLeaseStore",
    "ResourceProvisioner",
    "ALIASES",
    "STORE_TYPES",
    "connection_string",
    "normalize_store_type",
]
