"""
租户注册表：账户（API key）与项目身份，持久化协作者可替换。
"""
from .bootstrap import bootstrap_from_env, load_bootstrap_file
from .persistence import MemoryTenantPersistence, SqlTenantPersistence, new_project_id
from .store import Account, ProjectRef, TenantRegistry

__all__ = [
    "Account",
    "ProjectRef",
    "TenantRegistry",
    "MemoryTenantPersistence",
    "SqlTenantPersistence",
    "new_project_id",
    "load_bootstrap_file",
    "bootstrap_from_env",
]
