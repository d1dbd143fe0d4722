"""
开通服务门面：先经 TenantRegistry 校验调用方身份与项目归属，再委托 ResourceProvisioner。
未知账户/项目在触碰任何租约状态前即返回 NotFound。
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from ..core.database import create_engine_from_url, init_db, make_session_factory
from ..core.errors import NotFoundError
from ..core.provisioner import MemoryLeaseStore, ResourceLease, ResourceProvisioner, SqlLeaseStore, build_backends_from_env
from ..core.settings import _str_env
from ..core.tenant import (
    Account,
    MemoryTenantPersistence,
    ProjectRef,
    SqlTenantPersistence,
    TenantRegistry,
    bootstrap_from_env,
)
from .gate import OperationGate

logger = logging.getLogger("provisioning.service")


class ProvisioningService:
    def __init__(self, registry: TenantRegistry, provisioner: ResourceProvisioner) -> None:
        self.registry = registry
        self.provisioner = provisioner
        self.gate = OperationGate()

    @contextmanager
    def _project_scope(self, key: str, project_name: str) -> Iterator[ProjectRef]:
        """账户与项目均在门控内；进入后复核项目仍是同一个，避免对已移除项目开通。"""
        with self.gate.operation(("account", key)):
            ref = self.project(key, project_name)
            with self.gate.operation(("project", ref.id)):
                if self.project(key, project_name).id != ref.id:
                    raise NotFoundError("项目不存在", details=project_name)
                yield ref

    # ---------- 账户与项目 ----------
    def create_account(self, key: str, name: str) -> Account:
        return self.registry.create_account(key, name)

    def account(self, key: str) -> Account:
        return self.registry.lookup(key)

    def add_project(self, key: str, project_name: str) -> ProjectRef:
        with self.gate.operation(("account", key)):
            return self.registry.add_project(key, project_name)

    def project(self, key: str, project_name: str) -> ProjectRef:
        return self.registry.get_project(key, project_name)

    def remove_project(self, key: str, project_name: str, timeout: Optional[float] = None) -> List[ResourceLease]:
        """
        先标记项目移除并等待进行中的租约操作结束，再释放全部租约，最后解除项目。
        移除期间该项目上的 provision/retry/deprovision 返回 NotFound；释放失败时项目保留以便重试。
        """
        with self.gate.operation(("account", key)):
            ref = self.project(key, project_name)
            with self.gate.removal(("project", ref.id)):
                released = self.provisioner.deprovision_all(ref.id, timeout=timeout)
                self.registry.remove_project(key, project_name)
        return released

    def delete_account(self, key: str, timeout: Optional[float] = None) -> int:
        """级联：拒绝该账户上的新操作，等待进行中的结束，释放所有项目的租约后删除账户。返回释放的租约数。"""
        with self.gate.removal(("account", key)):
            account = self.account(key)
            released = 0
            for name in account.projects:
                ref = self.project(account.key, name)
                released += len(self.provisioner.deprovision_all(ref.id, timeout=timeout))
            self.registry.delete_account(account.key)
        logger.info("account %s deleted, %d lease(s) released", account.name, released)
        return released

    def list_projects(self) -> List[Dict[str, Any]]:
        return self.registry.list_projects()

    # ---------- 资源租约 ----------
    def provision(self, key: str, project_name: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        with self._project_scope(key, project_name) as ref:
            store_type = self.provisioner.resolve_store_type(store_type)
            return self.provisioner.provision(ref.id, store_type, timeout=timeout)

    def retry(self, key: str, project_name: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        with self._project_scope(key, project_name) as ref:
            store_type = self.provisioner.resolve_store_type(store_type)
            return self.provisioner.retry(ref.id, store_type, timeout=timeout)

    def deprovision(self, key: str, project_name: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        with self._project_scope(key, project_name) as ref:
            store_type = self.provisioner.resolve_store_type(store_type)
            return self.provisioner.deprovision(ref.id, store_type, timeout=timeout)

    def lease(self, key: str, project_name: str, store_type: str) -> ResourceLease:
        ref = self.project(key, project_name)
        lease = self.provisioner.get(ref.id, store_type)
        if lease is None:
            raise NotFoundError("租约不存在", details=store_type)
        return lease

    def leases(self, key: str, project_name: str) -> List[ResourceLease]:
        ref = self.project(key, project_name)
        return self.provisioner.list_leases(ref.id)


def build_service_from_env() -> ProvisioningService:
    """
    按环境变量组装：PROVISION_DATABASE_URL 配置时注册表与租约持久化到数据库，否则内存；
    存储客户端见 build_backends_from_env；TENANT_BOOTSTRAP_PATH 存在时导入初始账户。
    """
    db_url = _str_env("PROVISION_DATABASE_URL")
    if db_url:
        engine = create_engine_from_url(db_url)
        init_db(engine)
        factory = make_session_factory(engine)
        registry = TenantRegistry(SqlTenantPersistence(factory))
        lease_store = SqlLeaseStore(factory)
        logger.info("persistence: %s", engine.url.render_as_string(hide_password=True))
    else:
        registry = TenantRegistry(MemoryTenantPersistence())
        lease_store = MemoryLeaseStore()
        logger.info("persistence: in-memory")
    bootstrap_from_env(registry)
    provisioner = ResourceProvisioner(build_backends_from_env(), lease_store=lease_store)
    return ProvisioningService(registry, provisioner)
