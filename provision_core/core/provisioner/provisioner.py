"""
资源开通引擎：按 (project_id, store_type) 维护租约状态机，是后端存储资源的唯一写入方。
- 同一 key 的操作串行（每 key 一把锁），不同 key 完全并行。
- provision 幂等：ready 租约原样返回；并发调用只分配一次，后到者等待前者完成并看到同一租约。
- 存储失败不自动重试：租约落入 failed，错误按 Conflict / Transient 归类返回调用方。
- 不同存储类型互不影响：一类失败不回滚、不阻塞另一类。
- 调用方超时：停止等待但不回退状态，进行中的操作在后台完成。
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional

from ..errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProvisionError,
    StoreConflict,
    StoreNotFound,
    TransientError,
)
from ..settings import _int_env, _optional_float_env
from .lease import LeaseKey, LeaseStatus, ResourceLease
from .lease_store import MemoryLeaseStore
from .store_types import normalize_store_type

logger = logging.getLogger("provisioner")


class ResourceProvisioner:
    """backends: 存储类型 -> 存储客户端；lease_store 缺省为内存存储。"""

    def __init__(
        self,
        backends: Dict[str, Any],
        lease_store=None,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self._backends = dict(backends)
        self._leases = lease_store if lease_store is not None else MemoryLeaseStore()
        self.timeout = timeout if timeout is not None else _optional_float_env("PROVISION_TIMEOUT_SEC")
        self._max_workers = max_workers or _int_env("PROVISION_WORKERS", 8)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._locks: Dict[LeaseKey, threading.Lock] = {}
        self._lock = threading.Lock()

    # ---------- 基础设施 ----------
    @property
    def store_types(self) -> List[str]:
        return sorted(self._backends)

    def resolve_store_type(self, store_type: str) -> str:
        """返回已配置的规范存储类型；未知或未配置抛 ValueError。"""
        if store_type in self._backends:
            return store_type
        name = normalize_store_type(store_type)
        if name not in self._backends:
            raise ValueError(f"存储类型 {name} 未配置")
        return name

    def _key_lock(self, key: LeaseKey) -> threading.Lock:
        with self._lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="provision")
            return self._executor

    @staticmethod
    def _release_after(lock: threading.Lock, fn: Callable[[], ResourceLease]) -> ResourceLease:
        try:
            return fn()
        finally:
            lock.release()

    def _run(self, key: LeaseKey, fn: Callable[[], ResourceLease], timeout: Optional[float]) -> ResourceLease:
        """在 key 锁内执行 fn；有超时时由工作线程执行，调用方到期即返回 TIMEOUT。"""
        timeout = timeout if timeout is not None else self.timeout
        lock = self._key_lock(key)
        if timeout is None:
            with lock:
                return fn()
        deadline = time.monotonic() + timeout
        if not lock.acquire(timeout=timeout):
            raise TransientError("等待同一资源上的进行中操作超时", details=f"{key[0]} {key[1]}", code="TIMEOUT")
        try:
            future = self._pool().submit(self._release_after, lock, fn)
        except BaseException:
            lock.release()
            raise
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout:
            logger.warning("operation timed out project=%s store=%s, left in flight", key[0], key[1])
            raise TransientError("操作超时，租约保持当前状态，可稍后重试", details=f"{key[0]} {key[1]}", code="TIMEOUT") from None

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    # ---------- 状态迁移 ----------
    def _save(self, lease: ResourceLease) -> None:
        self._leases.save(lease)

    def _fail(self, lease: ResourceLease, error: ProvisionError) -> ProvisionError:
        lease.transition(LeaseStatus.FAILED)
        lease.error_code = error.code
        lease.error_message = error.message if not error.details else f"{error.message}: {error.details}"
        self._save(lease)
        logger.warning("lease failed project=%s store=%s code=%s err=%s", lease.project_id, lease.store_type, error.code, error.details)
        return error

    def _allocate(self, lease: ResourceLease) -> ResourceLease:
        """requested/failed/遗留 provisioning -> provisioning -> ready|failed；存储侧为分配或接管，不会重复创建。"""
        if lease.status != LeaseStatus.PROVISIONING:
            lease.transition(LeaseStatus.PROVISIONING)
        lease.error_code = None
        lease.error_message = None
        self._save(lease)
        backend = self._backends[lease.store_type]
        try:
            allocation = backend.allocate(lease.project_id)
        except StoreConflict as e:
            raise self._fail(lease, ConflictError("存储资源已归属其他项目", details=str(e))) from e
        except Exception as e:
            raise self._fail(lease, TransientError("存储暂不可用，可稍后重试", details=str(e))) from e
        lease.handle = allocation.handle
        lease.credentials = dict(allocation.credentials)
        lease.adopted = allocation.adopted
        lease.transition(LeaseStatus.READY)
        self._save(lease)
        logger.info(
            "lease ready project=%s store=%s handle=%s adopted=%s",
            lease.project_id, lease.store_type, lease.handle, lease.adopted,
        )
        return lease.copy()

    def _provision_locked(self, project_id: str, store_type: str) -> ResourceLease:
        lease = self._leases.current((project_id, store_type))
        if lease is not None and lease.status == LeaseStatus.READY:
            return lease
        if lease is not None and lease.status == LeaseStatus.DEPROVISIONING:
            raise InvalidStateError("租约正在释放，请先完成 deprovision", details=f"{project_id} {store_type}")
        if lease is None:
            lease = ResourceLease(project_id=project_id, store_type=store_type)
            self._save(lease)
            logger.info("lease requested project=%s store=%s id=%s", project_id, store_type, lease.id)
        return self._allocate(lease)

    def _retry_locked(self, project_id: str, store_type: str) -> ResourceLease:
        lease = self._leases.current((project_id, store_type))
        if lease is None:
            raise NotFoundError("租约不存在", details=f"{project_id} {store_type}")
        if lease.status != LeaseStatus.FAILED:
            raise InvalidStateError("仅 failed 状态的租约可重试", details=lease.status.value)
        logger.info("lease retry project=%s store=%s id=%s", project_id, store_type, lease.id)
        return self._allocate(lease)

    def _deprovision_locked(self, project_id: str, store_type: str) -> ResourceLease:
        lease = self._leases.current((project_id, store_type))
        if lease is None:
            raise NotFoundError("租约不存在", details=f"{project_id} {store_type}")
        if lease.status != LeaseStatus.DEPROVISIONING:
            lease.transition(LeaseStatus.DEPROVISIONING)
            self._save(lease)
        if lease.handle:
            try:
                self._backends[lease.store_type].release(lease.handle)
            except StoreNotFound:
                logger.info("resource already gone project=%s store=%s handle=%s", project_id, store_type, lease.handle)
            except Exception as e:
                lease.error_code = TransientError.code
                lease.error_message = str(e)
                self._save(lease)
                logger.warning("release failed project=%s store=%s err=%s", project_id, store_type, e)
                raise TransientError("释放资源失败，可稍后重试", details=str(e)) from e
        lease.error_code = None
        lease.error_message = None
        lease.transition(LeaseStatus.RELEASED)
        self._save(lease)
        logger.info("lease released project=%s store=%s id=%s", project_id, store_type, lease.id)
        return lease.copy()

    # ---------- 对外操作 ----------
    def provision(self, project_id: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        """已 ready 则原样返回（幂等）；否则创建/续推租约并调用存储分配。"""
        store_type = self.resolve_store_type(store_type)
        return self._run((project_id, store_type), lambda: self._provision_locked(project_id, store_type), timeout)

    def retry(self, project_id: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        store_type = self.resolve_store_type(store_type)
        return self._run((project_id, store_type), lambda: self._retry_locked(project_id, store_type), timeout)

    def deprovision(self, project_id: str, store_type: str, timeout: Optional[float] = None) -> ResourceLease:
        store_type = self.resolve_store_type(store_type)
        return self._run((project_id, store_type), lambda: self._deprovision_locked(project_id, store_type), timeout)

    def deprovision_all(self, project_id: str, timeout: Optional[float] = None) -> List[ResourceLease]:
        """
        逐一释放项目下全部存活租约；任一失败不影响其余，全部尝试后抛出首个错误。
        按已配置的全部存储类型逐个取 key 锁，后台仍在进行的开通会先完成再被释放。
        """
        released: List[ResourceLease] = []
        first_error: Optional[ProvisionError] = None
        store_types = set(self.store_types) | {lease.store_type for lease in self._leases.by_project(project_id)}
        for store_type in sorted(store_types):
            if store_type not in self._backends:
                logger.warning("cannot release lease of unconfigured store project=%s store=%s", project_id, store_type)
                first_error = first_error or InvalidStateError("租约所属存储类型未配置，无法释放", details=store_type)
                continue
            try:
                released.append(self.deprovision(project_id, store_type, timeout=timeout))
            except NotFoundError:
                continue
            except ProvisionError as e:
                first_error = first_error or e
        if first_error is not None:
            raise first_error
        return released

    def get(self, project_id: str, store_type: str) -> Optional[ResourceLease]:
        return self._leases.current((project_id, self.resolve_store_type(store_type)))

    def list_leases(self, project_id: str) -> List[ResourceLease]:
        return self._leases.by_project(project_id)

    def history(self, project_id: str, store_type: str) -> List[ResourceLease]:
        return self._leases.history((project_id, self.resolve_store_type(store_type)))
