"""
资源开通引擎单元测试：幂等、并发收敛、存储间隔离、释放终态、重试与接管、错误归类、超时。
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from provision_core.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StoreConflict,
    TransientError,
)
from provision_core.core.provisioner import (
    LeaseStatus,
    MemoryStoreBackend,
    ResourceProvisioner,
    resource_name,
)

RELATIONAL = "database::shared::postgres"
DOCUMENT = "database::shared::mongodb"

PID = "k1/proj-a"


def test_provision_returns_ready_lease_with_credentials(provisioner, backends):
    lease = provisioner.provision(PID, RELATIONAL)
    assert lease.status == LeaseStatus.READY
    assert lease.handle
    assert lease.adopted is False
    assert lease.credentials["engine"] == "postgres"
    assert lease.credentials["port"] == 5432
    assert backends[RELATIONAL].allocate_calls == 1


def test_provision_is_idempotent(provisioner, backends):
    first = provisioner.provision(PID, RELATIONAL)
    second = provisioner.provision(PID, RELATIONAL)
    assert second.id == first.id
    assert second.handle == first.handle
    assert backends[RELATIONAL].allocate_calls == 1


def test_alias_maps_to_same_lease(provisioner, backends):
    a = provisioner.provision(PID, "relational")
    b = provisioner.provision(PID, "database::shared::postgres")
    c = provisioner.provision(PID, "shared::postgres")
    assert a.handle == b.handle == c.handle
    assert a.store_type == RELATIONAL
    assert backends[RELATIONAL].allocate_calls == 1


def test_unknown_or_unconfigured_store_type(provisioner):
    with pytest.raises(ValueError):
        provisioner.provision(PID, "nosuchstore")
    with pytest.raises(ValueError):
        provisioner.provision(PID, "database::aws_rds::mysql")


def test_concurrent_provision_converges():
    backend = MemoryStoreBackend(RELATIONAL, latency=0.05)
    p = ResourceProvisioner({RELATIONAL: backend})
    barrier = threading.Barrier(10)

    def call():
        barrier.wait()
        return p.provision(PID, RELATIONAL)

    with ThreadPoolExecutor(max_workers=10) as ex:
        leases = list(ex.map(lambda _: call(), range(10)))
    assert backend.allocate_calls == 1
    assert len({lease.handle for lease in leases}) == 1
    assert len({lease.id for lease in leases}) == 1
    assert all(lease.status == LeaseStatus.READY for lease in leases)


def test_unrelated_keys_proceed_in_parallel():
    """不同项目不互相阻塞：两个分配必须同时处于进行中才能各自完成。"""
    backend = MemoryStoreBackend(RELATIONAL)
    rendezvous = threading.Barrier(2, timeout=5)
    real_allocate = backend.allocate

    def allocate(project_id):
        rendezvous.wait()
        return real_allocate(project_id)

    backend.allocate = allocate
    p = ResourceProvisioner({RELATIONAL: backend})
    with ThreadPoolExecutor(max_workers=2) as ex:
        leases = list(ex.map(lambda pid: p.provision(pid, RELATIONAL), ["k1/a", "k1/b"]))
    assert all(lease.status == LeaseStatus.READY for lease in leases)
    assert backend.allocate_calls == 2


def test_failure_in_one_store_does_not_affect_other(provisioner, backends):
    backends[DOCUMENT].fail_next()
    ok = provisioner.provision(PID, RELATIONAL)
    with pytest.raises(TransientError):
        provisioner.provision(PID, DOCUMENT)
    failed = provisioner.get(PID, DOCUMENT)
    assert failed.status == LeaseStatus.FAILED
    assert failed.error_code == "TRANSIENT"
    assert provisioner.get(PID, RELATIONAL).status == LeaseStatus.READY

    retried = provisioner.retry(PID, DOCUMENT)
    assert retried.status == LeaseStatus.READY
    assert retried.id == failed.id
    assert backends[RELATIONAL].allocate_calls == 1
    assert provisioner.get(PID, RELATIONAL).handle == ok.handle


def test_provision_again_after_failure_redrives_same_lease(provisioner, backends):
    backends[RELATIONAL].fail_next()
    with pytest.raises(TransientError):
        provisioner.provision(PID, RELATIONAL)
    failed_id = provisioner.get(PID, RELATIONAL).id
    lease = provisioner.provision(PID, RELATIONAL)
    assert lease.status == LeaseStatus.READY
    assert lease.id == failed_id


def test_no_automatic_retry(provisioner, backends):
    backends[RELATIONAL].fail_next(times=3)
    with pytest.raises(TransientError):
        provisioner.provision(PID, RELATIONAL)
    assert backends[RELATIONAL].allocate_calls == 1


def test_retry_only_from_failed(provisioner):
    with pytest.raises(NotFoundError):
        provisioner.retry(PID, RELATIONAL)
    provisioner.provision(PID, RELATIONAL)
    with pytest.raises(InvalidStateError):
        provisioner.retry(PID, RELATIONAL)


def test_retry_adopts_resource_from_prior_partial_success(provisioner, backends):
    """上次分配在存储侧已成功但未记录：重试接管已有资源，不重复创建。"""
    backend = backends[RELATIONAL]
    backend.fail_next()
    with pytest.raises(TransientError):
        provisioner.provision(PID, RELATIONAL)
    backend.claim(resource_name(PID, backend.kind), owner=PID)
    lease = provisioner.retry(PID, RELATIONAL)
    assert lease.adopted is True
    assert len(backend.resources()) == 1


def test_foreign_owned_resource_is_conflict(provisioner, backends):
    backend = backends[RELATIONAL]
    backend.claim(resource_name(PID, backend.kind), owner="k9/someone-else")
    with pytest.raises(ConflictError):
        provisioner.provision(PID, RELATIONAL)
    lease = provisioner.get(PID, RELATIONAL)
    assert lease.status == LeaseStatus.FAILED
    assert lease.error_code == "CONFLICT"


def test_explicit_store_conflict_error_is_classified(backends):
    backends[RELATIONAL].fail_next(error=StoreConflict("taken"))
    p = ResourceProvisioner(backends)
    with pytest.raises(ConflictError):
        p.provision(PID, RELATIONAL)


def test_deprovision_is_terminal(provisioner, backends):
    first = provisioner.provision(PID, RELATIONAL)
    released = provisioner.deprovision(PID, RELATIONAL)
    assert released.status == LeaseStatus.RELEASED
    assert released.id == first.id
    assert provisioner.get(PID, RELATIONAL) is None
    assert backends[RELATIONAL].resources() == {}

    fresh = provisioner.provision(PID, RELATIONAL)
    assert fresh.id != first.id
    assert fresh.handle != first.handle
    assert fresh.adopted is False
    assert [l.id for l in provisioner.history(PID, RELATIONAL)] == [first.id]


def test_deprovision_unknown_lease(provisioner):
    with pytest.raises(NotFoundError):
        provisioner.deprovision(PID, RELATIONAL)


def test_deprovision_failed_lease_without_handle(provisioner, backends):
    backends[RELATIONAL].fail_next()
    with pytest.raises(TransientError):
        provisioner.provision(PID, RELATIONAL)
    lease = provisioner.deprovision(PID, RELATIONAL)
    assert lease.status == LeaseStatus.RELEASED
    assert backends[RELATIONAL].release_calls == 0


def test_deprovision_release_failure_keeps_deprovisioning(provisioner, backends):
    provisioner.provision(PID, RELATIONAL)
    backends[RELATIONAL].fail_next()
    with pytest.raises(TransientError):
        provisioner.deprovision(PID, RELATIONAL)
    assert provisioner.get(PID, RELATIONAL).status == LeaseStatus.DEPROVISIONING
    with pytest.raises(InvalidStateError):
        provisioner.provision(PID, RELATIONAL)
    assert provisioner.deprovision(PID, RELATIONAL).status == LeaseStatus.RELEASED


def test_deprovision_tolerates_resource_already_gone(provisioner, backends):
    lease = provisioner.provision(PID, RELATIONAL)
    backends[RELATIONAL].release(lease.handle)
    assert provisioner.deprovision(PID, RELATIONAL).status == LeaseStatus.RELEASED


def test_deprovision_waits_for_inflight_allocation():
    backend = MemoryStoreBackend(RELATIONAL, latency=0.2)
    p = ResourceProvisioner({RELATIONAL: backend})
    t = threading.Thread(target=p.provision, args=(PID, RELATIONAL))
    t.start()
    time.sleep(0.05)
    lease = p.deprovision(PID, RELATIONAL)
    t.join()
    assert lease.status == LeaseStatus.RELEASED
    assert backend.release_calls == 1
    assert backend.resources() == {}


def test_deprovision_all(provisioner, backends):
    provisioner.provision(PID, RELATIONAL)
    provisioner.provision(PID, DOCUMENT)
    provisioner.provision("k1/other", RELATIONAL)
    released = provisioner.deprovision_all(PID)
    assert {l.store_type for l in released} == {RELATIONAL, DOCUMENT}
    assert provisioner.list_leases(PID) == []
    assert len(provisioner.list_leases("k1/other")) == 1


def test_timeout_leaves_lease_in_flight():
    backend = MemoryStoreBackend(RELATIONAL, latency=0.4)
    p = ResourceProvisioner({RELATIONAL: backend})
    try:
        with pytest.raises(TransientError) as exc:
            p.provision(PID, RELATIONAL, timeout=0.05)
        assert exc.value.code == "TIMEOUT"
        assert p.get(PID, RELATIONAL).status == LeaseStatus.PROVISIONING
        # 进行中的操作在后台完成；随后的调用等到它结束并看到 ready
        lease = p.provision(PID, RELATIONAL, timeout=5)
        assert lease.status == LeaseStatus.READY
        assert backend.allocate_calls == 1
    finally:
        p.shutdown()


def test_lease_store_backends_behave_alike(lease_store, backends):
    p = ResourceProvisioner(backends, lease_store=lease_store)
    first = p.provision(PID, RELATIONAL)
    assert p.provision(PID, RELATIONAL).handle == first.handle
    p.deprovision(PID, RELATIONAL)
    assert p.get(PID, RELATIONAL) is None
    second = p.provision(PID, RELATIONAL)
    assert second.id != first.id
    assert [l.id for l in p.history(PID, RELATIONAL)] == [first.id]
    assert [l.id for l in p.list_leases(PID)] == [second.id]
