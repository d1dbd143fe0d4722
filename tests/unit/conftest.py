"""
核心层单元测试公共 fixture：路径、注册表、存储客户端、开通引擎、HTTP 客户端。
"""
from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from provision_core.core.database import create_engine_from_url, init_db, make_session_factory
from provision_core.core.provisioner import MemoryLeaseStore, MemoryStoreBackend, ResourceProvisioner, SqlLeaseStore
from provision_core.core.tenant import MemoryTenantPersistence, SqlTenantPersistence, TenantRegistry
from provision_core.service import ProvisioningService, create_app

RELATIONAL = "database::shared::postgres"
DOCUMENT = "database::shared::mongodb"


@pytest.fixture
def session_factory():
    """内存 SQLite，单连接共享。"""
    engine = create_engine_from_url("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def registry(request):
    """同一组用例分别跑内存与 SQLAlchemy 持久化。"""
    if request.param == "memory":
        return TenantRegistry(MemoryTenantPersistence())
    return TenantRegistry(SqlTenantPersistence(request.getfixturevalue("session_factory")))


@pytest.fixture
def backends():
    return {
        RELATIONAL: MemoryStoreBackend(RELATIONAL),
        DOCUMENT: MemoryStoreBackend(DOCUMENT),
    }


@pytest.fixture(params=["memory", "sql"])
def lease_store(request):
    if request.param == "memory":
        return MemoryLeaseStore()
    return SqlLeaseStore(request.getfixturevalue("session_factory"))


@pytest.fixture
def provisioner(backends):
    p = ResourceProvisioner(backends, lease_store=MemoryLeaseStore())
    yield p
    p.shutdown()


@pytest.fixture
def service(backends):
    p = ResourceProvisioner(backends, lease_store=MemoryLeaseStore())
    yield ProvisioningService(TenantRegistry(MemoryTenantPersistence()), p)
    p.shutdown()


@pytest.fixture
def api_app(service):
    app = create_app(service=service, admin_key="admin-secret")
    app.config["TESTING"] = True
    return app


@pytest.fixture
def api_client(api_app):
    with api_app.test_client() as c:
        yield c
