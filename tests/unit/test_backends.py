"""
存储客户端单元测试：内存存储分配/接管/冲突，HTTP 客户端错误映射，按环境变量组装。
"""
from __future__ import annotations

import io
import json
import urllib.error

import pytest

from provision_core.core.errors import StoreConflict, StoreNotFound, StoreUnavailable
from provision_core.core.provisioner import HttpStoreBackend, MemoryStoreBackend, build_backends_from_env, resource_name
from provision_core.core.provisioner import backends as backends_mod
from provision_core.service import build_service_from_env

RELATIONAL = "database::shared::postgres"


def test_resource_name_convention():
    assert resource_name("0f3a9c", "shared_postgres") == "0f3a9c_shared_postgres"
    assert resource_name("k1/proj-a", "shared_postgres") == "k1_2fproj_2da_shared_postgres"


def test_resource_name_is_injective():
    ids = ["k1/a-b", "k1-a/b", "K1/a-b", "k1_a_b", "k1_2fa_2db"]
    names = {resource_name(i, "shared_postgres") for i in ids}
    assert len(names) == len(ids)


def test_memory_allocate_adopt_and_conflict():
    b = MemoryStoreBackend(RELATIONAL)
    first = b.allocate("k1/a")
    assert first.adopted is False
    again = b.allocate("k1/a")
    assert again.adopted is True
    assert again.handle == first.handle
    b.claim(resource_name("k1/b", b.kind), owner="k2/x")
    with pytest.raises(StoreConflict):
        b.allocate("k1/b")


def test_memory_release_missing():
    b = MemoryStoreBackend(RELATIONAL)
    with pytest.raises(StoreNotFound):
        b.release("nope")


class _Resp(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _http_error(code):
    return urllib.error.HTTPError("http://store/resources", code, "err", {}, None)


def test_http_allocate(monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout=None):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        payload = {"handle": "h-1", "credentials": {"engine": "postgres"}, "adopted": True}
        return _Resp(json.dumps(payload).encode("utf-8"))

    monkeypatch.setattr(backends_mod.urllib.request, "urlopen", fake_urlopen)
    b = HttpStoreBackend(RELATIONAL, "http://store/", timeout=1)
    alloc = b.allocate("k1/a")
    assert alloc.handle == "h-1"
    assert alloc.adopted is True
    assert captured["url"] == "http://store/resources"
    assert captured["method"] == "POST"
    assert captured["body"] == {"project_id": "k1/a", "store_type": RELATIONAL}


@pytest.mark.parametrize(
    "code,exc",
    [(409, StoreConflict), (404, StoreNotFound), (500, StoreUnavailable), (503, StoreUnavailable)],
)
def test_http_error_mapping(monkeypatch, code, exc):
    def fake_urlopen(req, timeout=None):
        raise _http_error(code)

    monkeypatch.setattr(backends_mod.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(exc):
        HttpStoreBackend(RELATIONAL, "http://store", timeout=1).allocate("k1/a")


def test_http_unreachable(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(backends_mod.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(StoreUnavailable):
        HttpStoreBackend(RELATIONAL, "http://store", timeout=1).release("h/1")


def test_http_release_quotes_handle(monkeypatch):
    seen = []

    def fake_urlopen(req, timeout=None):
        seen.append((req.get_method(), req.full_url))
        return _Resp(b"")

    monkeypatch.setattr(backends_mod.urllib.request, "urlopen", fake_urlopen)
    HttpStoreBackend(RELATIONAL, "http://store", timeout=1).release("h/1")
    assert seen == [("DELETE", "http://store/resources/h%2F1")]


def test_build_backends_from_env(monkeypatch):
    monkeypatch.setenv("PROVISION_STORE_TYPES", "relational;aws_rds::mysql")
    monkeypatch.setenv("STORE_AWS_RDS_MYSQL_URL", "http://rds-proxy:9000")
    monkeypatch.setenv("STORE_PUBLIC_HOST", "db.internal")
    backends = build_backends_from_env()
    assert sorted(backends) == ["database::aws_rds::mysql", RELATIONAL]
    assert isinstance(backends[RELATIONAL], MemoryStoreBackend)
    assert backends[RELATIONAL].host == "db.internal"
    assert isinstance(backends["database::aws_rds::mysql"], HttpStoreBackend)


def test_build_service_from_env_with_database(monkeypatch, tmp_path):
    users = tmp_path / "users.toml"
    users.write_text('[test-key]\nname = "tester"\nprojects = ["proj-a"]\n', encoding="utf-8")
    monkeypatch.setenv("PROVISION_DATABASE_URL", f"sqlite:///{tmp_path / 'provision.db'}")
    monkeypatch.setenv("TENANT_BOOTSTRAP_PATH", str(users))
    monkeypatch.delenv("PROVISION_STORE_TYPES", raising=False)
    svc = build_service_from_env()
    try:
        assert svc.account("test-key").projects == ["proj-a"]
        lease = svc.provision("test-key", "proj-a", "relational")
        assert lease.status.value == "ready"
        assert svc.lease("test-key", "proj-a", RELATIONAL).id == lease.id
    finally:
        svc.provisioner.shutdown()
