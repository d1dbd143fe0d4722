"""
存储客户端：每类存储一个，提供幂等的 allocate（分配或接管）与 release。
- allocate(project_id) -> Allocation；资源已存在且归属本项目时接管（adopted=True），归属其他项目抛 StoreConflict。
- release(handle)；资源不存在抛 StoreNotFound。
- 其余异常由 ResourceProvisioner 统一归类为 Transient。
本地与测试用 MemoryStoreBackend；STORE_<NAME>_URL 配置时使用 HttpStoreBackend 对接远端存储代理。
"""
from __future__ import annotations

import json
import logging
import re
import secrets
import string
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from typing import Any, Dict, List, NamedTuple, Optional

from ..errors import StoreConflict, StoreNotFound, StoreUnavailable
from ..settings import _float_env, _list_env, _str_env
from .store_types import STORE_TYPES, normalize_store_type, store_type_info

logger = logging.getLogger("provisioner.backends")

_SAFE = frozenset(string.ascii_lowercase + string.digits)


class Allocation(NamedTuple):
    handle: str
    credentials: Dict[str, Any]
    adopted: bool = False


def _escape(project_id: str) -> str:
    # 小写字母数字原样保留，其余字节一律 _xx；编码可逆，不同项目不会同名
    return "".join(
        chr(b) if chr(b) in _SAFE else f"_{b:02x}"
        for b in project_id.encode("utf-8")
    )


def resource_name(project_id: str, kind: str) -> str:
    """按命名约定推导资源名：<project>_<kind>，project 为项目的不透明标识。"""
    return f"{_escape(project_id)}_{kind}"


class MemoryStoreBackend:
    """进程内资源表：资源名 -> { owner, handle, credentials }；线程安全，记录调用次数。"""

    def __init__(self, store_type: str, host: str = "localhost", port: Optional[int] = None, latency: float = 0.0) -> None:
        info = store_type_info(store_type)
        self.store_type = info.name if info else store_type
        self.kind = info.kind if info else re.sub(r"[^a-z0-9]+", "_", store_type.lower())
        self.engine = info.engine if info else self.kind
        self.host = host
        self.port = port if port is not None else (info.port if info else 0)
        self.latency = latency
        self.allocate_calls = 0
        self.release_calls = 0
        self._lock = threading.Lock()
        self._resources: Dict[str, Dict[str, Any]] = {}
        self._failures: List[Exception] = []

    def fail_next(self, times: int = 1, error: Optional[Exception] = None) -> None:
        """注入故障：之后 times 次 allocate/release 抛出 error（默认 StoreUnavailable）。"""
        with self._lock:
            for _ in range(times):
                self._failures.append(error or StoreUnavailable(f"{self.store_type} 不可用"))

    def claim(self, name: str, owner: str) -> None:
        """预置一个归属 owner 的资源（模拟他人已占用或上次部分成功）。"""
        with self._lock:
            self._resources[name] = {"owner": owner, "handle": f"{name}-{uuid.uuid4().hex[:8]}", "credentials": self._credentials(name)}

    def resources(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._resources.items()}

    def _credentials(self, name: str) -> Dict[str, Any]:
        return {
            "engine": self.engine,
            "username": f"user_{name}",
            "password": secrets.token_urlsafe(12),
            "database_name": f"db_{name}",
            "host": self.host,
            "port": self.port,
        }

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    def allocate(self, project_id: str) -> Allocation:
        if self.latency:
            time.sleep(self.latency)
        name = resource_name(project_id, self.kind)
        with self._lock:
            self.allocate_calls += 1
            self._maybe_fail()
            existing = self._resources.get(name)
            if existing is not None:
                if existing["owner"] != project_id:
                    raise StoreConflict(f"资源 {name} 已归属其他项目")
                return Allocation(existing["handle"], dict(existing["credentials"]), adopted=True)
            handle = f"{name}-{uuid.uuid4().hex[:8]}"
            creds = self._credentials(name)
            self._resources[name] = {"owner": project_id, "handle": handle, "credentials": creds}
            return Allocation(handle, dict(creds), adopted=False)

    def release(self, handle: str) -> None:
        with self._lock:
            self.release_calls += 1
            self._maybe_fail()
            for name, res in self._resources.items():
                if res["handle"] == handle:
                    del self._resources[name]
                    return
        raise StoreNotFound(handle)


class HttpStoreBackend:
    """
    远端存储代理客户端（JSON over HTTP）：
    POST {base}/resources {project_id, store_type} -> {handle, credentials, adopted}
    DELETE {base}/resources/<handle>
    409 -> StoreConflict，404 -> StoreNotFound，其余 -> StoreUnavailable。
    """

    def __init__(self, store_type: str, base_url: str, timeout: Optional[float] = None) -> None:
        self.store_type = store_type
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else _float_env("STORE_HTTP_TIMEOUT_SEC", 30.0)

    def _request(self, method: str, url: str, body: Optional[dict] = None) -> dict:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as r:
                raw = r.read()
                return json.loads(raw.decode("utf-8")) if raw else {}
        except urllib.error.HTTPError as e:
            if e.code == 409:
                raise StoreConflict(f"{self.store_type}: status=409") from e
            if e.code == 404:
                raise StoreNotFound(f"{self.store_type}: status=404") from e
            raise StoreUnavailable(f"{self.store_type}: status={e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise StoreUnavailable(f"{self.store_type}: {e}") from e

    def allocate(self, project_id: str) -> Allocation:
        data = self._request("POST", f"{self.base_url}/resources", {"project_id": project_id, "store_type": self.store_type})
        handle = (data.get("handle") or "").strip()
        if not handle:
            raise StoreUnavailable(f"{self.store_type}: 响应缺少 handle")
        return Allocation(handle, dict(data.get("credentials") or {}), bool(data.get("adopted")))

    def release(self, handle: str) -> None:
        self._request("DELETE", f"{self.base_url}/resources/{urllib.parse.quote(handle, safe='')}")


def _env_name(store_type: str) -> str:
    """database::shared::postgres -> SHARED_POSTGRES"""
    name = store_type[len("database::"):] if store_type.startswith("database::") else store_type
    return re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")


def build_backends_from_env() -> Dict[str, Any]:
    """
    PROVISION_STORE_TYPES（默认 relational,document）列出启用的存储类型；
    STORE_<NAME>_URL（如 STORE_SHARED_POSTGRES_URL）存在时用 HTTP 客户端，否则用进程内存储。
    """
    backends: Dict[str, Any] = {}
    host = _str_env("STORE_PUBLIC_HOST", "localhost")
    for raw in _list_env("PROVISION_STORE_TYPES", "relational,document"):
        store_type = normalize_store_type(raw)
        url = _str_env(f"STORE_{_env_name(store_type)}_URL")
        if url:
            backends[store_type] = HttpStoreBackend(store_type, url)
            logger.info("store backend %s -> %s", store_type, url)
        else:
            backends[store_type] = MemoryStoreBackend(store_type, host=host)
            logger.info("store backend %s -> in-memory", store_type)
    return backends


__all__ = [
    "Allocation",
    "MemoryStoreBackend",
    "HttpStoreBackend",
    "build_backends_from_env",
    "resource_name",
    "STORE_TYPES",
]
