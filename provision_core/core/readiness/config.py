"""
依赖端点配置：进程启动前必须可连接的 host:port 列表。
优先环境变量 WAIT_FOR（逗号或空白分隔），再文件 WAIT_FOR_PATH（JSON 或 YAML），保持声明顺序并去重。
"""
import json
import os
import re
from typing import Iterable, List, NamedTuple

WAIT_FOR_ENV = "WAIT_FOR"
WAIT_FOR_PATH_ENV = "WAIT_FOR_PATH"

_IPV6_RE = re.compile(r"^\[([0-9a-fA-F:.]+)\]:(\d+)$")


class Endpoint(NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_endpoint(raw: str) -> Endpoint:
    """解析单个 host:port；IPv6 需写成 [::1]:5432。"""
    raw = (raw or "").strip()
    m = _IPV6_RE.match(raw)
    if m:
        host, port_s = m.group(1), m.group(2)
    else:
        host, sep, port_s = raw.rpartition(":")
        if not sep or not host or ":" in host:
            raise ValueError(f"无效端点: {raw!r}，应为 host:port")
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"无效端口: {raw!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"端口越界: {raw!r}")
    return Endpoint(host, port)


def _dedupe(endpoints: Iterable[Endpoint]) -> List[Endpoint]:
    seen = set()
    out = []
    for ep in endpoints:
        if ep not in seen:
            seen.add(ep)
            out.append(ep)
    return out


def parse_endpoints(raw: str) -> List[Endpoint]:
    """"pg:5432, mongodb:27017" -> [Endpoint('pg', 5432), Endpoint('mongodb', 27017)]"""
    parts = [p for p in re.split(r"[,\s]+", raw or "") if p]
    return _dedupe(parse_endpoint(p) for p in parts)


def _endpoint_from_item(item) -> Endpoint:
    if isinstance(item, str):
        return parse_endpoint(item)
    if isinstance(item, dict):
        host = (item.get("host") or "").strip()
        if not host:
            raise ValueError(f"端点缺少 host: {item!r}")
        return parse_endpoint(f"{host}:{item.get('port')}" if ":" not in host else f"[{host}]:{item.get('port')}")
    raise ValueError(f"无法识别的端点项: {item!r}")


def _load_endpoints_from_file(path: str) -> List[Endpoint]:
    """支持 .json（{"endpoints": [...]}）或 .yaml/.yml（列表或 endpoints 键）。"""
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    if path.lower().endswith((".yaml", ".yml")):
        import yaml
        data = yaml.safe_load(content) or []
    else:
        data = json.loads(content) if content.strip() else []
    if isinstance(data, dict):
        data = data.get("endpoints") or []
    if not isinstance(data, list):
        raise ValueError(f"端点文件格式错误: {path}")
    return [_endpoint_from_item(item) for item in data]


def load_endpoints() -> List[Endpoint]:
    """环境变量在前，文件在后；均未配置时返回空列表（无需等待）。"""
    endpoints = parse_endpoints(os.environ.get(WAIT_FOR_ENV, ""))
    path = (os.environ.get(WAIT_FOR_PATH_ENV) or "").strip()
    if path and os.path.isfile(path):
        endpoints.extend(_load_endpoints_from_file(path))
    return _dedupe(endpoints)
