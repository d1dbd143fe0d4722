"""
初始账户清单加载：首次启动由 TENANT_BOOTSTRAP_PATH 指定文件导入注册表。
支持 .toml（[key] name/projects 表格式）、.json 与 .yaml/.yml；
JSON/YAML 既可为 {key: {name, projects}} 映射，也可为 {"accounts": [{key, name, projects}]} 列表。
"""
import json
import os
import tomllib
from typing import Any, Dict, List

BOOTSTRAP_PATH_ENV = "TENANT_BOOTSTRAP_PATH"


def _records_from_data(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict) and isinstance(data.get("accounts"), list):
        data = data["accounts"]
    records: List[Dict[str, Any]] = []
    if isinstance(data, dict):
        for key, body in data.items():
            body = body if isinstance(body, dict) else {}
            records.append({"key": key, "name": body.get("name") or "", "projects": list(body.get("projects") or [])})
    elif isinstance(data, list):
        for item in data:
            if not isinstance(item, dict) or not item.get("key"):
                raise ValueError(f"无效账户记录: {item!r}")
            records.append({"key": item["key"], "name": item.get("name") or "", "projects": list(item.get("projects") or [])})
    else:
        raise ValueError("初始账户清单格式错误")
    return records


def load_bootstrap_file(path: str) -> List[Dict[str, Any]]:
    lower = path.lower()
    if lower.endswith(".toml"):
        with open(path, "rb") as f:
            data = tomllib.load(f)
    else:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        if lower.endswith((".yaml", ".yml")):
            import yaml
            data = yaml.safe_load(content) or {}
        else:
            data = json.loads(content) if content.strip() else {}
    return _records_from_data(data)


def bootstrap_from_env(registry) -> int:
    """TENANT_BOOTSTRAP_PATH 存在时导入；返回新建账户数。"""
    path = (os.environ.get(BOOTSTRAP_PATH_ENV) or "").strip()
    if not path or not os.path.isfile(path):
        return 0
    return registry.bootstrap(load_bootstrap_file(path))
