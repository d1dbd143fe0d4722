"""
环境变量读取：非法值回退默认值，便于容器内按环境调优。
"""
import os
from typing import List, Optional


def _float_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _str_env(key: str, default: str = "") -> str:
    return (os.environ.get(key) or default).strip()


def _optional_float_env(key: str) -> Optional[float]:
    """未设置或非法时返回 None（表示不限制）。"""
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _list_env(key: str, default: str = "") -> List[str]:
    raw = os.environ.get(key, default) or ""
    return [p.strip() for p in raw.replace(";", ",").split(",") if p.strip()]
