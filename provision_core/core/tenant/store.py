"""
租户注册表：API key -> 账户（名称、项目集合）。
仅管理账户/项目身份，不触碰资源；删除项目前由调用方先释放租约（见 ProvisioningService）。
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ConflictError, NotFoundError
from .persistence import MemoryTenantPersistence

logger = logging.getLogger("tenant")

# 项目名：小写字母数字与连字符，首尾不为连字符
_PROJECT_NAME_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


@dataclass
class Account:
    key: str
    name: str
    projects: List[str] = field(default_factory=list)
    created_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        # 不回显完整 key
        return {"name": self.name, "projects": list(self.projects), "created_at": self.created_at}


@dataclass(frozen=True)
class ProjectRef:
    id: str
    account_key: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


def validate_key(key: str) -> str:
    key = (key or "").strip()
    if not key:
        raise ValueError("API key 必填")
    if any(c.isspace() for c in key):
        raise ValueError("API key 不能包含空白字符")
    return key


def validate_account_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("账户名必填")
    return name


def validate_project_name(name: str) -> str:
    name = (name or "").strip()
    if not _PROJECT_NAME_RE.match(name):
        raise ValueError("项目名仅允许小写字母、数字与连字符，长度 1-63，且不能以连字符开头或结尾")
    return name


class TenantRegistry:
    """账户与项目注册表；持久化协作者可注入（内存或 SQLAlchemy）。"""

    def __init__(self, persistence=None) -> None:
        self._p = persistence if persistence is not None else MemoryTenantPersistence()

    @staticmethod
    def _account(data: Dict[str, Any]) -> Account:
        return Account(key=data["key"], name=data["name"], projects=list(data.get("projects") or []), created_at=data.get("created_at"))

    def create_account(self, key: str, name: str) -> Account:
        """注册账户；key 已存在抛 ConflictError。"""
        key = validate_key(key)
        name = validate_account_name(name)
        data = self._p.insert_account(key, name, time.time())
        logger.info("account created name=%s", name)
        return self._account(data)

    def lookup(self, key: str) -> Account:
        data = self._p.get_account((key or "").strip())
        if data is None:
            raise NotFoundError("账户不存在")
        return self._account(data)

    def add_project(self, key: str, project_name: str) -> ProjectRef:
        """key 未知抛 NotFoundError；同账户下重名抛 ConflictError。"""
        project_name = validate_project_name(project_name)
        data = self._p.insert_project((key or "").strip(), project_name, time.time())
        logger.info("project added name=%s id=%s", data["name"], data["id"])
        return ProjectRef(id=data["id"], account_key=data["account_key"], name=data["name"])

    def get_project(self, key: str, project_name: str) -> ProjectRef:
        account = self.lookup(key)
        data = self._p.get_project(account.key, (project_name or "").strip())
        if data is None:
            raise NotFoundError("项目不存在", details=project_name or "")
        return ProjectRef(id=data["id"], account_key=data["account_key"], name=data["name"])

    def remove_project(self, key: str, project_name: str) -> None:
        """仅解除项目关联，不释放资源。"""
        ref = self.get_project(key, project_name)
        if not self._p.delete_project(ref.account_key, ref.name):
            raise NotFoundError("项目不存在", details=project_name)
        logger.info("project removed name=%s id=%s", ref.name, ref.id)

    def delete_account(self, key: str) -> None:
        account = self.lookup(key)
        self._p.delete_account(account.key)
        logger.info("account deleted name=%s projects=%d", account.name, len(account.projects))

    def list_projects(self) -> List[Dict[str, Any]]:
        """全部 (项目, 账户) 对，供管理端查看。"""
        return self._p.list_projects()

    def bootstrap(self, records: Iterable[Dict[str, Any]]) -> int:
        """
        首次启动导入初始账户清单；已存在的账户跳过，重复执行无副作用。
        返回新建账户数。
        """
        # 先整体校验，避免账户建好而项目缺失后被后续导入跳过
        checked = []
        for rec in records:
            key = validate_key(rec.get("key"))
            name = validate_account_name(rec.get("name"))
            projects = [validate_project_name(p) for p in rec.get("projects") or []]
            checked.append((key, name, projects))
        created = 0
        for key, name, projects in checked:
            if self._p.get_account(key) is not None:
                continue
            try:
                self.create_account(key, name)
            except ConflictError:
                # 另一进程已完成导入
                continue
            for project_name in projects:
                self.add_project(key, project_name)
            created += 1
        if created:
            logger.info("bootstrap created %d account(s)", created)
        return created
