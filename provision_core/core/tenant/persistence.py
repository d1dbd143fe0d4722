"""
租户注册表持久化协作者：内存实现（单机、测试）与 SQLAlchemy 实现（跨进程重启保留）。
唯一性校验与插入在同一临界区/事务内完成，并发 add_project 同名仅一个成功。
"""
from __future__ import annotations

import threading
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..database import AccountRow, ProjectRow, session_scope
from ..errors import ConflictError, NotFoundError


def new_project_id() -> str:
    """项目的不透明标识；与 API key、项目名无关，资源命名与租约均以它为准。"""
    return uuid.uuid4().hex


class MemoryTenantPersistence:
    """账户 key -> { key, name, created_at, projects: { name -> { id, created_at } } }。"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: Dict[str, Dict[str, Any]] = {}

    def _account_view(self, acc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "key": acc["key"],
            "name": acc["name"],
            "created_at": acc["created_at"],
            "projects": sorted(acc["projects"].keys()),
        }

    def insert_account(self, key: str, name: str, created_at: float) -> Dict[str, Any]:
        with self._lock:
            if key in self._accounts:
                raise ConflictError("账户已存在")
            self._accounts[key] = {"key": key, "name": name, "created_at": created_at, "projects": {}}
            return self._account_view(self._accounts[key])

    def get_account(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            acc = self._accounts.get(key)
            return self._account_view(acc) if acc else None

    def delete_account(self, key: str) -> bool:
        with self._lock:
            return self._accounts.pop(key, None) is not None

    def insert_project(self, key: str, name: str, created_at: float) -> Dict[str, Any]:
        with self._lock:
            acc = self._accounts.get(key)
            if acc is None:
                raise NotFoundError("账户不存在")
            if name in acc["projects"]:
                raise ConflictError("项目已存在", details=name)
            pid = new_project_id()
            acc["projects"][name] = {"id": pid, "created_at": created_at}
            return {"id": pid, "account_key": key, "name": name, "created_at": created_at}

    def get_project(self, key: str, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            acc = self._accounts.get(key)
            if acc is None or name not in acc["projects"]:
                return None
            p = acc["projects"][name]
            return {"id": p["id"], "account_key": key, "name": name, "created_at": p["created_at"]}

    def delete_project(self, key: str, name: str) -> bool:
        with self._lock:
            acc = self._accounts.get(key)
            if acc is None:
                return False
            return acc["projects"].pop(name, None) is not None

    def list_projects(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"project_name": p, "account_name": acc["name"], "account_key": acc["key"]}
                for acc in self._accounts.values()
                for p in sorted(acc["projects"])
            ]


class SqlTenantPersistence:
    """SQLAlchemy 持久化；唯一性由主键/唯一约束保证，IntegrityError 映射为 Conflict。"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def _project_names(self, session, key: str) -> List[str]:
        rows = session.execute(select(ProjectRow.name).where(ProjectRow.account_key == key)).scalars().all()
        return sorted(rows)

    @staticmethod
    def _project_row(session, key: str, name: str) -> Optional[ProjectRow]:
        stmt = select(ProjectRow).where(ProjectRow.account_key == key, ProjectRow.name == name)
        return session.execute(stmt).scalars().first()

    def insert_account(self, key: str, name: str, created_at: float) -> Dict[str, Any]:
        try:
            with session_scope(self._factory) as s:
                s.add(AccountRow(key=key, name=name, created_at=created_at))
        except IntegrityError:
            raise ConflictError("账户已存在") from None
        return {"key": key, "name": name, "created_at": created_at, "projects": []}

    def get_account(self, key: str) -> Optional[Dict[str, Any]]:
        with session_scope(self._factory) as s:
            row = s.get(AccountRow, key)
            if row is None:
                return None
            return {"key": row.key, "name": row.name, "created_at": row.created_at, "projects": self._project_names(s, key)}

    def delete_account(self, key: str) -> bool:
        with session_scope(self._factory) as s:
            row = s.get(AccountRow, key)
            if row is None:
                return False
            # SQLite 默认不启用外键级联，显式删除项目
            for p in s.execute(select(ProjectRow).where(ProjectRow.account_key == key)).scalars().all():
                s.delete(p)
            s.delete(row)
            return True

    def insert_project(self, key: str, name: str, created_at: float) -> Dict[str, Any]:
        pid = new_project_id()
        try:
            with session_scope(self._factory) as s:
                if s.get(AccountRow, key) is None:
                    raise NotFoundError("账户不存在")
                s.add(ProjectRow(id=pid, account_key=key, name=name, created_at=created_at))
        except IntegrityError:
            raise ConflictError("项目已存在", details=name) from None
        return {"id": pid, "account_key": key, "name": name, "created_at": created_at}

    def get_project(self, key: str, name: str) -> Optional[Dict[str, Any]]:
        with session_scope(self._factory) as s:
            row = self._project_row(s, key, name)
            if row is None:
                return None
            return {"id": row.id, "account_key": row.account_key, "name": row.name, "created_at": row.created_at}

    def delete_project(self, key: str, name: str) -> bool:
        with session_scope(self._factory) as s:
            row = self._project_row(s, key, name)
            if row is None:
                return False
            s.delete(row)
            return True

    def list_projects(self) -> List[Dict[str, Any]]:
        with session_scope(self._factory) as s:
            stmt = (
                select(ProjectRow.name, AccountRow.name, AccountRow.key)
                .join(AccountRow, AccountRow.key == ProjectRow.account_key)
                .order_by(AccountRow.key, ProjectRow.name)
            )
            return [
                {"project_name": pname, "account_name": aname, "account_key": akey}
                for pname, aname, akey in s.execute(stmt).all()
            ]
