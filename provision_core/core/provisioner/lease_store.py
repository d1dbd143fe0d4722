"""
租约存储：每个 (project_id, store_type) 至多一条未释放租约；已释放租约转入历史，仅供审计。
读写均返回副本，调用方修改后须显式 save。
"""
from __future__ import annotations

import json
import threading
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ..database import LeaseRow, session_scope
from .lease import LeaseKey, LeaseStatus, ResourceLease


class MemoryLeaseStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._current: Dict[LeaseKey, ResourceLease] = {}
        self._history: Dict[LeaseKey, List[ResourceLease]] = {}

    def current(self, key: LeaseKey) -> Optional[ResourceLease]:
        with self._lock:
            lease = self._current.get(key)
            return lease.copy() if lease else None

    def save(self, lease: ResourceLease) -> None:
        with self._lock:
            if lease.status == LeaseStatus.RELEASED:
                held = self._current.get(lease.key)
                if held is not None and held.id == lease.id:
                    del self._current[lease.key]
                self._history.setdefault(lease.key, []).append(lease.copy())
                return
            self._current[lease.key] = lease.copy()

    def history(self, key: LeaseKey) -> List[ResourceLease]:
        with self._lock:
            return [lease.copy() for lease in self._history.get(key, [])]

    def by_project(self, project_id: str) -> List[ResourceLease]:
        with self._lock:
            return [lease.copy() for (pid, _), lease in sorted(self._current.items()) if pid == project_id]


def _to_lease(row: LeaseRow) -> ResourceLease:
    return ResourceLease(
        id=row.id,
        project_id=row.project_id,
        store_type=row.store_type,
        status=LeaseStatus(row.status),
        handle=row.handle,
        credentials=json.loads(row.credentials) if row.credentials else {},
        adopted=bool(row.adopted),
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlLeaseStore:
    """SQLAlchemy 租约存储；租约 id 为主键，按 id 覆盖写。"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def current(self, key: LeaseKey) -> Optional[ResourceLease]:
        project_id, store_type = key
        with session_scope(self._factory) as s:
            stmt = (
                select(LeaseRow)
                .where(LeaseRow.project_id == project_id, LeaseRow.store_type == store_type)
                .where(LeaseRow.status != LeaseStatus.RELEASED.value)
                .order_by(LeaseRow.created_at.desc())
            )
            row = s.execute(stmt).scalars().first()
            return _to_lease(row) if row else None

    def save(self, lease: ResourceLease) -> None:
        with session_scope(self._factory) as s:
            row = s.get(LeaseRow, lease.id)
            if row is None:
                row = LeaseRow(id=lease.id, project_id=lease.project_id, store_type=lease.store_type, created_at=lease.created_at)
                s.add(row)
            row.status = lease.status.value
            row.handle = lease.handle
            row.credentials = json.dumps(lease.credentials, ensure_ascii=False) if lease.credentials else None
            row.adopted = lease.adopted
            row.error_code = lease.error_code
            row.error_message = lease.error_message
            row.updated_at = lease.updated_at

    def history(self, key: LeaseKey) -> List[ResourceLease]:
        project_id, store_type = key
        with session_scope(self._factory) as s:
            stmt = (
                select(LeaseRow)
                .where(LeaseRow.project_id == project_id, LeaseRow.store_type == store_type)
                .where(LeaseRow.status == LeaseStatus.RELEASED.value)
                .order_by(LeaseRow.updated_at)
            )
            return [_to_lease(r) for r in s.execute(stmt).scalars().all()]

    def by_project(self, project_id: str) -> List[ResourceLease]:
        with session_scope(self._factory) as s:
            stmt = (
                select(LeaseRow)
                .where(LeaseRow.project_id == project_id, LeaseRow.status != LeaseStatus.RELEASED.value)
                .order_by(LeaseRow.store_type)
            )
            return [_to_lease(r) for r in s.execute(stmt).scalars().all()]
