"""
持久化模型：账户、项目、资源租约。
PROVISION_DATABASE_URL 指向 SQLite/PostgreSQL 时使用；未配置时注册表与租约使用内存存储。
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Boolean, Column, Float, ForeignKey, String, Text, UniqueConstraint, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class AccountRow(Base):
    __tablename__ = "accounts"

    key = Column(String(128), primary_key=True)  # API key，唯一
    name = Column(String(128), nullable=False)
    created_at = Column(Float, nullable=False)


class ProjectRow(Base):
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("account_key", "name", name="uq_project_account_name"),)

    id = Column(String(32), primary_key=True)  # uuid hex，不含 API key
    account_key = Column(String(128), ForeignKey("accounts.key", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(64), nullable=False)
    created_at = Column(Float, nullable=False)


class LeaseRow(Base):
    __tablename__ = "resource_leases"

    id = Column(String(32), primary_key=True)
    project_id = Column(String(200), nullable=False, index=True)
    store_type = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    handle = Column(String(256), nullable=True)
    credentials = Column(Text, nullable=True)  # JSON 字符串
    adopted = Column(Boolean, default=False, nullable=False)
    error_code = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


def create_engine_from_url(url: str) -> Engine:
    """内存 SQLite 需共享单连接（StaticPool），否则每个会话看到的是空库。"""
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:")):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """单次调用一个会话：成功提交，异常回滚后继续抛出。"""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
