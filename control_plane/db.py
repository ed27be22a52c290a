from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from control_plane.settings import Settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """naive UTC (DateTime 컬럼은 tz 없이 저장)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _connect_args(url: str, timeout: float) -> dict:
    if url.startswith("sqlite"):
        # busy timeout: 다른 writer 가 잡고 있는 lock 대기 한도
        return {"timeout": timeout, "check_same_thread": False}
    if "pymysql" in url:
        t = max(1, int(timeout))
        return {"connect_timeout": t, "read_timeout": t, "write_timeout": t}
    return {}


def make_engine(settings: Settings) -> Engine:
    url = settings.database_url
    kwargs = {"connect_args": _connect_args(url, settings.store_timeout_sec)}
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_recycle=1800, pool_timeout=settings.store_timeout_sec)
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
