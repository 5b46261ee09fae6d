import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings


def _connect_args(database_url: str) -> dict:
    # SQLite接続は監視スレッドとAPIスレッドから共有される
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def _ensure_sqlite_directory(database_url: str):
    prefix = "sqlite:///"
    if database_url.startswith(prefix) and ":memory:" not in database_url:
        directory = os.path.dirname(database_url[len(prefix):])
        if directory:
            os.makedirs(directory, exist_ok=True)


_ensure_sqlite_directory(settings.database_url)

engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """テーブル作成（マイグレーションは扱わない）"""
    # モデルをメタデータに登録する
    from app.models import positions, trades, balance_history, tokens  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
