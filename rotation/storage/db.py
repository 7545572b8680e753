import os
from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rotation.storage.models import Base

DEFAULT_DB_URL = "sqlite:///./data/rotation.db"


def build_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection so every session sees the same in-memory DB
            return create_engine(
                db_url,
                echo=False,
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(db_url, echo=False, future=True)


class Database:
    """Engine + session factory; one per process, closed on shutdown."""

    def __init__(self, db_url: str = None):
        self.url = db_url or os.getenv("DB_URL", DEFAULT_DB_URL)
        self.engine = build_engine(self.url)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)

    def init_db(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info(f"Database ready ({self.engine.url.render_as_string(hide_password=True)})")

    def close(self) -> None:
        self.engine.dispose()
