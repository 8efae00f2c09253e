"""SQLAlchemy storage for the task queue and the metastore."""

import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, String, Text, create_engine, event
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class TaskRecord(Base):
    """One queued file-operation intent."""
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(16), nullable=False)
    share = Column(String(255), nullable=True)
    path = Column(Text, nullable=False, default="")
    target_share = Column(String(255), nullable=True)
    target_path = Column(Text, nullable=True)
    options = Column(String(255), nullable=False, default="")
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_tasks_status_id", "status", "id"),
        Index("ix_tasks_share_path", "share", "path"),
    )


class FileRecord(Base):
    """Reference checksum and size of a logical file."""
    __tablename__ = "files"

    share = Column(String(255), primary_key=True)
    path = Column(Text, primary_key=True)
    checksum = Column(String(64), nullable=True)
    size = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)


class CopyRecord(Base):
    """A physical copy of a file on one drive."""
    __tablename__ = "copies"

    share = Column(String(255), primary_key=True)
    path = Column(Text, primary_key=True)
    drive = Column(String(1024), primary_key=True)
    trusted = Column(Boolean, nullable=False, default=True)
    checksum = Column(String(64), nullable=True)
    recorded_at = Column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("ix_copies_drive", "drive"),
    )


class MetastoreBackupRecord(Base):
    """Drives chosen to hold a backup of the metastore."""
    __tablename__ = "metastore_backups"

    drive = Column(String(1024), primary_key=True)
    chosen_at = Column(DateTime, nullable=False, default=datetime.now)


class Database:
    """Engine and session factory shared by the queue and the metastore."""

    def __init__(self, url: str):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy database URL, e.g. sqlite:////var/lib/greypool/greypool.db
        """
        self.url = url
        engine_args = {}
        connect_args = {}
        parsed = make_url(url)
        if parsed.drivername.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if parsed.database and parsed.database != ":memory:":
                directory = os.path.dirname(os.path.abspath(parsed.database))
                os.makedirs(directory, exist_ok=True)
            else:
                # One shared connection, or every thread would see its own empty database.
                engine_args["poolclass"] = StaticPool

        self.engine = create_engine(url, connect_args=connect_args, **engine_args)
        if parsed.drivername.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)

        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        # SQLite allows a single writer; serialize our own transactions.
        self._lock = threading.RLock()

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.debug(f"Database schema ready at {self.url}")

    @contextmanager
    def session(self):
        """Yield a session inside a transaction; commit on success, roll back on error."""
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
