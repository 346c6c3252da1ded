from pathlib import Path
from sqlmodel import create_engine
from sqlalchemy import event
from sqlalchemy.pool import NullPool

from funnel_studio.core.config import settings

# The metadata directory must exist before the SQLite file is opened.
settings.ensure_dirs()

sqlite_path: Path = settings.database_path
sqlite_url = f"sqlite:///{sqlite_path}"

# check_same_thread=False lets dispatcher worker threads and request handlers
# share the same SQLite file.
# NullPool closes connections immediately so nothing is hoarded between requests.
engine = create_engine(
    sqlite_url,
    echo=False,
    connect_args={"check_same_thread": False, "timeout": 5.0},
    poolclass=NullPool
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()
