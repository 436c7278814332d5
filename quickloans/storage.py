import logging
from dataclasses import dataclass
from typing import Any, Dict, Generator

from fastapi import Depends, Request
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from quickloans.config import Settings
from quickloans.object_store import ObjectStore
from quickloans.realtime import Change, ChangeFeed

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

PENDING_CHANGES = "pending_changes"


@dataclass
class Platform:
    """
    The single configured connection to the platform: relational store,
    change feed and object store. Built once by create_platform() and
    passed to whatever needs it.
    """
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    feed: ChangeFeed
    objects: ObjectStore

    def session(self) -> Session:
        return self.session_factory()

    def dispose(self) -> None:
        self.feed.disconnect_all()
        self.engine.dispose()


def _engine_kwargs(url: str) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"echo": False}
    if url.startswith("sqlite"):
        # Store calls run in worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
    return kwargs


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def row_to_dict(row: Any) -> Dict[str, Any]:
    """Whole-row payload of an ORM object, keyed by column name."""
    return {column.name: getattr(row, column.key) for column in row.__table__.columns}


def record_change(db: Session, table: str, event_name: str, row: Any) -> None:
    """
    Queue a row change for the change feed. It is published only if the
    session's transaction commits.
    """
    change = Change(table=table, event=event_name, record=row_to_dict(row))
    db.info.setdefault(PENDING_CHANGES, []).append(change)


def _attach_feed(session_factory: sessionmaker, feed: ChangeFeed) -> None:
    @event.listens_for(session_factory, "after_commit")
    def _publish(session: Session) -> None:
        changes = session.info.pop(PENDING_CHANGES, [])
        for change in changes:
            feed.publish(change)

    @event.listens_for(session_factory, "after_soft_rollback")
    def _discard(session: Session, previous_transaction) -> None:
        session.info.pop(PENDING_CHANGES, None)


def create_platform(settings: Settings) -> Platform:
    """Build the platform connection from settings."""
    settings.warn_if_unconfigured()

    url = settings.platform_url
    engine = create_engine(url, **_engine_kwargs(url))
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    feed = ChangeFeed()
    _attach_feed(session_factory, feed)

    objects = ObjectStore(settings.STORAGE_DIR, settings.STORAGE_BUCKET, settings.PUBLIC_BASE_URL)

    logger.debug(f"Platform created with dialect {engine.dialect.name}")
    return Platform(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        feed=feed,
        objects=objects,
    )


def init_db(platform: Platform) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from quickloans import models  # noqa: F401

        Base.metadata.create_all(bind=platform.engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(platform: Platform) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with platform.session() as db:
            db.execute(text("SELECT 1"))
        if not inspect(platform.engine).has_table("chat_messages"):
            logger.error("Database schema not applied: 'chat_messages' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# FastAPI dependencies
# =============================================================================

def get_platform(request: Request) -> Platform:
    return request.app.state.platform


def get_db(platform: Platform = Depends(get_platform)) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = platform.session()
    try:
        yield db
    finally:
        db.close()
