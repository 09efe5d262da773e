import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from iquiz.core.config import settings
from iquiz.core.errors import StoreError, ValidationError

logger = logging.getLogger(__name__)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True)
_engine: Optional[Engine] = None


def init_db(url: Optional[str] = None) -> Engine:
    """Create the process-wide engine and bind the session factory to it."""
    global _engine
    if _engine is not None:
        return _engine
    url = url or settings.DATABASE_URL
    kwargs = {"future": True, "pool_pre_ping": True, "echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=settings.DATABASE_POOL_SIZE, max_overflow=settings.DATABASE_MAX_OVERFLOW)
    _engine = create_engine(url, **kwargs)
    SessionLocal.configure(bind=_engine)
    if settings.DATABASE_CREATE_ALL:
        from iquiz.models.orm import Base
        Base.metadata.create_all(_engine)
    logger.info(f"Database engine ready ({_engine.url.render_as_string(hide_password=True)})")
    return _engine


def close_db() -> None:
    """Close database connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit(db: Session, message: str, conflict: Optional[str] = None) -> None:
    """Commit the unit of work, turning store failures into StoreError.

    When ``conflict`` is given, a unique-constraint violation is reported as a
    ValidationError with that message instead.
    """
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if conflict:
            raise ValidationError(conflict, error=str(exc.orig)) from exc
        logger.error(f"{message}: {exc}")
        raise StoreError(message, error=str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"{message}: {exc}")
        raise StoreError(message, error=str(exc)) from exc
