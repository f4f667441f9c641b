import os
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from functools import wraps
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from fastapi import HTTPException
from dotenv import load_dotenv

from app.core.errors import DuplicateKeyError

# Load environment variables from .env
load_dotenv()

# Create engine and session
db_url = os.getenv("DB_URL")

engine = None
SessionLocal = None
if db_url:
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    engine = create_engine(db_url, connect_args=connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables defined in SQLAlchemy models (new tables only; existing ones are untouched)."""
    if engine is None:
        return
    from app.models import Base  # noqa: F401  registers all models
    Base.metadata.create_all(bind=engine, checkfirst=True)


def get_db():
    if SessionLocal is None:
        raise HTTPException(
            status_code=500,
            detail="Database is not configured. Missing DB_URL environment variable."
        )
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _find_session(args, kwargs):
    if isinstance(kwargs.get("db"), Session):
        return kwargs["db"]
    return next((arg for arg in args if isinstance(arg, Session)), None)


def handle_database_errors(func):
    """Roll back and translate store errors raised by a service call taking a Session.

    Unique-key collisions become ``DuplicateKeyError`` so callers answer 400
    instead of leaking the driver message.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except IntegrityError as e:
            db = _find_session(args, kwargs)
            if db is not None:
                db.rollback()
            raise DuplicateKeyError(
                "Duplicate subscription. This subscription may already exist."
            ) from e
        except SQLAlchemyError as e:
            db = _find_session(args, kwargs)
            if db is not None:
                db.rollback()
            raise HTTPException(status_code=500, detail="Database error") from e

    return wrapper
