from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from passport_sync.core.settings import settings


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": settings.db_connect_timeout_seconds,
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        }
    if database_url.startswith("sqlite"):
        return {"timeout": settings.db_connect_timeout_seconds}
    return {}


def build_engine(database_url: str):
    return create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=_connect_args(database_url),
    )


DATABASE_URL = settings.database_url

engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
