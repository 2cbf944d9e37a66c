"""Database session management."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from inspectseal_api.settings import get_settings

settings = get_settings()

_database_url = settings.database_url_computed

if _database_url.startswith("sqlite"):
    # SQLite pools don't take sizing arguments
    engine = create_engine(_database_url, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        _database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
