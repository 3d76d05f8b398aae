from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session
import logging

from config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()
DATABASE_URL = settings.database_url

if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # In-memory database shared by every session of the process
        engine = create_engine(
            DATABASE_URL,
            echo=settings.db_echo,
            connect_args=connect_args,
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(DATABASE_URL, echo=settings.db_echo, connect_args=connect_args)
else:
    # Production configuration with connection pooling
    engine = create_engine(
        DATABASE_URL,
        echo=settings.db_echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Handle stale connections
        pool_recycle=300,  # Recycle connections every 5 minutes
    )


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


def check_database_health(session: Session) -> bool:
    """Run a trivial query; False when the database cannot answer."""
    try:
        session.execute(text("SELECT 1")).scalar_one()
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
