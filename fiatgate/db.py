from sqlmodel import create_engine, SQLModel
from sqlalchemy.engine import Engine

from fiatgate.core.config import settings


def build_engine(database_url: str) -> Engine:
    """Create an engine. SQLite for local dev; pooled PostgreSQL everywhere else."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


engine = build_engine(settings.DATABASE_URL)


def create_db_and_tables(bind: Engine | None = None):
    # Register every table on the metadata before create_all
    import fiatgate.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
