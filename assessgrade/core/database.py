from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from assessgrade.core.config import settings


class Base(DeclarativeBase): pass


engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create tables if they don't exist. Production deployments use migrations instead."""
    import assessgrade.models.orm  # noqa: F401  registers the mappers
    Base.metadata.create_all(bind=bind or engine)
