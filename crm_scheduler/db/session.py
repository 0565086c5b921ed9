from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from crm_scheduler.core.config import settings


def make_engine(url: str, echo: bool = False):
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    # PostgreSQL configuration with connection pooling
    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=300,      # Recycle connections every 5 minutes
        pool_pre_ping=True,    # Validate connections before use
        pool_timeout=30,
        echo=echo,
    )


engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
