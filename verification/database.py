from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Sessions are used from FastAPI's threadpool
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    from .models import Base

    Base.metadata.create_all(bind=engine)

