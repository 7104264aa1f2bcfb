from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from Rapport.config import get_settings

DATABASE_URL = get_settings().database_url

_connect_args = {"connect_timeout": 5} if DATABASE_URL.startswith("postgresql") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Request-scoped session (FastAPI dependency)
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
