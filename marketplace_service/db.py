from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def build_engine(url: str):
    if url.startswith("sqlite"):
        # Writers wait on the database lock instead of failing fast
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

engine = build_engine(settings.sqlalchemy_url)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
