import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Setup logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

# Load DATABASE_URL from environment or use default
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./coupons.db")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependency for generating a new SQLAlchemy session.

    Yields:
        An active database session.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
