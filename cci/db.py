# db.py
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# --- Configuration and Engine Setup ---

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cci.db")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # sqlite has no server-side pool; allow use from the threadpool FastAPI runs sync routes in
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,  # auto-reconnect if dropped
        "pool_size": 5,         # small pool (hosted Postgres tiers have connection limits)
        "max_overflow": 2,
    }


# Ensure SSL mode is required for hosted Postgres
if DATABASE_URL.startswith("postgres") and "sslmode" not in DATABASE_URL:
    if "?" in DATABASE_URL:
        DATABASE_URL += "&sslmode=require"
    else:
        DATABASE_URL += "?sslmode=require"

engine = create_engine(url=DATABASE_URL, **_engine_kwargs(DATABASE_URL))

# --- Session and Dependency Setup ---

# SessionLocal class is used to produce new Session objects
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db():
    """
    FastAPI Dependency: Provides a database session for each request.
    It closes the session automatically after the request is finished.
    """
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
