from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

# SQLite connections are shared with the threadpool that runs sync endpoints
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Yield a SQLAlchemy database session for the Reservations service.

    This function is used as a FastAPI dependency, creating a scoped
    session per HTTP request and ensuring it is closed afterwards.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the reservations database engine.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
