# backend/photo_analysis/db.py
from sqlmodel import SQLModel, create_engine, Session

from .config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# create engine (file-based sqlite unless DATABASE_URL says otherwise)
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)

def init_db(bind=None):
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(bind or engine)

def get_session():
    with Session(engine) as session:
        yield session
