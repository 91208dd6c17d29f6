from app.db.session import async_session_maker, close_db, init_db
from app.db.base import Base

__all__ = ["Base", "async_session_maker", "close_db", "init_db"]
