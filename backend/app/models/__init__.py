from app.models.base import async_session_maker, dispose_engine, engine

__all__ = [
    "async_session_maker",
    "dispose_engine",
    "engine",
]
