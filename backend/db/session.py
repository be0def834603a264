"""
ScaleCheck Database Session Management

The API shares one pooled engine. Celery tasks run each job under its own
``asyncio.run`` loop, so they build a short-lived engine per task with
``build_engine`` and dispose of it when the job finishes.
"""

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()


def build_engine(url: str | None = None, pooled: bool = False) -> AsyncEngine:
    url = url or settings.database_url
    kwargs = {"echo": settings.database_echo}
    # SQLite drivers reject pool sizing
    if pooled and make_url(url).get_backend_name() != "sqlite":
        kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Dispute rows are read again after commit for responses and notifications
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(pooled=True)

AsyncSessionLocal = session_factory(engine)


async def set_company_context(session: AsyncSession, company_id: str) -> None:
    """Scope row-level security to one company for the current transaction (PostgreSQL only)."""
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('app.current_company_id', :cid, true)"),
        {"cid": company_id},
    )


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
