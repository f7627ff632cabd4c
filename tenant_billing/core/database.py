"""Database engine, session factory and transactional helpers."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from tenant_billing.core.config import settings
from tenant_billing.core.errors import ConcurrencyConflict


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

SessionFactory = Callable[[], AsyncSession]


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session.

    Commits when the request handler returns and rolls back if it raises.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            raise ConcurrencyConflict("Record was modified concurrently") from e
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def unit_of_work(
    session_factory: SessionFactory = async_session_maker,
) -> AsyncGenerator[AsyncSession, None]:
    """Run a block as a single atomic unit.

    Commits on success, rolls back on any error. A stale versioned row
    (someone else committed first) surfaces as ConcurrencyConflict.

    Args:
        session_factory: Callable returning a new AsyncSession

    Yields:
        Session bound to the unit's transaction
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            raise ConcurrencyConflict("Record was modified concurrently") from e
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> SessionFactory:
    """FastAPI dependency for handlers that manage their own units of work."""
    return async_session_maker
