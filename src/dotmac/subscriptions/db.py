"""
SQLAlchemy 2.0 Database Configuration

Async engine, session factory and the ``subscriptions`` table.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dotmac.subscriptions.settings import Settings, get_settings

# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )


# At most one row per user may be in a current status.
CURRENT_STATUS_CLAUSE = "status IN ('active', 'trial')"


class SubscriptionRecord(TimestampMixin, Base):
    """Persistent subscription row; ``version`` guards every update."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_current_user",
            "user_id",
            unique=True,
            postgresql_where=text(CURRENT_STATUS_CLAUSE),
            sqlite_where=text(CURRENT_STATUS_CLAUSE),
        ),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_trial_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    payment_method: Mapped[str] = mapped_column(String(32), default="none", nullable=False)
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255))
    payment_method_id: Mapped[str | None] = mapped_column(String(255))
    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    payment_currency: Mapped[str | None] = mapped_column(String(3))
    last_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    usage_api_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_storage_mb: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id!r}, user_id={self.user_id!r}, "
            f"status={self.status!r}, version={self.version})>"
        )


# ==========================================
# Engine and Session Management
# ==========================================


def create_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing applies to server databases only."""
    settings = settings or get_settings()
    options: dict[str, Any] = {"echo": settings.database.echo}
    if not settings.database.is_sqlite:
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=settings.database.pool_pre_ping,
        )
    return create_async_engine(settings.database.url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Engine and factory are created lazily from settings
_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_engine_from_settings()
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = create_session_factory(get_async_engine())
    return _async_session_maker


async def dispose_engine() -> None:
    """Dispose the global engine (mainly for tests and CLI shutdown)."""
    global _async_engine, _async_session_maker
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_maker = None


@asynccontextmanager
async def get_async_db() -> AsyncIterator[AsyncSession]:
    """Get an asynchronous database session."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def check_database_health() -> bool:
    """Check if the database is accessible."""
    try:
        async with get_async_db() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize the database (create tables if needed)."""
    await create_all_tables_async(engine)


__all__ = [
    "Base",
    "TimestampMixin",
    "SubscriptionRecord",
    "create_engine_from_settings",
    "create_session_factory",
    "get_async_engine",
    "get_session_factory",
    "dispose_engine",
    "get_async_db",
    "create_all_tables_async",
    "drop_all_tables_async",
    "check_database_health",
    "init_db",
]
