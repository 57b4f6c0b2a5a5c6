"""Async SQLModel database setup."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from errandly.config import settings
from errandly.db_models import (  # noqa: F401 (register tables)
    Category,
    Expense,
    Offer,
    Perk,
    PlatformSettings,
    Task,
    Transaction,
    User,
    WalletLedger,
)

logger = logging.getLogger("errandly.database")

_engine = None
_session_factory = None

# Absolute path to the migrations directory (sibling of errandly/ package)
_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# (id, name, min_price, max_price) in minor units
DEFAULT_CATEGORIES = [
    ("delivery", "Delivery", 5000, 50000),
    ("errand", "Errand", 2000, 30000),
    ("shopping", "Shopping", 3000, 100000),
    ("pickup", "Pickup", 5000, 50000),
    ("cleaning", "Cleaning", 8000, 150000),
    ("custom", "Custom", None, None),
]


async def init_db(url: str = "sqlite+aiosqlite:///errandly.db") -> None:
    global _engine, _session_factory
    connect_args = {}
    if "sqlite" in url:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    _engine = create_async_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)
    _session_factory = sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async with _engine.begin() as conn:
        if "sqlite" in url:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA foreign_keys=ON"))
        await _run_alembic_upgrade(conn)

    async with _session_factory() as session:
        await seed_defaults(session)


async def _run_alembic_upgrade(conn) -> None:
    """Run Alembic migrations on the existing async connection.

    A database created with ``create_all`` (no ``alembic_version`` table)
    already has every current table and is stamped at head.
    """
    import sqlalchemy
    from alembic import command
    from alembic.config import Config

    def _do_upgrade(sync_conn):
        from alembic.migration import MigrationContext
        from alembic.script import ScriptDirectory

        alembic_cfg = Config()
        alembic_cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
        # env.py picks this up instead of creating its own engine
        alembic_cfg.attributes["connection"] = sync_conn

        current_rev = MigrationContext.configure(sync_conn).get_current_revision()
        existing_tables = set(sqlalchemy.inspect(sync_conn).get_table_names())

        head_rev = ScriptDirectory.from_config(alembic_cfg).get_current_head()
        if "tasks" in existing_tables and "alembic_version" not in existing_tables:
            logger.info("Existing database without Alembic tracking, stamping at %s", head_rev)
            command.stamp(alembic_cfg, "head")
            return

        if current_rev != head_rev:
            logger.info("Upgrading database from %s to %s", current_rev or "(empty)", head_rev)
            command.upgrade(alembic_cfg, "head")
        else:
            logger.debug("Database schema is up to date at revision %s", current_rev)

    await conn.run_sync(_do_upgrade)


async def seed_defaults(session: AsyncSession) -> None:
    """Insert the default categories and the global settings row if missing."""
    created = 0
    for cat_id, name, min_price, max_price in DEFAULT_CATEGORIES:
        if await session.get(Category, cat_id) is None:
            session.add(Category(id=cat_id, name=name, min_price=min_price, max_price=max_price))
            created += 1
    if await session.get(PlatformSettings, "global") is None:
        session.add(
            PlatformSettings(
                id="global",
                platform_fee_pct=settings.default_platform_fee_pct,
                default_radius_km=settings.default_radius_km,
            )
        )
        created += 1
    if created:
        await session.commit()
        logger.info("Seeded %d default rows", created)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    assert _session_factory is not None, "Database not initialised, call init_db() first"
    async with _session_factory() as session:
        yield session


def get_session_factory() -> sessionmaker:
    assert _session_factory is not None
    return _session_factory
