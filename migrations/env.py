"""Alembic environment for the Juice ledger (PostgreSQL only).

SQLite databases create their tables on first use in db.py; production
Postgres schemas are versioned here.
"""

import os
import sys
from logging.config import fileConfig

# Project root on the path so db.py is importable
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(ROOT, ".env"))

from alembic import context

from db import POSTGRES_DSN

config = context.config


def sqlalchemy_url(dsn: str) -> str:
    """psycopg3 driver URL. Plain postgresql:// would pick psycopg2."""
    for scheme in ("postgresql://", "postgres://"):
        if dsn.startswith(scheme):
            return "postgresql+psycopg://" + dsn[len(scheme):]
    return dsn


config.set_main_option(
    "sqlalchemy.url",
    sqlalchemy_url(config.get_main_option("sqlalchemy.url") or POSTGRES_DSN),
)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline():
    """Emit the DDL as SQL instead of applying it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    from sqlalchemy import create_engine

    engine = create_engine(config.get_main_option("sqlalchemy.url"))
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=None)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
