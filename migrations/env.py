"""
Alembic environment

Reads DATABASE_URL through followup.config, imports Base from the models
module, and supports offline (SQL script) and online (direct DB) modes.
"""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from followup.config import get_settings
from followup.infrastructure.db.session import Base
from followup.infrastructure.db import models  # noqa: F401  (registers tables on Base.metadata)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=get_settings().get_sqlalchemy_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(get_settings().get_sqlalchemy_url(), poolclass=pool.NullPool)

    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()

    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
