from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from app.business.revenue.models import (  # noqa: F401
    RevenueAgreement,
    RevenueIdempotencyKey,
    RevenueOrder,
    RevenueQuote,
    RevenueQuoteItem,
)
from app.core.config import get_settings
from app.core.database import Base
from app.models.audit import AuditLog  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Quote, order and agreement tables plus the audit log they write to.
target_metadata = Base.metadata


def _database_url() -> str:
    # `alembic -x database_url=...` wins over DATABASE_URL / .env.
    return context.get_x_argument(as_dictionary=True).get("database_url") or get_settings().database_url


def _configure(**kwargs) -> None:
    url = kwargs.get("url") or kwargs["connection"].engine.url
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER constraints in place; batch mode rebuilds the table.
        render_as_batch=str(url).startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        _configure(connection=connection)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
