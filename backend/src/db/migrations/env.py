"""
Alembic environment for the lifecycle tables.

The database URL comes from LIFECYCLE_DB_URL (or backend/.env through
LifecycleSettings) unless alembic.ini sets one explicitly. SQLite runs in
batch mode so ALTERs on the status tables work there too.
"""

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

_repo_root = Path(__file__).resolve().parents[4]
load_dotenv(dotenv_path=_repo_root / 'backend' / '.env')
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

from backend.src.models import Base  # noqa: E402
from backend.src.config.settings import get_settings  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

if os.environ.get("LIFECYCLE_DB_URL") or not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", get_settings().db_url)

target_metadata = Base.metadata


def _configure_options(**kwargs) -> dict:
    return dict(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the configured URL without connecting."""
    context.configure(**_configure_options(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    ))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Connect and apply migrations."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(**_configure_options(
            connection=connection,
            render_as_batch=connection.dialect.name == "sqlite",
        ))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
