import os
import re
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

# `alembic -c alembic.ini` may run from anywhere; make `import Rapport...` resolvable
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from Rapport.config import resolve_database_url  # noqa: E402  # also loads .env
from Rapport.database import Base  # noqa: E402
import Rapport.models  # noqa: F401,E402  # registers conversations/messages on Base.metadata

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

alembic_cfg = context.config
if alembic_cfg.config_file_name is not None:
    fileConfig(alembic_cfg.config_file_name)

COMPARE_OPTS = {"compare_type": True, "compare_server_default": True}


# alembic.ini `sqlalchemy.url` wins when it is a literal URL; a `${VAR}` placeholder or blank defers to the app's resolution
def migration_url() -> str:
    raw = (alembic_cfg.get_main_option("sqlalchemy.url") or "").strip()
    placeholder = _PLACEHOLDER.fullmatch(raw)
    if placeholder is None and raw:
        return raw
    if placeholder is not None and os.getenv(placeholder.group(1)) and placeholder.group(1) != "DATABASE_URL":
        return os.environ[placeholder.group(1)]
    return resolve_database_url()


def run_offline() -> None:
    context.configure(
        url=migration_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE_OPTS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=Base.metadata, **COMPARE_OPTS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
