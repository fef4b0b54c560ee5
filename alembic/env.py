import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import get_settings  # noqa: E402
from database import Base, build_engine  # noqa: E402
import models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")


def _database_url() -> str:
    # `alembic -x url=...` wins over LEDGER_DATABASE_URL.
    return context.get_x_argument(as_dictionary=True).get("url") or get_settings().database_url


def _common_options(url: str) -> dict:
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_offline(url: str) -> None:
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_common_options(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    eng = build_engine(url, migrations=True)
    with eng.connect() as connection:
        context.configure(connection=connection, **_common_options(url))
        with context.begin_transaction():
            logger.info(f"migrating: url={eng.url!r}")
            context.run_migrations()


url = _database_url()
if context.is_offline_mode():
    run_offline(url)
else:
    run_online(url)
