import asyncio
from logging.config import fileConfig
from alembic import context

from core.config import settings
from core.database import create_warehouse_engine, create_warehouse_schemas, warehouse_schemas
from models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def include_object(obj, name, type_, reflected, compare_to):
    """Result and import tables are created by runs; autogenerate must not drop them"""
    if type_ == "table" and reflected and compare_to is None:
        return getattr(obj, "schema", None) not in warehouse_schemas()
    return True


def configure(**kwargs):
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        include_object=include_object,
        **kwargs,
    )


def run_migrations_offline():
    configure(url=settings.DATABASE_URL, literal_binds=True)

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    configure(connection=connection)

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online():
    engine = create_warehouse_engine()

    async with engine.connect() as connection:
        await create_warehouse_schemas(connection)
        await connection.commit()
        await connection.run_sync(do_run_migrations)

    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
