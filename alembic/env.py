import asyncio
from logging.config import fileConfig

# ruff: noqa: F401

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from src.core.config import settings
from src.core.database.base import Base

# Model imports register every table on Base.metadata
from src.core.audit.models import AuditLog
from src.modules.families.models import Family, Student
from src.modules.tax_rates.models import TaxRate
from src.modules.discounts.models import DiscountCode, DiscountCodeUsage
from src.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceLineItemTax
from src.modules.payments.models import Payment, PaymentStudent, PaymentTax
from src.integrations.webhooks.models import WebhookEvent

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
# Amount columns are BigInteger; let autogenerate notice type drift
compare_options = {"compare_type": True}


def _migrate(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, **compare_options)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_async() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = settings.database_url
    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    # Emit SQL to stdout instead of connecting
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **compare_options,
    )
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate_async())
