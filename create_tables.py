"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys

from fingate.database import create_engine
from fingate.models.base import Base

# Import all models to register them with Base
from fingate.models.user import User  # noqa: F401
from fingate.models.api_key import ApiKey, ApiUsageLog, RateLimitWindow  # noqa: F401
from fingate.models.webhook import Webhook, WebhookLog  # noqa: F401
from fingate.models.transaction import Transaction  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    engine = create_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    engine = create_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    print("All tables dropped!")


async def main():
    """Main entry point."""
    if "--drop" in sys.argv:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
