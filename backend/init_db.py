"""Database initialization script"""
import asyncio

from app.database import engine, init_db


async def main():
    """Create inbox tables (accounts / conversations / messages / sync_logs) and indexes"""
    print("Initializing database...")
    try:
        await init_db()
    finally:
        await engine.dispose()
    print("Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(main())
