# /bookrent/core/database.py
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from bookrent.core.config import get_database_url


def _sqlite_foreign_keys(dbapi_connection, connection_record):
    # Payments and deposit holds cascade with their booking
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> AsyncEngine:
    event.listen(engine.sync_engine, "connect", _sqlite_foreign_keys)
    return engine


db_url = get_database_url()

# Configure engine based on database type
if "sqlite" in db_url:
    engine = enable_sqlite_foreign_keys(
        create_async_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False}
        )
    )
else:
    engine = create_async_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=3600
    )

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

class Base(DeclarativeBase):
    pass

async def get_db():
    async with SessionLocal() as session:
        yield session
