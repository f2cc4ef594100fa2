from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from busbooking.config import settings


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite gets explicit transaction control.

    pysqlite/aiosqlite defer BEGIN on their own, which breaks SAVEPOINT and
    lets two writers deadlock on lock upgrade. Emitting BEGIN IMMEDIATE
    ourselves makes SQLite writers queue on the busy timeout instead.
    """
    engine = create_async_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# create async engine
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# session factory
async_session = build_session_factory(engine)


async def get_session() -> AsyncSession:  # to be used as dependency
    async with async_session() as session:
        yield session
