from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from .config import settings

# 针对 SQLite 做一些“更像生产”的默认优化：
# - busy_timeout：降低并发写入下的 “database is locked”
# - WAL：后台同步写入 + 接口查询并行
# - foreign_keys：打开外键约束（SQLite 默认关闭），删除账号时级联删除会话/消息依赖它
_is_sqlite = str(settings.database_url or "").startswith("sqlite")
_connect_args = {"timeout": 30} if _is_sqlite else {}

# Create async engine (supports both SQLite and PostgreSQL)
engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_pre_ping=True,
    future=True,
    connect_args=_connect_args,
)

# 只有 SQLite 才需要 PRAGMA；PostgreSQL 会忽略
if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.close()

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Base class for models
Base = declarative_base()


async def get_db():
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Initialize database tables"""
    # 确保所有模型都已被导入，从而注册到 Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _ensure_schema(conn)


async def _ensure_schema(conn) -> None:
    """补齐查询用索引（幂等）。

    说明：
    - 本项目未引入 Alembic，表结构由 create_all 创建；这里只追加索引。
    - 唯一约束（去重键）在模型里声明，随建表一起创建。
    - IF NOT EXISTS 同时兼容 SQLite / PostgreSQL。
    """
    # 同步日志：按时间排序 / 按账号查最近一条（前端同步指示器会轮询）
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_sync_logs_started_at_desc ON sync_logs (started_at DESC)")
    )
    await conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_sync_logs_account_started_desc "
            "ON sync_logs (account_id, started_at DESC)"
        )
    )

    # 收件箱列表：按账号 + 最近消息时间排序
    await conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_conversations_account_last_msg "
            "ON conversations (account_id, last_message_at DESC)"
        )
    )

    # 会话详情：按会话 + 时间顺序展示消息
    await conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation_ts "
            "ON messages (conversation_id, timestamp)"
        )
    )
