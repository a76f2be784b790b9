from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_APP_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _APP_DIR.parent
_REPO_ROOT = _BACKEND_DIR.parent


def _load_root_dotenv() -> None:
    """
    统一从仓库根目录读取 `.env`（并保证其优先级最高）。

    说明：
    - 启动脚本通常会 `cd backend`，导致工具默认只会找子目录下的 `.env`。
    - 这里显式加载：先加载 `backend/.env`，再加载根目录 `.env`，并且 `override=True`，确保根目录 `.env` 优先。
    """

    backend_env = _BACKEND_DIR / ".env"
    root_env = _REPO_ROOT / ".env"

    for env_file in (backend_env, root_env):
        if env_file.exists():
            load_dotenv(env_file, override=True, encoding="utf-8")


def split_csv(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class Settings(BaseSettings):
    """Application settings"""

    # Server（供 run.py 使用）
    backend_host: str = "0.0.0.0"
    backend_port: int = 31012
    backend_reload: bool = True

    # Database
    # 优先使用 DATABASE_URL；不配置时再使用 SQLITE_DB_PATH 生成 sqlite URL
    database_url: str | None = None
    sqlite_db_path: str = "kleininbox.db"

    # API
    api_prefix: str = "/api"
    debug: bool = True
    # 是否输出 SQLAlchemy 的 SQL 日志；排查 SQL/事务时再临时打开
    sql_echo: bool = False

    # CORS（逗号分隔；"*" 表示允许所有来源，此时会强制关闭 allow_credentials）
    cors_allow_origins: str = "*"
    cors_allow_credentials: bool = False
    cors_allow_methods: str = "*"
    cors_allow_headers: str = "*"

    # 凭据加密
    # - ENCRYPTION_KEY 是服务端持有的 secret，只用于派生 AES-256-GCM 的 key
    # - salt 固定：同一个 secret 必须总是派生出同一个 key，否则已落库的密文无法解密
    encryption_key: str | None = None
    encryption_salt: str = "kleininbox-credential-salt-v1"
    encryption_iterations: int = 210_000

    # 目标站点
    # - SELECTOR_TABLE_VERSION：选择器表版本（站点改版时只需新增一张表并切换版本）
    # - SITE_BASE_URL：覆盖选择器表里的站点地址（测试环境/镜像站）
    selector_table_version: str = "2026-02"
    site_base_url: str | None = None
    # 站点页面上的“今天/昨天/3 小时前”都是按站点所在时区显示的
    site_timezone: str = "Europe/Berlin"

    # Browser
    browser_headless: bool = True
    browser_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    )
    browser_viewport_width: int = 1920
    browser_viewport_height: int = 1080
    browser_locale: str = "de-DE"
    # 逗号分隔：这些资源类型的请求会被直接 abort（只放行 document/script/xhr 等）
    browser_blocked_resource_types: str = "image,stylesheet,font,media"

    # 超时（毫秒）：任何导航/等待都必须有上限，超时即失败，不允许无限挂起
    navigation_timeout_ms: int = 30_000
    element_timeout_ms: int = 10_000
    login_marker_timeout_ms: int = 10_000
    login_type_delay_ms: int = 100
    reply_type_delay_ms: int = 50
    # 点击发送后等待站点自身的异步提交完成（站点不提供可校验的确认）
    send_settle_seconds: float = 2.0

    # Sync
    # - 会话之间 / 账号之间的固定间隔：降低对目标站点的压力
    # - 翻页/打开会话超时的有限重试（重试策略属于编排层，浏览器会话内部不重试）
    conversation_delay_seconds: float = 1.0
    account_delay_seconds: float = 2.0
    scrape_max_attempts: int = 2
    scrape_retry_backoff_seconds: float = 1.0
    scrape_retry_max_backoff_seconds: float = 8.0
    scrape_retry_jitter_ratio: float = 0.1
    # 单次同步的整体超时（秒）；0 表示不限制
    sync_attempt_timeout_seconds: float = 0

    # Startup
    # 是否在服务启动时自动触发一次“全账号同步”（异步后台执行，不阻塞启动）
    sync_on_startup: bool = False

    # Schedule
    # - 优先使用分钟粒度
    # - 兼容旧配置：SYNC_INTERVAL_HOURS
    sync_interval_minutes: int | None = None
    sync_interval_hours: int | None = None

    @model_validator(mode="after")
    def _build_database_url_if_missing(self) -> "Settings":
        if self.database_url and self.database_url.strip():
            return self

        db_path = Path(self.sqlite_db_path)
        if not db_path.is_absolute():
            db_path = (_REPO_ROOT / db_path).resolve()

        self.database_url = f"sqlite+aiosqlite:///{db_path.as_posix()}"
        return self

    @model_validator(mode="after")
    def _normalize_sync_interval(self) -> "Settings":
        minutes = self.sync_interval_minutes
        if minutes is None:
            if self.sync_interval_hours is not None:
                minutes = int(self.sync_interval_hours) * 60
            else:
                minutes = 20

        if minutes <= 0:
            minutes = 20

        self.sync_interval_minutes = minutes
        return self

    @model_validator(mode="after")
    def _normalize_scrape_limits(self) -> "Settings":
        if int(self.scrape_max_attempts or 0) <= 0:
            self.scrape_max_attempts = 1
        if int(self.encryption_iterations or 0) <= 0:
            self.encryption_iterations = 210_000
        for name in ("conversation_delay_seconds", "account_delay_seconds", "send_settle_seconds"):
            if float(getattr(self, name) or 0) < 0:
                setattr(self, name, 0.0)
        if float(self.sync_attempt_timeout_seconds or 0) < 0:
            self.sync_attempt_timeout_seconds = 0
        if not (self.encryption_key or "").strip():
            self.encryption_key = None
        return self

    @property
    def blocked_resource_types(self) -> frozenset[str]:
        return frozenset(t.lower() for t in split_csv(self.browser_blocked_resource_types))

    model_config = SettingsConfigDict(
        case_sensitive=False
    )


_load_root_dotenv()
settings = Settings()
