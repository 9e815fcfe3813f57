"""
引擎配置

所有值都可以通过环境变量覆盖，入口处先调用 load_dotenv()。
"""
import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_MAX_WAIT_MS = 10_000
DEFAULT_WAIT_MS = 1_000
# 八年：跨越一个非闰年的世纪年后，2月29日仍能在窗口内找到
DEFAULT_SEARCH_HORIZON_DAYS = 366 * 8
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MAX_RETRY_DELAY = 60.0


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class EngineSettings:
    """引擎运行参数"""
    database_url: Optional[str] = None
    max_wait_ms: int = DEFAULT_MAX_WAIT_MS
    default_wait_ms: int = DEFAULT_WAIT_MS
    search_horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    auto_run: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    jwt_secret_key: str = "change-me"
    disable_auth: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """从环境变量读取配置"""
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            max_wait_ms=int(os.getenv("WAIT_STEP_MAX_MS", str(DEFAULT_MAX_WAIT_MS))),
            default_wait_ms=int(os.getenv("WAIT_STEP_DEFAULT_MS", str(DEFAULT_WAIT_MS))),
            search_horizon_days=int(
                os.getenv("CRON_SEARCH_HORIZON_DAYS", str(DEFAULT_SEARCH_HORIZON_DAYS))
            ),
            max_retries=int(os.getenv("DEFAULT_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))),
            retry_delay=float(os.getenv("DEFAULT_RETRY_DELAY", str(DEFAULT_RETRY_DELAY))),
            backoff_factor=float(os.getenv("DEFAULT_BACKOFF_FACTOR", str(DEFAULT_BACKOFF_FACTOR))),
            max_retry_delay=float(os.getenv("DEFAULT_MAX_RETRY_DELAY", str(DEFAULT_MAX_RETRY_DELAY))),
            auto_run=_env_bool("ENGINE_AUTO_RUN", "true"),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            api_reload=_env_bool("API_RELOAD"),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", "change-me"),
            disable_auth=_env_bool("DISABLE_AUTH"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
