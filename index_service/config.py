"""
指数数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class IndexServiceSettings(BaseSettings):
    """指数数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Alpha Vantage 数据源 ───────────────────────────────
    ALPHAVANTAGE_API_KEY: str = Field(default="demo")
    # 直连上游，或指向同源中转接口（如 http://localhost:8002/api/alphavantage）
    ALPHAVANTAGE_BASE_URL: str = Field(default="https://www.alphavantage.co/query")
    ALPHAVANTAGE_UPSTREAM_URL: str = Field(default="https://www.alphavantage.co/query")
    HTTP_TIMEOUT: float = Field(default=15.0)
    HTTP_USER_AGENT: str = Field(default="Mozilla/5.0 (compatible; IndexDataService/1.0)")

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="index_data")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=20)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_BACKEND: str = Field(default="auto")      # auto / memory / file / redis / mongodb
    CACHE_DIR: str = Field(default="./cache")       # 文件缓存目录
    CACHE_TTL_OVERRIDES: Dict[str, int] = Field(default_factory=dict)  # 接口名 → TTL（秒）
    CACHE_MAX_RETRIES: int = Field(default=3)       # 统计口径：失败次数达到即视为"失败"
    CACHE_CLEANUP_TTL_MULTIPLE: int = Field(default=24)
    BACKOFF_BASE_SECONDS: int = Field(default=60)
    BACKOFF_MAX_SECONDS: int = Field(default=7200)

    # ── 聚合配置 ──────────────────────────────────────────
    SPARKLINE_POINTS: int = Field(default=8)
    AGGREGATE_TIMEOUT_SECONDS: float = Field(default=0)  # 0 表示不限制
    STRICT_DISPATCH: bool = Field(default=False)         # 开发/测试环境下未知数据族直接抛出
    FALLBACK_USE_REFERENCE_PRICES: bool = Field(default=False)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> IndexServiceSettings:
    """获取全局配置（单例）"""
    return IndexServiceSettings()


settings = get_settings()
