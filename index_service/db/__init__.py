"""
缓存存储连接管理模块
统一管理 Redis（异步）与 MongoDB（异步）连接，供缓存层后端使用。
两者都不可用时缓存层降级为文件存储。
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import ConnectionPool, Redis

from index_service.config import IndexServiceSettings, settings as _default_settings

logger = logging.getLogger(__name__)

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_redis(cfg: IndexServiceSettings = None) -> bool:
    """初始化 Redis 异步连接，返回是否成功"""
    global _redis_client, _redis_pool
    cfg = cfg or _default_settings
    if not cfg.REDIS_ENABLED:
        logger.info("Redis 未启用，跳过初始化")
        return False
    try:
        _redis_pool = ConnectionPool.from_url(
            cfg.REDIS_URL,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
        await _redis_client.ping()
        logger.info(f"✅ Redis 连接成功: {cfg.REDIS_HOST}:{cfg.REDIS_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ Redis 连接失败（缓存将降级）: {exc}")
        _redis_client = None
        _redis_pool = None
        return False


async def init_mongodb(cfg: IndexServiceSettings = None) -> bool:
    """初始化 MongoDB 异步连接，返回是否成功"""
    global _mongo_client, _mongo_db
    cfg = cfg or _default_settings
    if not cfg.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，跳过初始化")
        return False
    try:
        _mongo_client = AsyncIOMotorClient(
            cfg.MONGO_URI,
            maxPoolSize=cfg.MONGO_MAX_CONNECTIONS,
            serverSelectionTimeoutMS=cfg.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        )
        _mongo_db = _mongo_client[cfg.MONGODB_DATABASE]
        await _mongo_client.admin.command("ping")
        logger.info(f"✅ MongoDB 连接成功: {cfg.MONGODB_HOST}:{cfg.MONGODB_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 连接失败（缓存将降级）: {exc}")
        _mongo_client = None
        _mongo_db = None
        return False


async def close_connections():
    """关闭所有存储连接"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB 连接已关闭")
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """获取 MongoDB 数据库实例（可能为 None）"""
    return _mongo_db


def get_redis() -> Optional[Redis]:
    """获取 Redis 客户端（可能为 None）"""
    return _redis_client


async def check_health(cfg: IndexServiceSettings = None) -> dict:
    """检查存储连接健康状态；未连接时按 cfg 区分 disabled 与 disconnected"""
    cfg = cfg or _default_settings
    result = {
        "redis": {"status": "disabled"},
        "mongodb": {"status": "disabled"},
    }
    if _redis_client:
        try:
            await _redis_client.ping()
            result["redis"] = {"status": "healthy"}
        except Exception as exc:
            result["redis"] = {"status": "unhealthy", "error": str(exc)}
    elif cfg.REDIS_ENABLED:
        result["redis"] = {"status": "disconnected"}

    if _mongo_client:
        try:
            await _mongo_client.admin.command("ping")
            result["mongodb"] = {"status": "healthy"}
        except Exception as exc:
            result["mongodb"] = {"status": "unhealthy", "error": str(exc)}
    elif cfg.MONGODB_ENABLED:
        result["mongodb"] = {"status": "disconnected"}

    return result
