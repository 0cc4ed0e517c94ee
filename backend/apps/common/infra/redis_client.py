"""
Redis 客户端封装：
- 进程内复用一个连接池，配置全部来自 settings（REDIS_*）
- 监考会话的草稿、语言、续连快照只做尽力持久化：读写失败记录警告后降级为空
- 连接计数等必须感知失败的操作抛 CacheUnavailableError，由调用方回退到进程内计数
"""

from __future__ import annotations

import json
from typing import Any, Optional

import redis
from django.conf import settings

from apps.common.exceptions import CacheUnavailableError
from apps.common.infra.logger import get_logger

_logger = get_logger(__name__)

_client: Optional[redis.Redis] = None


def _get_client() -> Optional[redis.Redis]:
    """获取（并缓存）Redis 客户端；构造失败返回 None"""
    global _client
    if _client is not None:
        return _client
    options = {
        "host": getattr(settings, "REDIS_HOST", "127.0.0.1"),
        "port": int(getattr(settings, "REDIS_PORT", 6379)),
        "db": int(getattr(settings, "REDIS_DB_CACHE", 0)),
    }
    try:
        _client = redis.Redis(
            password=getattr(settings, "REDIS_PASSWORD", None) or None,
            decode_responses=True,
            socket_connect_timeout=float(getattr(settings, "REDIS_CONNECT_TIMEOUT", 0.2)),
            socket_timeout=float(getattr(settings, "REDIS_SOCKET_TIMEOUT", 0.5)),
            **options,
        )
    except redis.RedisError:
        _logger.warning("Redis 客户端初始化失败，已跳过缓存", extra=options)
        return None
    return _client


def _loads(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def set(key: str, value: Any, ex: Optional[int] = None) -> None:
    """写入字符串值，可选过期时间（秒）；失败时跳过"""
    client = _get_client()
    if client is None:
        return
    try:
        client.set(key, value, ex=ex)
    except redis.RedisError:
        _logger.warning("Redis 写入失败，已跳过", extra={"key": key})


def incr(key: str, amount: int = 1, ex: Optional[int] = None) -> int:
    """
    计数器自增（amount 可为 0 或负数），ex 存在时同时刷新过期时间
    Redis 不可用时抛 CacheUnavailableError
    """
    client = _get_client()
    if client is None:
        raise CacheUnavailableError(message="Redis 不可用，无法执行计数器")
    try:
        if not ex:
            return int(client.incrby(key, amount))
        pipe = client.pipeline()
        pipe.incrby(key, amount)
        pipe.expire(key, ex)
        val, _ = pipe.execute()
        return int(val)
    except redis.RedisError as exc:
        _logger.warning("Redis 自增失败", extra={"key": key})
        raise CacheUnavailableError(message="Redis 不可用，计数器失败") from exc


def delete(*keys: str) -> None:
    """删除一个或多个键，失败时跳过"""
    client = _get_client()
    if client is None or not keys:
        return
    try:
        client.delete(*keys)
    except redis.RedisError:
        _logger.warning("Redis 删除键失败，已跳过", extra={"keys": list(keys)})


def set_json(key: str, data: Any, ex: Optional[int] = None) -> None:
    """以 JSON 存储结构化数据（续连快照、语言选择）"""
    set(key, json.dumps(data, ensure_ascii=False), ex=ex)


def get_json(key: str) -> Optional[Any]:
    """读取 JSON 数据；不存在、读取失败或格式错误均返回 None"""
    client = _get_client()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except redis.RedisError:
        _logger.warning("Redis 读取失败，已跳过", extra={"key": key})
        return None
    return _loads(raw)


def hset_json(key: str, field: str, data: Any, ex: Optional[int] = None) -> None:
    """
    写入哈希的单个字段（JSON 编码）并刷新整个哈希的过期时间
    草稿按题目分字段保存，单题写入不需要先读出其它题目
    """
    client = _get_client()
    if client is None:
        return
    try:
        pipe = client.pipeline()
        pipe.hset(key, field, json.dumps(data, ensure_ascii=False))
        if ex:
            pipe.expire(key, ex)
        pipe.execute()
    except redis.RedisError:
        _logger.warning("Redis 哈希写入失败，已跳过", extra={"key": key, "field": field})


def hgetall_json(key: str) -> dict[str, Any]:
    """读取整个哈希并逐字段 JSON 解码，格式错误的字段被丢弃"""
    client = _get_client()
    if client is None:
        return {}
    try:
        raw = client.hgetall(key)
    except redis.RedisError:
        _logger.warning("Redis 哈希读取失败，已跳过", extra={"key": key})
        return {}
    decoded = {}
    for field, value in raw.items():
        item = _loads(value)
        if item is not None:
            decoded[field] = item
    return decoded


def ping() -> bool:
    """探活：Redis 可达返回 True"""
    client = _get_client()
    if client is None:
        return False
    try:
        return bool(client.ping())
    except redis.RedisError:
        _logger.warning("Redis 探活失败")
        return False
