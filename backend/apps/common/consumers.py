# -*- coding: utf-8 -*-
"""
通用 WebSocket 消费者基类

功能目标：
- 连接时校验登录（JWTAuthMiddleware 注入的 scope["user"]），监考端额外要求管理员身份
- 限制用户/IP 并发连接数，优先使用 Redis 计数，不可用时回退为进程内计数
- 统一心跳：前端定期发送 ping，长时间无心跳自动断开
"""

from __future__ import annotations

import asyncio
import time

from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.conf import settings
from django.contrib.auth.models import AnonymousUser

from apps.common.exceptions import CacheUnavailableError
from apps.common.infra import redis_client
from apps.common.utils.redis_keys import ws_ip_conn_key, ws_user_conn_key

# 连接配额统计（单进程）：限制用户/IP 并发连接，避免滥用
_user_conn_count: dict[int, int] = {}
_ip_conn_count: dict[str, int] = {}
_CONNECTION_TTL_SECONDS = 3600  # Redis 计数键过期时间，防止异常断开留下脏值

# 关闭码
CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_HEARTBEAT_TIMEOUT = 4410
CLOSE_TOO_MANY_CONNECTIONS = 4429


def client_ip(scope) -> str:
    """从 scope 提取客户端 IP"""
    client = scope.get("client") or ()
    if isinstance(client, (list, tuple)) and client:
        return client[0] or ""
    return ""


def _register_connection(user_id: int, ip: str) -> bool:
    """注册连接计数，超过阈值返回 False，优先使用 Redis 计数"""
    max_user = int(getattr(settings, "WS_MAX_CONNECTIONS_PER_USER", 5) or 0)
    max_ip = int(getattr(settings, "WS_MAX_CONNECTIONS_PER_IP", 20) or 0)
    try:
        user_count = redis_client.incr(ws_user_conn_key(user_id), amount=1, ex=_CONNECTION_TTL_SECONDS)
        ip_count = 0
        if ip:
            ip_count = redis_client.incr(ws_ip_conn_key(ip), amount=1, ex=_CONNECTION_TTL_SECONDS)
        if (0 < max_user < user_count) or (ip and 0 < max_ip < ip_count):
            _unregister_connection(user_id, ip)  # 回滚计数
            return False
        return True
    except CacheUnavailableError:
        # Redis 不可用时回退为进程内计数，避免阻断连接
        current_user = _user_conn_count.get(user_id, 0)
        current_ip = _ip_conn_count.get(ip, 0)
        if (0 < max_user <= current_user) or (ip and 0 < max_ip <= current_ip):
            return False
        _user_conn_count[user_id] = current_user + 1
        if ip:
            _ip_conn_count[ip] = current_ip + 1
        return True


def _unregister_connection(user_id: int, ip: str) -> None:
    """连接关闭后递减计数，兼容 Redis 与进程内回退"""
    try:
        user_val = redis_client.incr(ws_user_conn_key(user_id), amount=-1, ex=_CONNECTION_TTL_SECONDS)
        if user_val < 0:
            redis_client.set(ws_user_conn_key(user_id), 0, ex=_CONNECTION_TTL_SECONDS)
        if ip:
            ip_val = redis_client.incr(ws_ip_conn_key(ip), amount=-1, ex=_CONNECTION_TTL_SECONDS)
            if ip_val < 0:
                redis_client.set(ws_ip_conn_key(ip), 0, ex=_CONNECTION_TTL_SECONDS)
        return
    except CacheUnavailableError:
        pass
    if user_id in _user_conn_count:
        _user_conn_count[user_id] = max(0, _user_conn_count[user_id] - 1)
    if ip and ip in _ip_conn_count:
        _ip_conn_count[ip] = max(0, _ip_conn_count[ip] - 1)


class BaseAuthorizedConsumer(AsyncJsonWebsocketConsumer):
    """
    带登录校验、连接配额与心跳的基础 Consumer

    子类约定：
    - 覆盖 on_authorized() 完成分组加入等初始化（此时连接已 accept）
    - 覆盖 on_disconnect() 做清理，基类负责配额回收与心跳任务取消
    """

    require_staff: bool = False  # 监考端等管理功能需要 is_staff
    heartbeat_timeout_seconds: int = 120  # 超时自动断开
    heartbeat_interval_seconds: int = 25  # 与前端 ping 周期相近
    client_ip: str = ""
    _registered: bool = False
    _last_ping: float = 0.0
    _monitor_task: asyncio.Task | None = None

    @property
    def user(self):
        return self.scope.get("user")

    async def connect(self):
        user = self.user
        if user is None or isinstance(user, AnonymousUser) or not user.is_authenticated:
            await self.close(code=CLOSE_UNAUTHENTICATED)
            return None
        if self.require_staff and not getattr(user, "is_staff", False):
            await self.close(code=CLOSE_FORBIDDEN)
            return None
        self.client_ip = client_ip(self.scope)
        if not _register_connection(user.id, self.client_ip):
            await self.close(code=CLOSE_TOO_MANY_CONNECTIONS)
            return None
        self._registered = True
        self._last_ping = time.time()
        self._monitor_task = asyncio.create_task(self._monitor_heartbeat())
        await self.accept()
        await self.on_authorized()
        return None

    async def on_authorized(self):
        return None

    async def on_disconnect(self, close_code):
        return None

    async def disconnect(self, close_code):
        if not self._registered:
            return None
        try:
            await self.on_disconnect(close_code)
        finally:
            _unregister_connection(self.user.id, self.client_ip)
            self._registered = False
            if self._monitor_task is not None:
                self._monitor_task.cancel()
        return None

    async def receive_json(self, content, **kwargs):
        """
        统一处理心跳：
        - 前端发送 {"type":"ping"}，返回 {"event":"pong"} 并更新最后活跃时间
        - 其他消息交给 handle_json
        """
        if isinstance(content, dict) and content.get("type") == "ping":
            self._last_ping = time.time()
            await self.send_json({"event": "pong", "ts": self._last_ping})
            return None
        return await self.handle_json(content)

    async def handle_json(self, content):
        return None

    async def _monitor_heartbeat(self):
        """后台心跳监控：若长时间未收到 ping 则自动断开"""
        try:
            while True:
                # 刷新连接计数 TTL，避免长连导致计数过期
                try:
                    user_id = getattr(self.user, "id", None)
                    if user_id:
                        redis_client.incr(ws_user_conn_key(user_id), amount=0, ex=_CONNECTION_TTL_SECONDS)
                    if self.client_ip:
                        redis_client.incr(ws_ip_conn_key(self.client_ip), amount=0, ex=_CONNECTION_TTL_SECONDS)
                except CacheUnavailableError:
                    pass
                await asyncio.sleep(self.heartbeat_interval_seconds)
                now = time.time()
                if now - self._last_ping > self.heartbeat_timeout_seconds:
                    await self.close(code=CLOSE_HEARTBEAT_TIMEOUT)
                    break
        except asyncio.CancelledError:
            return None
