# -*- coding: utf-8 -*-
"""
WebSocket JWT 鉴权中间件

作用：
- 解析 WebSocket 握手中的 Authorization 头（Bearer Token）或 query 参数 token
- 校验比赛后端签发的 access token，注入 scope["user"]（无状态用户，不查库）
- 原始令牌写入 scope["token"]，会话协调器以选手身份调用比赛后端时使用
"""

from __future__ import annotations

from urllib.parse import parse_qs

from channels.middleware import BaseMiddleware
from django.contrib.auth.models import AnonymousUser

from apps.common.exceptions import TokenError
from apps.common.infra.jwt_provider import user_from_token
from apps.common.infra.logger import get_logger

logger = get_logger(__name__)


def extract_token(scope) -> str:
    headers = dict(scope.get("headers") or [])
    auth_header = headers.get(b"authorization", b"").decode()
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    params = parse_qs(scope.get("query_string", b"").decode())
    return (params.get("token") or [""])[0]


class JWTAuthMiddleware(BaseMiddleware):
    """
    WebSocket JWT 认证中间件
    - 优先解析 Authorization: Bearer <token>
    - 兼容 querystring 中的 token=<token>（浏览器 WebSocket 无法自定义请求头）
    """

    async def __call__(self, scope, receive, send):
        token = extract_token(scope)
        user = AnonymousUser()
        if token:
            try:
                user = user_from_token(token)
            except TokenError:
                logger.info("WebSocket 握手令牌无效")
                token = ""
        scope = dict(scope, user=user, token=token)
        return await super().__call__(scope, receive, send)
