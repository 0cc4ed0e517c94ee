"""
统一 JWT 认证封装（apps.common.authentication）

职责与目标：
- 全局 JWT 认证入口，统一 Header/Cookie 取 Token 的逻辑
- 令牌由比赛后端签发，本服务只校验签名与有效期，用户为 ContestTokenUser（不查库）
- 将 JWT 相关异常映射到 BizError（TokenError），交由全局异常处理器统一格式化响应

默认行为：
- 优先从 Authorization 头读取：Authorization: Bearer <token>
- 可选从 Cookie 读取：jwt_token_in_cookie=<token>
- 未提供凭证 → 返回 None（匿名，由权限类决定是否放行）
- 凭证无效/过期 → TokenError(40102)
"""

from __future__ import annotations

from typing import Any, Optional

from django.conf import settings
from rest_framework.request import Request
from rest_framework_simplejwt.authentication import JWTStatelessUserAuthentication

from .exceptions import TokenError
from .infra.jwt_provider import ContestTokenUser, decode_access
from .infra.logger import get_logger, logger_extra
from .utils.request_context import update_request_user

logger = get_logger(__name__)


class JWTAuthentication(JWTStatelessUserAuthentication):
    """
    统一 JWT 认证入口

    可配置点：
    - use_cookie: 是否允许从 cookie 读取 access token
    - cookie_name: cookie 中 access token 的键名
    - header_types: 通过 SIMPLE_JWT['AUTH_HEADER_TYPES'] 调整
    """

    use_cookie: bool = getattr(settings, "JWT_USE_COOKIE", True)
    cookie_name: str = getattr(settings, "JWT_ACCESS_COOKIE_NAME", "jwt_token_in_cookie")

    def authenticate(self, request: Request) -> Optional[tuple[Any, Any]]:
        header = self.get_header(request)
        raw_token = self.get_raw_token(header) if header is not None else None
        if raw_token is None and self.use_cookie:
            raw_token = request.COOKIES.get(self.cookie_name) or None
        if raw_token is None:
            return None

        if isinstance(raw_token, bytes):
            raw_token = raw_token.decode()
        try:
            payload = decode_access(raw_token)
        except TokenError:
            # 具体原因不透出，只提示重新登录
            logger.warning("认证失败：无效或过期的 JWT", extra=logger_extra({"reason": "invalid_token"}))
            raise TokenError(message="令牌无效或已过期，请重新登录")

        user = ContestTokenUser(payload)
        update_request_user(user)
        return user, payload
