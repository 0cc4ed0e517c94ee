"""
JWT 工具封装：校验比赛后端签发的访问令牌

- 令牌由比赛后端签发（payload: userId / username / role），本服务与其共享签名密钥，只做校验不落库
- 依赖 SimpleJWT 的 token_backend 完成签名与过期校验，算法/密钥取自 settings.SIMPLE_JWT
- 业务场景：REST 接口鉴权、WebSocket 握手鉴权；测试中用 issue_access 生成令牌
"""

from __future__ import annotations

import datetime
from functools import cached_property
from typing import Any, Dict, Optional

from rest_framework_simplejwt.exceptions import TokenBackendError
from rest_framework_simplejwt.models import TokenUser
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.state import token_backend

from apps.common.exceptions import TokenError

STAFF_ROLES = frozenset({"admin", "super_admin"})


class ContestTokenUser(TokenUser):
    """
    由令牌构造的无状态用户
    - id 取 USER_ID_CLAIM（userId）
    - admin / super_admin 视为管理员，可进入监考端
    """

    @cached_property
    def role(self) -> str:
        return str(self.token.get("role") or "player")

    @cached_property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @cached_property
    def is_superuser(self) -> bool:
        return self.role == "super_admin"


def decode_access(token: str) -> Dict[str, Any]:
    """
    校验 access token 并返回 payload，失败抛 TokenError
    """
    try:
        payload = token_backend.decode(token, verify=True)
    except TokenBackendError as exc:
        raise TokenError(message="访问令牌无效或已过期") from exc
    if api_settings.USER_ID_CLAIM not in payload:
        raise TokenError(message="访问令牌缺少用户标识")
    return payload


def user_from_token(token: str) -> ContestTokenUser:
    return ContestTokenUser(decode_access(token))


def issue_access(
        *,
        user_id: int,
        username: str = "",
        role: str = "player",
        lifetime: Optional[datetime.timedelta] = None,
) -> str:
    """
    签发与比赛后端格式一致的访问令牌（联调、测试用）
    """
    lifetime = lifetime or api_settings.ACCESS_TOKEN_LIFETIME
    payload = {
        api_settings.USER_ID_CLAIM: user_id,
        "username": username,
        "role": role,
        "exp": datetime.datetime.now(datetime.timezone.utc) + lifetime,
    }
    return token_backend.encode(payload)
