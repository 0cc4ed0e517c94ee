"""
通用权限封装（apps.common.permissions）

职责：
- 基于令牌用户（ContestTokenUser）的登录/管理员校验
- 出错时统一抛出 BizError 子类（PermissionDeniedError），由全局异常处理器统一包装响应
"""

from __future__ import annotations

from typing import Any

from rest_framework.permissions import BasePermission
from rest_framework.request import Request

from .exceptions import PermissionDeniedError


def _ensure_authenticated(request: Request):
    """确保用户已登录，返回 user；否则抛 PermissionDeniedError"""
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        raise PermissionDeniedError(message="请先登录后再执行此操作")
    return user


class AllowAny(BasePermission):
    """允许任何请求通过（探活等公开接口）"""

    def has_permission(self, request: Request, view: Any) -> bool:  # noqa: D401
        return True


class IsAuthenticated(BasePermission):
    """
    需要已登录用户
    等价于 DRF 默认的 IsAuthenticated，但出错时抛 BizError
    """

    message = "请先登录后再执行此操作"

    def has_permission(self, request: Request, view: Any) -> bool:
        _ensure_authenticated(request)
        return True


class IsAdmin(BasePermission):
    """
    需要管理员（监考员）权限：令牌 role 为 admin / super_admin

    - 未登录 → 提示先登录
    - 已登录但非管理员 → 无权访问
    """

    message = "仅监考管理员可以执行此操作"

    def has_permission(self, request: Request, view: Any) -> bool:
        user = _ensure_authenticated(request)
        if getattr(user, "is_staff", False):
            return True
        raise PermissionDeniedError(message=self.message)
