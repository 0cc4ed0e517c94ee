"""
请求 / 会话上下文：基于 contextvars 保存当前请求或 WebSocket 会话的标识，供日志格式化器读取

- HTTP 请求由 RequestContextMiddleware 写入，响应后清空
- WebSocket 会话由 Consumer 在 connect 时写入；协调器派生的 asyncio 任务会自动继承
"""

from __future__ import annotations

import contextvars
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
user_id_ctx: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar("user_id", default=None)
username_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("username", default="")
path_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("path", default="")
method_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("method", default="")
ip_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("ip", default="")
contest_id_ctx: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar("contest_id", default=None)
session_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("session_id", default="")
last_context_ctx: contextvars.ContextVar[dict | None] = contextvars.ContextVar("last_context", default=None)
last_context_expire_ctx: contextvars.ContextVar[Optional[datetime]] = contextvars.ContextVar(
    "last_context_expire", default=None
)
LAST_CONTEXT_TTL = timedelta(seconds=2)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


def set_request_context(
    *,
    request_id: Optional[str] = None,
    user_id: Optional[int] = None,
    username: str = "",
    path: str = "",
    method: str = "",
    ip: str = "",
) -> None:
    request_id_ctx.set(request_id or generate_request_id())
    user_id_ctx.set(user_id)
    username_ctx.set(username or "")
    path_ctx.set(path or "")
    method_ctx.set(method or "")
    ip_ctx.set(ip or "")


def bind_session_context(
    *,
    contest_id: Optional[int],
    session_id: str,
    user_id: Optional[int] = None,
    username: str = "",
    path: str = "",
    ip: str = "",
) -> None:
    """
    WebSocket 会话上下文：在 Consumer.connect 中调用
    - request_id 复用 session_id，便于按会话检索整段日志
    """
    set_request_context(
        request_id=session_id,
        user_id=user_id,
        username=username,
        path=path,
        method="WS",
        ip=ip,
    )
    contest_id_ctx.set(contest_id)
    session_id_ctx.set(session_id or "")


def clear_request_context() -> None:
    # 在清空当前上下文前，先记录快照，供日志在请求结束后的最后阶段读取
    snapshot = get_request_context(include_last=False)
    if snapshot["request_id"]:
        last_context_ctx.set(snapshot)
        last_context_expire_ctx.set(datetime.now(timezone.utc) + LAST_CONTEXT_TTL)
    request_id_ctx.set("")
    user_id_ctx.set(None)
    username_ctx.set("")
    path_ctx.set("")
    method_ctx.set("")
    ip_ctx.set("")
    contest_id_ctx.set(None)
    session_id_ctx.set("")


def get_request_context(*, include_last: bool = True) -> dict:
    ctx = {
        "request_id": request_id_ctx.get(""),
        "user_id": user_id_ctx.get(None),
        "username": username_ctx.get(""),
        "path": path_ctx.get(""),
        "method": method_ctx.get(""),
        "ip": ip_ctx.get(""),
        "contest_id": contest_id_ctx.get(None),
        "session_id": session_id_ctx.get(""),
    }
    if include_last and not ctx["request_id"]:
        last_ctx = last_context_ctx.get(None)
        expire_at = last_context_expire_ctx.get(None)
        if last_ctx and expire_at and expire_at > datetime.now(timezone.utc):
            return last_ctx
    return ctx


def update_request_user(user) -> None:
    """
    在认证完成后更新当前请求上下文中的用户信息

    适用于 DRF 认证流程（如 JWT），因为中间件执行时 request.user 还未就绪。
    """
    current = get_request_context()
    set_request_context(
        request_id=current.get("request_id") or generate_request_id(),
        user_id=getattr(user, "id", None),
        username=getattr(user, "username", "") or "",
        path=current.get("path", ""),
        method=current.get("method", ""),
        ip=current.get("ip", ""),
    )
